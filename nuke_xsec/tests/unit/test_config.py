"""
Unit tests for AnalysisConfig.

Tests verify TOML loading, cut-set expansion, materials validation and the
universe configuration overrides.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import tomli_w

from nuke_xsec.modules.config import AnalysisConfig, default_config_dir
from nuke_xsec.modules.exceptions import ConfigurationError
from nuke_xsec.modules.universes import UniverseSet


def rewrite(config_dir: Path, filename: str, content: dict) -> None:
    with open(config_dir / filename, "wb") as f:
        tomli_w.dump(content, f)


@pytest.mark.unit
class TestAnalysisConfig:
    """Test loading and accessors."""

    def test_loads_directory(self, analysis_config: AnalysisConfig, config_dir: Path) -> None:
        assert analysis_config.config_dir == config_dir
        assert analysis_config.sample_names == ["tracker", "target1_Fe"]
        assert list(analysis_config.observables) == ["Emu", "pTmu", "Emu_pTmu"]
        assert analysis_config.materials == {"Iron": ["target1_Fe"], "Tracker": ["tracker"]}
        assert analysis_config.n_iterations == 3
        assert analysis_config.covariance_iterations == 3

    def test_packaged_configuration(self) -> None:
        """The configuration shipped with the package is valid."""
        config = AnalysisConfig()

        assert config.config_dir == default_config_dir()
        assert "tracker" in config.sample_names
        assert set(config.materials) == {"Iron", "Lead", "Carbon", "Tracker"}
        assert config.extraction_observables == ["pTmu", "pzmu", "Emu", "Erecoil"]
        assert config.flux_table_path().exists()
        for sample in config.sample_names:
            assert config.fiducial_nucleons(sample) > 0.0

    def test_sample_cuts_expand_cut_sets(self, analysis_config: AnalysisConfig) -> None:
        cuts = analysis_config.sample_cuts("tracker")

        assert [cut["name"] for cut in cuts["signal_definition"]] == ["IsNumu", "IsCC"]
        assert [cut["name"] for cut in cuts["preselection"]] == ["TrackerZ"]
        assert cuts["sideband"] == []
        assert cuts["phase_space"] == []

    def test_shared_cuts_come_first(self, config_dir: Path, selection_dict: dict) -> None:
        selection_dict["samples"]["tracker"]["signal_definition"] = [
            {"name": "HighEnergy", "type": "min", "field": "mc_muon_e", "min": 2000.0}
        ]
        rewrite(config_dir, "selection.toml", selection_dict)

        cuts = AnalysisConfig(config_dir).sample_cuts("tracker")

        assert [cut["name"] for cut in cuts["signal_definition"]] == ["IsNumu", "IsCC", "HighEnergy"]

    def test_unknown_cut_set(self, config_dir: Path, selection_dict: dict) -> None:
        selection_dict["samples"]["tracker"]["uses"] = {"signal_definition": "cc_nue"}
        rewrite(config_dir, "selection.toml", selection_dict)

        with pytest.raises(ConfigurationError, match="cc_nue"):
            AnalysisConfig(config_dir).sample_cuts("tracker")

    def test_unknown_sample(self, analysis_config: AnalysisConfig) -> None:
        with pytest.raises(ConfigurationError):
            analysis_config.sample_cuts("target9_W")

    def test_fiducial_nucleons(self, analysis_config: AnalysisConfig, config_dir: Path, selection_dict: dict) -> None:
        assert analysis_config.fiducial_nucleons("target1_Fe") == 2.0e29

        del selection_dict["samples"]["tracker"]["fiducial_nucleons"]
        rewrite(config_dir, "selection.toml", selection_dict)
        with pytest.raises(ConfigurationError):
            AnalysisConfig(config_dir).fiducial_nucleons("tracker")

    def test_material_with_unknown_sample(self, config_dir: Path) -> None:
        rewrite(config_dir, "targets.toml", {"materials": {"Lead": ["target2_Pb"]}})

        with pytest.raises(ConfigurationError, match="Lead"):
            AnalysisConfig(config_dir)

    def test_flux_table_path_relative_to_config(self, analysis_config: AnalysisConfig, config_dir: Path) -> None:
        assert analysis_config.flux_table_path() == config_dir / "flux.csv"

    def test_no_flux_table(self, config_dir: Path) -> None:
        rewrite(config_dir, "extraction.toml", {"unfolding": {"n_iterations": 2}})

        config = AnalysisConfig(config_dir)

        assert config.flux_table_path() is None
        assert config.covariance_iterations == 4

    def test_extraction_observables_default_to_1d(self, config_dir: Path) -> None:
        rewrite(config_dir, "extraction.toml", {})

        assert AnalysisConfig(config_dir).extraction_observables == ["Emu", "pTmu"]

    def test_output_directory(self, analysis_config: AnalysisConfig, tmp_test_dir: Path) -> None:
        assert analysis_config.output_directory() == tmp_test_dir / "output"
        assert analysis_config.output_directory("elsewhere") == Path("elsewhere")

    def test_output_directory_default(self, config_dir: Path) -> None:
        rewrite(config_dir, "extraction.toml", {})

        assert AnalysisConfig(config_dir).output_directory() == Path(".")


@pytest.mark.unit
class TestConfigErrors:
    """Missing and malformed files raise ConfigurationError."""

    def test_missing_file(self, config_dir: Path) -> None:
        (config_dir / "universes.toml").unlink()

        with pytest.raises(ConfigurationError, match="universes.toml"):
            AnalysisConfig(config_dir)

    def test_invalid_toml(self, config_dir: Path) -> None:
        (config_dir / "variables.toml").write_text("[observables\nEmu = ")

        with pytest.raises(ConfigurationError, match="parsing"):
            AnalysisConfig(config_dir)

    def test_no_samples(self, config_dir: Path) -> None:
        rewrite(config_dir, "selection.toml", {"samples": {}})

        with pytest.raises(ConfigurationError):
            AnalysisConfig(config_dir)

    def test_no_observables(self, config_dir: Path) -> None:
        rewrite(config_dir, "variables.toml", {"observables": {}})

        with pytest.raises(ConfigurationError):
            AnalysisConfig(config_dir)


@pytest.mark.unit
class TestUniverseConfig:
    """Test skip-systematics overrides."""

    def test_full_set(self, analysis_config: AnalysisConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NUKE_XSEC_SKIP_SYST", raising=False)

        universes = UniverseSet.from_config(analysis_config.universe_config())

        assert universes.band_sizes == {"cv": 1, "Flux": 3, "Muon_Energy": 2}

    def test_skip_argument(self, analysis_config: AnalysisConfig) -> None:
        universes = UniverseSet.from_config(analysis_config.universe_config(skip=True))

        assert universes.band_sizes == {"cv": 1, "Flux": 2}

    def test_skip_environment(self, analysis_config: AnalysisConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NUKE_XSEC_SKIP_SYST", "1")

        config = analysis_config.universe_config()

        assert config.skip_systematics
        assert UniverseSet.from_config(config).band_sizes == {"cv": 1, "Flux": 2}

    def test_environment_off(self, analysis_config: AnalysisConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NUKE_XSEC_SKIP_SYST", "off")

        assert not analysis_config.universe_config().skip_systematics
