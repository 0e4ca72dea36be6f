"""
TOML configuration for the event loop and the cross-section extraction.

Configuration directory layout:
- universes.toml: systematic bands and weight fields
- selection.toml: reusable cut sets and one table per sample
- variables.toml: observables (binning, reco and true quantities) and studies
- targets.toml: materials and the samples (targets) they are summed from
- extraction.toml: unfolding iterations, flux table, output locations
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli

from .cutter import CutKind
from .exceptions import ConfigurationError
from .universes import UniverseConfig
from ..utils.logging_config import skip_systematics


class AnalysisConfig:
    """
    Load and manage all TOML configuration files

    Attributes:
        config_dir: Directory holding the TOML files
        universes: Parsed universes.toml
        selection: Parsed selection.toml
        variables: Parsed variables.toml
        targets: Parsed targets.toml
        extraction: Parsed extraction.toml
    """

    def __init__(self, config_dir: str | Path | None = None) -> None:
        self.config_dir = Path(config_dir) if config_dir is not None else default_config_dir()

        self.universes = self._load_toml("universes.toml")
        self.selection = self._load_toml("selection.toml")
        self.variables = self._load_toml("variables.toml")
        self.targets = self._load_toml("targets.toml")
        self.extraction = self._load_toml("extraction.toml")

        self._validate()

    def _load_toml(self, filename: str) -> dict:
        """
        Load TOML configuration file with proper error handling

        Args:
            filename: Name of the TOML file to load

        Returns:
            dict: Parsed TOML configuration

        Raises:
            ConfigurationError: If file not found or parsing fails
        """
        config_path = self.config_dir / filename
        try:
            with open(config_path, "rb") as f:
                return tomli.load(f)
        except FileNotFoundError:
            raise ConfigurationError(
                f"Configuration file not found: {config_path}\n"
                f"Please ensure all config files are present in {self.config_dir}"
            )
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Error parsing TOML file {config_path}: {e}")

    def _validate(self) -> None:
        if not self.selection.get("samples"):
            raise ConfigurationError(f"No samples defined in {self.config_dir / 'selection.toml'}")
        if not self.variables.get("observables"):
            raise ConfigurationError(f"No observables defined in {self.config_dir / 'variables.toml'}")
        samples = set(self.selection["samples"])
        for material, members in self.materials.items():
            unknown = [name for name in members if name not in samples]
            if unknown:
                raise ConfigurationError(f"Material '{material}' refers to unknown samples {unknown}")
        for study, spec in self.studies.items():
            unknown = [name for name in spec.get("samples", []) if name not in samples]
            if unknown:
                raise ConfigurationError(f"Study '{study}' refers to unknown samples {unknown}")

    # ------------------------------------------------------------------
    # Universes
    # ------------------------------------------------------------------

    def universe_config(self, skip: bool | None = None) -> UniverseConfig:
        """
        Immutable universe configuration.

        Args:
            skip: Skip systematics; defaults to the NUKE_XSEC_SKIP_SYST
                  environment variable, then to the file's skip_systematics key
        """
        if skip is None and skip_systematics():
            skip = True
        return UniverseConfig.from_dict(self.universes, skip_systematics=skip)

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    @property
    def sample_names(self) -> list[str]:
        return list(self.selection["samples"])

    def sample_cuts(self, sample: str) -> dict[str, list[dict[str, Any]]]:
        """
        Cut lists of one sample with shared cut sets expanded.

        A sample table may name a cut set per kind under ``uses`` and list
        additional cuts of that kind; shared cuts come first.
        """
        samples = self.selection["samples"]
        if sample not in samples:
            raise ConfigurationError(f"Unknown sample '{sample}'")
        spec = samples[sample]
        cut_sets = self.selection.get("cut_sets", {})
        uses = spec.get("uses", {})

        resolved: dict[str, list[dict[str, Any]]] = {}
        for kind in CutKind:
            cuts: list[dict[str, Any]] = []
            if kind.value in uses:
                set_name = uses[kind.value]
                if set_name not in cut_sets:
                    raise ConfigurationError(f"Sample '{sample}' uses unknown cut set '{set_name}'")
                cuts.extend(cut_sets[set_name])
            cuts.extend(spec.get(kind.value, []))
            resolved[kind.value] = cuts
        return resolved

    def fiducial_nucleons(self, sample: str) -> float:
        spec = self.selection["samples"].get(sample, {})
        if "fiducial_nucleons" not in spec:
            raise ConfigurationError(f"Sample '{sample}' has no fiducial_nucleons")
        return float(spec["fiducial_nucleons"])

    # ------------------------------------------------------------------
    # Observables, materials, extraction
    # ------------------------------------------------------------------

    @property
    def observables(self) -> dict[str, dict[str, Any]]:
        return self.variables["observables"]

    @property
    def studies(self) -> dict[str, dict[str, Any]]:
        """Optional ``[studies.<name>]`` tables of variables.toml."""
        return self.variables.get("studies", {})

    @property
    def materials(self) -> dict[str, list[str]]:
        return self.targets.get("materials", {})

    @property
    def n_iterations(self) -> int:
        return int(self.extraction.get("unfolding", {}).get("n_iterations", 5))

    @property
    def covariance_iterations(self) -> int:
        return int(self.extraction.get("unfolding", {}).get("covariance_iterations", 4))

    @property
    def extraction_observables(self) -> list[str]:
        """1D observables to extract (defaults to every 1D observable)."""
        default = [name for name, spec in self.observables.items() if "x" not in spec]
        return list(self.extraction.get("observables", default))

    @property
    def flux_settings(self) -> dict[str, Any]:
        return self.extraction.get("flux", {})

    def flux_table_path(self) -> Path | None:
        table = self.flux_settings.get("table")
        if not table:
            return None
        path = Path(table)
        return path if path.is_absolute() else self.config_dir / path

    @property
    def output_settings(self) -> dict[str, Any]:
        return self.extraction.get("output", {})

    def output_directory(self, override: str | Path | None = None) -> Path:
        """
        Directory for histogram stores and cross sections.

        Args:
            override: Directory given on the command line, used when set

        Returns:
            override, else ``[output] directory`` (relative to the working
            directory), else the working directory
        """
        if override is not None:
            return Path(override)
        return Path(self.output_settings.get("directory", "."))


def default_config_dir() -> Path:
    """Configuration shipped with the package."""
    return Path(__file__).resolve().parent.parent / "config"
