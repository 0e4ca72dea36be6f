"""
Global pytest fixtures and configuration for the test suite.

Provides reusable fixtures for testing pipeline components without
duplicating setup code across test modules.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import numpy as np
import pytest
import tomli_w

from nuke_xsec.modules.config import AnalysisConfig
from nuke_xsec.modules.event_loop import EventLoop, Sample, build_samples
from nuke_xsec.modules.universes import UniverseConfig, UniverseSet

from .utils import create_mock_flux_table, generate_mock_events

N_FLUX_UNIVERSES = 3
EMU_EDGES = [0.0, 2.0, 4.0, 6.0, 8.0, 10.0, 12.0, 14.0, 16.0, 18.0, 20.0]


@pytest.fixture
def tmp_test_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test operations.

    Automatically cleaned up after test completion.

    Yields:
        Path to temporary directory
    """
    tmp_dir = Path(tempfile.mkdtemp(prefix="nuke_xsec_test_"))
    try:
        yield tmp_dir
    finally:
        if tmp_dir.exists():
            shutil.rmtree(tmp_dir)


@pytest.fixture
def tmp_output_dir(tmp_test_dir: Path) -> Path:
    """
    Create a temporary output directory.

    Args:
        tmp_test_dir: Temporary test directory fixture

    Returns:
        Path to output directory
    """
    output_dir = tmp_test_dir / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def universe_config_dict() -> dict[str, Any]:
    """cv weight, a small flux band and one lateral shift band."""
    return {
        "skip_systematics": False,
        "flux_band": "Flux",
        "n_flux_universes_when_skipping": 2,
        "cv_weight_fields": ["mc_cv_weight"],
        "bands": [
            {
                "name": "Flux",
                "kind": "weight",
                "n_universes": N_FLUX_UNIVERSES,
                "weight_field": "mc_wgt_flux",
                "cv_weight_field": "mc_wgt_flux_cv",
            },
            {
                "name": "Muon_Energy",
                "kind": "shift",
                "shift_fields": ["muon_e"],
                "sigma": 0.1,
            },
        ],
    }


@pytest.fixture
def universes(universe_config_dict: dict[str, Any]) -> UniverseSet:
    return UniverseSet.from_config(UniverseConfig.from_dict(universe_config_dict, skip_systematics=False))


@pytest.fixture
def observables_dict() -> dict[str, Any]:
    """Muon energy and transverse momentum plus their 2D combination."""
    return {
        "Emu": {
            "label": "E_mu [GeV]",
            "edges": EMU_EDGES,
            "reco": {"kind": "field", "field": "muon_e", "scale": 0.001},
            "truth": {"kind": "field", "field": "mc_muon_e", "scale": 0.001},
        },
        "pTmu": {
            "label": "p_T,mu [GeV/c]",
            "edges": [0.0, 0.25, 0.5, 1.0, 2.0, 4.5],
            "reco": {"kind": "pt", "p": "muon_p", "theta": "muon_theta", "scale": 0.001},
            "truth": {"kind": "pt", "p": "mc_muon_p", "theta": "mc_muon_theta", "scale": 0.001},
        },
        "Emu_pTmu": {"x": "Emu", "y": "pTmu"},
    }


@pytest.fixture
def selection_dict() -> dict[str, Any]:
    """Tracker sample and one iron target sample sharing the CC numu signal definition."""
    return {
        "cut_sets": {
            "cc_numu": [
                {"name": "IsNumu", "type": "equals", "field": "mc_incoming", "value": 14},
                {"name": "IsCC", "type": "equals", "field": "mc_current", "value": 1},
            ],
        },
        "samples": {
            "tracker": {
                "fiducial_nucleons": 1.0e30,
                "uses": {"signal_definition": "cc_numu"},
                "preselection": [
                    {"name": "TrackerZ", "type": "range", "field": "vtx_z", "low": 5980.0, "high": 8422.0},
                ],
            },
            "target1_Fe": {
                "fiducial_nucleons": 2.0e29,
                "uses": {"signal_definition": "cc_numu"},
                "preselection": [
                    {"name": "Target", "type": "equals", "field": "ann_target_code", "value": 1026},
                ],
                "phase_space": [
                    {"name": "TrueTarget", "type": "equals", "field": "mc_target_code", "value": 1026},
                ],
            },
        },
    }


@pytest.fixture
def config_dir(
    tmp_test_dir: Path,
    universe_config_dict: dict[str, Any],
    observables_dict: dict[str, Any],
    selection_dict: dict[str, Any],
) -> Path:
    """
    Create a temporary config directory with all TOML files and a flux table.

    Returns:
        Path to config directory
    """
    config_dir = tmp_test_dir / "config"
    config_dir.mkdir(parents=True, exist_ok=True)

    configs = {
        "universes.toml": universe_config_dict,
        "selection.toml": selection_dict,
        "variables.toml": {"observables": observables_dict},
        "targets.toml": {"materials": {"Iron": ["target1_Fe"], "Tracker": ["tracker"]}},
        "extraction.toml": {
            "observables": ["Emu", "pTmu"],
            "unfolding": {"n_iterations": 3, "covariance_iterations": 3},
            "flux": {"table": "flux.csv", "e_min": 0.0, "e_max": 100.0},
            "output": {"directory": str(tmp_test_dir / "output")},
        },
    }
    for filename, content in configs.items():
        with open(config_dir / filename, "wb") as f:
            tomli_w.dump(content, f)

    create_mock_flux_table(n_universes=N_FLUX_UNIVERSES).to_csv(config_dir / "flux.csv", index=False)
    return config_dir


@pytest.fixture
def analysis_config(config_dir: Path) -> AnalysisConfig:
    return AnalysisConfig(config_dir)


@pytest.fixture
def samples(analysis_config: AnalysisConfig, universes: UniverseSet) -> list[Sample]:
    return build_samples(analysis_config, universes)


@pytest.fixture
def event_loop(universes: UniverseSet, samples: list[Sample]) -> EventLoop:
    return EventLoop(universes, samples)


@pytest.fixture
def mock_events() -> dict[str, np.ndarray]:
    """1000 weighted events with 500 MeV muon-energy smearing."""
    return generate_mock_events(n_events=1000, seed=42, smearing=500.0, n_flux_universes=N_FLUX_UNIVERSES)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests for multiple components")
    config.addinivalue_line("markers", "validation: Validation tests for error handling and edge cases")
    config.addinivalue_line("markers", "slow: Tests that take significant time to run")
