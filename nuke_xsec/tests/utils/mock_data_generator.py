"""
Mock data generators for testing pipeline components.

Provides synthetic MINERvA-like events (reco, truth and weight fields), in
memory or as ROOT files, for reproducible testing without real playlists.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import uproot

from nuke_xsec.modules.event_source import ArrayEventSource, Event

# Fraction of generated events per interaction type
SIGNAL_FRACTION = 0.7
NC_FRACTION = 0.2
# GENIE modes: QE, RES, DIS, 2p2h and an unlabelled mode
GENIE_MODES = [1, 2, 3, 8, 10]


def generate_mock_events(
    n_events: int = 1000,
    seed: int = 42,
    smearing: float = 0.0,
    n_flux_universes: int = 3,
    weighted: bool = True,
    e_range: tuple[float, float] = (1000.0, 19000.0),
    target_code: int = 1026,
) -> dict[str, np.ndarray]:
    """
    Generate mock events with truth and reco fields.

    True muon energies are uniform inside e_range (MeV); reco energies are
    the true ones smeared by a Gaussian of width smearing (MeV). About 70%
    of events are CC numu signal, 20% NC, the rest CC anti-numu.

    Args:
        n_events: Number of events to generate
        seed: Random seed for reproducibility
        smearing: Gaussian resolution on the muon energy (0: identity)
        n_flux_universes: Length of the mc_wgt_flux vector
        weighted: Random cv weights if True, unit weights otherwise
        e_range: Range of true muon energies
        target_code: ANN and true target code of every event

    Returns:
        Dictionary mapping field names to arrays (mc_wgt_flux is 2D)
    """
    rng = np.random.default_rng(seed)

    mc_muon_e = rng.uniform(e_range[0], e_range[1], n_events)
    mc_muon_theta = rng.uniform(0.0, 0.25, n_events)
    muon_e = mc_muon_e + (rng.normal(0.0, smearing, n_events) if smearing > 0 else 0.0)
    muon_theta = mc_muon_theta.copy()

    kind = rng.uniform(0.0, 1.0, n_events)
    mc_current = np.where((kind >= SIGNAL_FRACTION) & (kind < SIGNAL_FRACTION + NC_FRACTION), 2, 1)
    mc_incoming = np.where(kind >= SIGNAL_FRACTION + NC_FRACTION, -14, 14)

    if weighted:
        mc_cv_weight = rng.uniform(0.5, 1.5, n_events)
        mc_wgt_flux_cv = rng.uniform(0.9, 1.1, n_events)
    else:
        mc_cv_weight = np.ones(n_events)
        mc_wgt_flux_cv = np.ones(n_events)
    mc_wgt_flux = mc_wgt_flux_cv[:, np.newaxis] * rng.uniform(0.8, 1.2, (n_events, n_flux_universes))

    vtx_x = rng.uniform(-600.0, 600.0, n_events)
    vtx_y = rng.uniform(-600.0, 600.0, n_events)
    vtx_z = rng.uniform(6000.0, 8400.0, n_events)

    columns = {
        "vtx_x": vtx_x,
        "vtx_y": vtx_y,
        "vtx_z": vtx_z,
        "muon_e": muon_e,
        "muon_p": np.sqrt(np.clip(muon_e**2 - 105.66**2, 0.0, None)),
        "muon_theta": muon_theta,
        "recoil_e": rng.exponential(800.0, n_events),
        "has_minos_match": np.ones(n_events, dtype=np.int32),
        "dead_time": np.zeros(n_events, dtype=np.int32),
        "muon_charge": np.where(mc_incoming == 14, -1, 1).astype(np.int32),
        "ann_confidence": rng.uniform(0.3, 1.0, n_events),
        "ann_target_code": np.full(n_events, target_code, dtype=np.int32),
        "mc_vtx_x": vtx_x,
        "mc_vtx_y": vtx_y,
        "mc_vtx_z": vtx_z,
        "mc_muon_e": mc_muon_e,
        "mc_muon_p": np.sqrt(mc_muon_e**2 - 105.66**2),
        "mc_muon_theta": mc_muon_theta,
        "mc_q0": rng.exponential(800.0, n_events),
        "mc_incoming": mc_incoming.astype(np.int32),
        "mc_current": mc_current.astype(np.int32),
        "mc_target_code": np.full(n_events, target_code, dtype=np.int32),
        "mc_cv_weight": mc_cv_weight,
        "mc_wgt_flux_cv": mc_wgt_flux_cv,
        "mc_wgt_flux": mc_wgt_flux,
    }

    # Vertex planes and interaction modes
    module = rng.integers(0, 21, n_events)
    plane = rng.integers(1, 3, n_events)
    columns.update(
        {
            "ann_segment": np.zeros(n_events, dtype=np.int32),
            "ann_vtx_module": module.astype(np.int32),
            "ann_vtx_plane": plane.astype(np.int32),
            "mc_vtx_module": module.astype(np.int32),
            "mc_vtx_plane": plane.astype(np.int32),
            "mc_int_type": rng.choice(GENIE_MODES, n_events).astype(np.int32),
        }
    )
    return columns


def create_mock_sources(
    columns: dict[str, np.ndarray],
    mc_pot: float = 1.0e20,
    data_pot: float = 1.0e20,
) -> tuple[ArrayEventSource, ArrayEventSource, ArrayEventSource]:
    """
    MC reco, truth and data sources over the same columns.

    The data source sees the columns as recorded events (no truth access).
    """
    return (
        ArrayEventSource(columns, is_mc=True, pot_used=mc_pot, name="mock MC reco"),
        ArrayEventSource(columns, is_mc=True, pot_used=mc_pot, name="mock MC truth"),
        ArrayEventSource(columns, is_mc=False, pot_used=data_pot, name="mock data"),
    )


def make_event(is_mc: bool = True, **fields: Any) -> Event:
    """Single event with the given field values."""
    columns = {name: [value] for name, value in fields.items()}
    return ArrayEventSource(columns, is_mc=is_mc, name="single event").reposition(0)


def create_mock_flux_table(
    n_universes: int = 3,
    e_max: float = 100.0,
    n_bins: int = 20,
    seed: int = 42,
) -> pd.DataFrame:
    """
    Flux table with a falling spectrum and per-universe variations.

    Returns:
        DataFrame with e_low, e_high, cv and flux_<i> columns
    """
    rng = np.random.default_rng(seed)
    edges = np.linspace(0.0, e_max, n_bins + 1)
    centers = 0.5 * (edges[:-1] + edges[1:])
    cv = 1.0e-6 * np.exp(-centers / 10.0)
    table = {"e_low": edges[:-1], "e_high": edges[1:], "cv": cv}
    for i in range(n_universes):
        table[f"flux_{i}"] = cv * rng.uniform(0.9, 1.1, n_bins)
    return pd.DataFrame(table)


def create_mock_root_file(
    output_path: str | Path,
    columns: dict[str, np.ndarray],
    reco_tree: str = "CCInclusiveReco",
    pot: float | None = 1.0e20,
    include_truth: bool = True,
) -> Path:
    """
    Create a ROOT file laid out like an event-loop input.

    Args:
        output_path: Path where the ROOT file will be created
        columns: Flat branches of the reco (and truth) tree
        reco_tree: Name of the reconstructed-event tree
        pot: POT_Used stored in the Meta tree (no Meta tree if None)
        include_truth: Also write the columns as the Truth tree

    Returns:
        Path to created ROOT file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with uproot.recreate(output_path) as file:
        file[reco_tree] = columns
        if include_truth:
            file["Truth"] = columns
        if pot is not None:
            file["Meta"] = {"POT_Used": np.array([pot])}
    return output_path


def create_mock_playlist(output_path: str | Path, files: list[str | Path]) -> Path:
    """Playlist text file listing one ROOT file per line."""
    output_path = Path(output_path)
    output_path.write_text("# mock playlist\n" + "\n".join(str(path) for path in files) + "\n")
    return output_path


def flat_columns(columns: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
    """Columns without vector fields (for ROOT files read back without systematics)."""
    return {name: values for name, values in columns.items() if np.ndim(values) == 1}
