"""
Nuclear-target and interaction-channel studies booked on top of a sample.

A study fills extra 2D accumulators (reco x vs reco y) for the events a
sample selects:

- NukeTargetStudy splits the selection by reconstructed target (or water)
  and by interaction channel. Events reconstructed in the planes just
  upstream or downstream of a target fill per-target sidebands, split by
  where the interaction truly happened.
- InteractionChannelStudy splits selected signal by interaction channel.

Studies are configured under ``[studies.<name>]`` in variables.toml::

    [studies.pzmu_vs_ptmu_GENIE_labels]
    kind = "interaction_channels"
    samples = ["tracker"]
    x = "pzmu"
    y = "pTmu"

The axes are 1D observables; their reco quantities and bin edges are used.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from .background import BackgroundCategory, classify_background
from .exceptions import ConfigurationError
from .histograms import CV_BAND, HistogramAccumulator
from .variables import Quantity, build_quantity

logger = logging.getLogger("NukeXSec.Studies")

# ANN segment of the water target
WATER_SEGMENT = 36
# Target code of vertices in the water target
WATER_TARGET_CODE = -999
# Passive targets numbered along the beam
NUKE_TARGETS = (1, 2, 3, 4, 5)


class InteractionChannel(Enum):
    """Closed set of GENIE interaction channels."""

    QE = "QE"
    RES = "RES"
    DIS = "DIS"
    COH = "COH"
    MEC = "2p2h"
    OTHER = "Other"

    @classmethod
    def from_code(cls, code: int) -> InteractionChannel:
        """Channel of a GENIE interaction mode code (OTHER when unknown)."""
        return _GENIE_MODES.get(int(code), cls.OTHER)


_GENIE_MODES = {
    1: InteractionChannel.QE,
    2: InteractionChannel.RES,
    3: InteractionChannel.DIS,
    4: InteractionChannel.COH,
    8: InteractionChannel.MEC,
}


class TargetOrigin(Enum):
    """True origin of an event reconstructed in a sideband plane."""

    TARGET = "Target"
    UPSTREAM = "US"
    DOWNSTREAM = "DS"
    OTHER = "Other"


def classify_channel(truth_view: Any) -> InteractionChannel:
    return InteractionChannel.from_code(truth_view["mc_int_type"])


def module_plane_code(module: float, plane: float) -> int:
    """Vertex module and plane packed as module * 10 + plane."""
    return int(module) * 10 + int(plane)


def target_label(code: int) -> str:
    return "water" if code == WATER_TARGET_CODE else f"target{code}"


def _plane_map(study: str, key: str, mapping: dict[str, Any]) -> dict[int, int]:
    try:
        return {int(code): int(target) for code, target in mapping.items()}
    except (AttributeError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Study '{study}': invalid {key} map: {e}") from e


class Study:
    """
    Extra accumulators filled for one sample's selected events.

    Attributes:
        name: "<sample>_<study>", prefix of every accumulator name
        x: Reco quantity along x
        y: Reco quantity along y
        band_sizes: Universe layout of the MC accumulators
    """

    def __init__(
        self,
        name: str,
        x: Quantity,
        y: Quantity,
        x_edges: list[float],
        y_edges: list[float],
        band_sizes: dict[str, int],
    ) -> None:
        self.name = name
        self.x = x
        self.y = y
        self.x_edges = list(x_edges)
        self.y_edges = list(y_edges)
        self.band_sizes = dict(band_sizes)
        self._mc: dict[str, HistogramAccumulator] = {}
        self._data: dict[str, HistogramAccumulator] = {}

    def _book(self, suffix: str, data: bool = False) -> HistogramAccumulator:
        name = f"{self.name}_{suffix}"
        band_sizes = {CV_BAND: 1} if data else self.band_sizes
        hist = HistogramAccumulator(name, self.x_edges, self.y_edges, band_sizes=band_sizes)
        (self._data if data else self._mc)[name] = hist
        return hist

    def _fill(self, hist: HistogramAccumulator, view: Any, weight: float) -> None:
        hist.fill(view.universe, self.x(view), self.y(view), weight=weight)

    def fill_mc(self, reco: Any, truth: Any, weight: float, is_signal: bool) -> None:
        raise NotImplementedError

    def fill_data(self, reco: Any) -> None:
        pass

    def mc_histograms(self) -> dict[str, HistogramAccumulator]:
        return dict(self._mc)

    def data_histograms(self) -> dict[str, HistogramAccumulator]:
        return dict(self._data)

    def merge(self, other: Study) -> Study:
        if other.name != self.name or set(other._mc) != set(self._mc):
            raise ConfigurationError(f"Cannot merge study '{other.name}' into '{self.name}'")
        for key, hist in self._mc.items():
            hist.merge(other._mc[key])
        for key, hist in self._data.items():
            hist.merge(other._data[key])
        return self

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, histograms={len(self._mc) + len(self._data)})"


class InteractionChannelStudy(Study):
    """Selected signal in every universe, one accumulator per interaction channel."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.by_channel = {channel: self._book(channel.value) for channel in InteractionChannel}

    def fill_mc(self, reco: Any, truth: Any, weight: float, is_signal: bool) -> None:
        if is_signal:
            self._fill(self.by_channel[classify_channel(truth)], reco, weight)


class NukeTargetStudy(Study):
    """
    Selection split by reconstructed nuclear target, plus plane sidebands.

    An event is in a target when its ANN segment is the water segment or its
    ANN target code (1000 * target + Z) names one of the configured targets.
    Otherwise the reconstructed vertex module and plane are looked up in the
    upstream and downstream plane maps (module * 10 + plane -> target).

    MC accumulators per target:
        "by_<target>", "by_<target>_<channel>" and, for non-signal events,
        "by_<target>_background_<category>"
    MC accumulators per target and sideband side ("US" or "DS"):
        "<side>_sideband_<target>_<origin>", origin from the true vertex
    Data accumulators:
        "by_<target>_data" and "<side>_sideband_<target>_data"
    """

    def __init__(
        self,
        name: str,
        x: Quantity,
        y: Quantity,
        x_edges: list[float],
        y_edges: list[float],
        band_sizes: dict[str, int],
        targets: tuple[int, ...] = NUKE_TARGETS,
        water_segment: int = WATER_SEGMENT,
        upstream_planes: dict[int, int] | None = None,
        downstream_planes: dict[int, int] | None = None,
    ) -> None:
        super().__init__(name, x, y, x_edges, y_edges, band_sizes)
        self.targets = tuple(int(t) for t in targets)
        self.water_segment = int(water_segment)
        self.sideband_planes = {
            TargetOrigin.UPSTREAM: dict(upstream_planes or {}),
            TargetOrigin.DOWNSTREAM: dict(downstream_planes or {}),
        }
        for side, planes in self.sideband_planes.items():
            unknown = sorted(set(planes.values()) - set(self.targets))
            if unknown:
                raise ConfigurationError(f"Study '{name}': {side.value} planes refer to unknown targets {unknown}")

        self.by_target: dict[int, HistogramAccumulator] = {}
        self.by_channel: dict[int, dict[InteractionChannel, HistogramAccumulator]] = {}
        self.backgrounds: dict[int, dict[BackgroundCategory, HistogramAccumulator]] = {}
        self.target_data: dict[int, HistogramAccumulator] = {}
        for code in (*self.targets, WATER_TARGET_CODE):
            label = f"by_{target_label(code)}"
            self.by_target[code] = self._book(label)
            self.by_channel[code] = {channel: self._book(f"{label}_{channel.value}") for channel in InteractionChannel}
            self.backgrounds[code] = {
                category: self._book(f"{label}_background_{category.value}") for category in BackgroundCategory
            }
            self.target_data[code] = self._book(f"{label}_data", data=True)

        self.sidebands: dict[tuple[TargetOrigin, int], dict[TargetOrigin, HistogramAccumulator]] = {}
        self.sideband_data: dict[tuple[TargetOrigin, int], HistogramAccumulator] = {}
        for side, planes in self.sideband_planes.items():
            for target in sorted(set(planes.values())):
                label = f"{side.value}_sideband_{target_label(target)}"
                self.sidebands[side, target] = {
                    origin: self._book(f"{label}_{origin.value}") for origin in TargetOrigin
                }
                self.sideband_data[side, target] = self._book(f"{label}_data", data=True)

    @classmethod
    def from_config(
        cls,
        name: str,
        x: Quantity,
        y: Quantity,
        x_edges: list[float],
        y_edges: list[float],
        band_sizes: dict[str, int],
        spec: dict[str, Any],
    ) -> NukeTargetStudy:
        return cls(
            name,
            x,
            y,
            x_edges,
            y_edges,
            band_sizes,
            targets=tuple(spec.get("targets", NUKE_TARGETS)),
            water_segment=spec.get("water_segment", WATER_SEGMENT),
            upstream_planes=_plane_map(name, "upstream_planes", spec.get("upstream_planes", {})),
            downstream_planes=_plane_map(name, "downstream_planes", spec.get("downstream_planes", {})),
        )

    # classification ---------------------------------------------------

    def reco_target(self, reco: Any) -> int | None:
        """Reconstructed target number, WATER_TARGET_CODE, or None outside the targets."""
        if int(reco["ann_segment"]) == self.water_segment:
            return WATER_TARGET_CODE
        target = int(reco["ann_target_code"]) // 1000
        return target if target in self.targets else None

    def sideband(self, reco: Any) -> tuple[TargetOrigin, int] | None:
        """(side, target) of an event reconstructed in a sideband plane."""
        code = module_plane_code(reco["ann_vtx_module"], reco["ann_vtx_plane"])
        for side, planes in self.sideband_planes.items():
            if code in planes:
                return side, planes[code]
        return None

    def true_origin(self, truth: Any) -> TargetOrigin:
        if int(truth["mc_target_code"]) // 1000 > 0:
            return TargetOrigin.TARGET
        code = module_plane_code(truth["mc_vtx_module"], truth["mc_vtx_plane"])
        for side, planes in self.sideband_planes.items():
            if code in planes:
                return side
        return TargetOrigin.OTHER

    # filling ----------------------------------------------------------

    def fill_mc(self, reco: Any, truth: Any, weight: float, is_signal: bool) -> None:
        target = self.reco_target(reco)
        if target is not None:
            self._fill(self.by_target[target], reco, weight)
            self._fill(self.by_channel[target][classify_channel(truth)], reco, weight)
            if not is_signal:
                self._fill(self.backgrounds[target][classify_background(truth)], reco, weight)
            return

        sideband = self.sideband(reco)
        if sideband is not None:
            self._fill(self.sidebands[sideband][self.true_origin(truth)], reco, weight)

    def fill_data(self, reco: Any) -> None:
        target = self.reco_target(reco)
        if target is not None:
            self._fill(self.target_data[target], reco, 1.0)
            return
        sideband = self.sideband(reco)
        if sideband is not None:
            self._fill(self.sideband_data[sideband], reco, 1.0)


STUDY_KINDS = {
    "nuke_targets": NukeTargetStudy,
    "interaction_channels": InteractionChannelStudy,
}


def build_studies(
    sample: str,
    studies: dict[str, dict[str, Any]],
    observables: dict[str, dict[str, Any]],
    band_sizes: dict[str, int],
) -> list[Study]:
    """
    Book the studies configured for a sample.

    Args:
        sample: Sample name; studies not listing it are skipped
        studies: Parsed variables.toml ``[studies.<name>]`` tables
        observables: Parsed variables.toml ``[observables.<name>]`` tables
        band_sizes: Universe layout of the MC accumulators

    Raises:
        ConfigurationError: On an unknown kind or axis
    """
    booked: list[Study] = []
    for study_name, spec in studies.items():
        if sample not in spec.get("samples", []):
            continue
        kind = spec.get("kind")
        if kind not in STUDY_KINDS:
            raise ConfigurationError(f"Study '{study_name}' has unknown kind {kind!r} (known: {sorted(STUDY_KINDS)})")
        axes = []
        for axis in ("x", "y"):
            observable = observables.get(spec.get(axis))
            if observable is None or "edges" not in observable:
                raise ConfigurationError(f"Study '{study_name}' {axis} axis {spec.get(axis)!r} is not a 1D observable")
            axes.append(observable)
        x_spec, y_spec = axes
        args = (
            f"{sample}_{study_name}",
            build_quantity(x_spec["reco"]),
            build_quantity(y_spec["reco"]),
            x_spec["edges"],
            y_spec["edges"],
            band_sizes,
        )
        if kind == "nuke_targets":
            booked.append(NukeTargetStudy.from_config(*args, spec))
        else:
            booked.append(STUDY_KINDS[kind](*args))
    if booked:
        logger.debug(f"Booked studies {[s.name for s in booked]} for sample '{sample}'")
    return booked
