"""
Event selection: ordered cuts with CV-only bookkeeping.

Evaluation order is fixed:
    1. pre-selection (reco, AND, short-circuit)
    2. sideband classification (reco, mutually exclusive)
    3. signal definition (truth, AND)
    4. phase space (truth, AND)

Cuts are pure functions of an event view. Only the central-value universe
updates the pass counters, so the summary counts each event once.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, SelectionError

logger = logging.getLogger("NukeXSec.Cutter")


class CutKind(Enum):
    PRESELECTION = "preselection"
    SIDEBAND = "sideband"
    SIGNAL_DEFINITION = "signal_definition"
    PHASE_SPACE = "phase_space"


# ============================================================================
# Cuts
# ============================================================================


class Cut:
    """Interface: named predicate over an event view."""

    def __init__(self, name: str) -> None:
        self.name = name

    def passes(self, view: Any) -> bool:
        raise NotImplementedError

    def __call__(self, view: Any) -> bool:
        return self.passes(view)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class RangeCut(Cut):
    """low <= field < high."""

    def __init__(self, name: str, field_name: str, low: float, high: float) -> None:
        super().__init__(name)
        if not low < high:
            raise ConfigurationError(f"Cut '{name}': empty range [{low}, {high})")
        self.field_name = field_name
        self.low = low
        self.high = high

    def passes(self, view: Any) -> bool:
        return self.low <= float(view[self.field_name]) < self.high


class MinCut(Cut):
    """field > minimum."""

    def __init__(self, name: str, field_name: str, minimum: float) -> None:
        super().__init__(name)
        self.field_name = field_name
        self.minimum = minimum

    def passes(self, view: Any) -> bool:
        return float(view[self.field_name]) > self.minimum


class MaxCut(Cut):
    """field < maximum."""

    def __init__(self, name: str, field_name: str, maximum: float) -> None:
        super().__init__(name)
        self.field_name = field_name
        self.maximum = maximum

    def passes(self, view: Any) -> bool:
        return float(view[self.field_name]) < self.maximum


class EqualsCut(Cut):
    def __init__(self, name: str, field_name: str, value: Any) -> None:
        super().__init__(name)
        self.field_name = field_name
        self.value = value

    def passes(self, view: Any) -> bool:
        return bool(view[self.field_name] == self.value)


class InSetCut(Cut):
    def __init__(self, name: str, field_name: str, values: Iterable[Any]) -> None:
        super().__init__(name)
        self.field_name = field_name
        self.values = frozenset(values)

    def passes(self, view: Any) -> bool:
        value = view[self.field_name]
        if isinstance(value, (np.integer, np.floating)):
            value = value.item()
        return value in self.values


class ApothemCut(Cut):
    """Vertex inside the regular hexagon of the given apothem (same units as x, y)."""

    def __init__(self, name: str, x_field: str, y_field: str, apothem: float) -> None:
        super().__init__(name)
        self.x_field = x_field
        self.y_field = y_field
        self.apothem = apothem

    def passes(self, view: Any) -> bool:
        x = abs(float(view[self.x_field]))
        y = abs(float(view[self.y_field]))
        if x * x + y * y < self.apothem**2:
            return True
        if x > self.apothem:
            return False
        side = self.apothem * 2.0 / math.sqrt(3.0)
        if y < side / 2.0:
            return True
        slope = (side / 2.0) / self.apothem
        return y < side - x * slope


class MaxAngleCut(Cut):
    """Polar angle (radians in the field) below a maximum given in degrees."""

    def __init__(self, name: str, theta_field: str, max_degrees: float) -> None:
        super().__init__(name)
        self.theta_field = theta_field
        self.max_degrees = max_degrees
        self._max_radians = math.radians(max_degrees)

    def passes(self, view: Any) -> bool:
        return float(view[self.theta_field]) < self._max_radians


_CUT_TYPES = {
    "range": lambda name, spec: RangeCut(name, spec["field"], spec["low"], spec["high"]),
    "min": lambda name, spec: MinCut(name, spec["field"], spec["min"]),
    "max": lambda name, spec: MaxCut(name, spec["field"], spec["max"]),
    "equals": lambda name, spec: EqualsCut(name, spec["field"], spec["value"]),
    "in_set": lambda name, spec: InSetCut(name, spec["field"], spec["values"]),
    "apothem": lambda name, spec: ApothemCut(
        name, spec.get("x_field", "vtx_x"), spec.get("y_field", "vtx_y"), spec["apothem"]
    ),
    "max_angle": lambda name, spec: MaxAngleCut(name, spec["field"], spec["max_degrees"]),
}


def build_cut(spec: dict[str, Any]) -> Cut:
    """
    Build a cut from its TOML description.

    Args:
        spec: {"type": one of range/min/max/equals/in_set/apothem/max_angle, "name", ...}

    Raises:
        ConfigurationError: For unknown types or missing keys
    """
    cut_type = spec.get("type")
    if cut_type not in _CUT_TYPES:
        raise ConfigurationError(f"Unknown cut type '{cut_type}' (known: {sorted(_CUT_TYPES)})")
    name = spec.get("name", cut_type)
    try:
        return _CUT_TYPES[cut_type](name, spec)
    except KeyError as e:
        raise ConfigurationError(f"Cut '{name}' of type '{cut_type}' is missing key {e}")


# ============================================================================
# Cutter
# ============================================================================


@dataclass
class SelectionResult:
    """
    Outcome of the reco selection for one (event, universe).

    Attributes:
        preselection: One flag per pre-selection cut (False after the first failure)
        sidebands: One flag per sideband cut
    """

    preselection: list[bool] = field(default_factory=list)
    sidebands: list[bool] = field(default_factory=list)

    def all(self) -> bool:
        """True iff every pre-selection cut passed."""
        return all(self.preselection)

    @property
    def sideband(self) -> int:
        """Index of the matching sideband, or -1."""
        for index, passed in enumerate(self.sidebands):
            if passed:
                return index
        return -1

    def __bool__(self) -> bool:
        return self.all()


@dataclass
class _CutStats:
    passed: int = 0
    passed_weighted: float = 0.0


class Cutter:
    """
    Ordered cut lists for one sample.

    Attributes:
        name: Sample name used in the summary
        preselection: Reco cuts (AND)
        sidebands: Reco sideband categories (mutually exclusive)
        signal_definition: Truth cuts defining signal (AND)
        phase_space: Truth fiducial/kinematic cuts (AND)
    """

    def __init__(
        self,
        preselection: Sequence[Cut],
        sidebands: Sequence[Cut] = (),
        signal_definition: Sequence[Cut] = (),
        phase_space: Sequence[Cut] = (),
        name: str = "",
    ) -> None:
        self.name = name
        self.preselection: tuple[Cut, ...] = tuple(preselection)
        self.sidebands: tuple[Cut, ...] = tuple(sidebands)
        self.signal_definition: tuple[Cut, ...] = tuple(signal_definition)
        self.phase_space: tuple[Cut, ...] = tuple(phase_space)
        self.reset_stats()

    @classmethod
    def from_config(cls, name: str, spec: dict[str, Any]) -> Cutter:
        """Build from a ``[samples.<name>]`` table of selection.toml."""
        return cls(
            [build_cut(cut) for cut in spec.get(CutKind.PRESELECTION.value, [])],
            [build_cut(cut) for cut in spec.get(CutKind.SIDEBAND.value, [])],
            [build_cut(cut) for cut in spec.get(CutKind.SIGNAL_DEFINITION.value, [])],
            [build_cut(cut) for cut in spec.get(CutKind.PHASE_SPACE.value, [])],
            name=name,
        )

    def _groups(self) -> list[tuple[CutKind, tuple[Cut, ...]]]:
        return [
            (CutKind.PRESELECTION, self.preselection),
            (CutKind.SIDEBAND, self.sidebands),
            (CutKind.SIGNAL_DEFINITION, self.signal_definition),
            (CutKind.PHASE_SPACE, self.phase_space),
        ]

    def reset_stats(self) -> None:
        """Zero all pass counters (between passes)."""
        self._reco_seen = _CutStats()
        self._truth_seen = _CutStats()
        self._stats: dict[CutKind, list[_CutStats]] = {
            kind: [_CutStats() for _ in cuts] for kind, cuts in self._groups()
        }

    @staticmethod
    def _count(stats: _CutStats, weight: float) -> None:
        stats.passed += 1
        stats.passed_weighted += weight

    # reco side --------------------------------------------------------

    def _select(self, view: Any, weight: float) -> SelectionResult:
        count = view.is_cv
        if count:
            self._count(self._reco_seen, weight)

        result = SelectionResult()
        passed_so_far = True
        for cut, stats in zip(self.preselection, self._stats[CutKind.PRESELECTION]):
            passed_so_far = passed_so_far and cut(view)
            result.preselection.append(passed_so_far)
            if passed_so_far and count:
                self._count(stats, weight)

        for cut, stats in zip(self.sidebands, self._stats[CutKind.SIDEBAND]):
            passed = cut(view)
            result.sidebands.append(passed)
            if passed and count:
                self._count(stats, weight)

        if sum(result.sidebands) > 1:
            matched = [cut.name for cut, passed in zip(self.sidebands, result.sidebands) if passed]
            raise SelectionError(
                f"Event {view.event.index} matches more than one sideband in '{self.name}': {matched}"
            )
        return result

    def is_mc_selected(self, view: Any, weight: float) -> SelectionResult:
        """Pre-selection and sideband flags of a simulated event in one universe."""
        return self._select(view, weight)

    def is_data_selected(self, view: Any) -> SelectionResult:
        """Pre-selection and sideband flags of a data event (weight 1)."""
        return self._select(view, 1.0)

    # truth side -------------------------------------------------------

    def _truth_pass(self, view: Any, weight: float) -> bool:
        count = view.is_cv
        if count:
            self._count(self._truth_seen, weight)

        for kind in (CutKind.SIGNAL_DEFINITION, CutKind.PHASE_SPACE):
            cuts = self.signal_definition if kind is CutKind.SIGNAL_DEFINITION else self.phase_space
            for cut, stats in zip(cuts, self._stats[kind]):
                if not cut(view):
                    return False
                if count:
                    self._count(stats, weight)
        return True

    def is_signal(self, truth_view: Any, weight: float) -> bool:
        """Signal definition AND phase space for a reco-selected event."""
        return self._truth_pass(truth_view, weight)

    def is_efficiency_denominator(self, truth_view: Any, weight: float) -> bool:
        """Signal definition AND phase space, independent of reco selection."""
        return self._truth_pass(truth_view, weight)

    # reporting --------------------------------------------------------

    def summary(self) -> pd.DataFrame:
        """
        Cumulative CV pass counts per cut.

        Returns:
            DataFrame with columns cut, kind, passed, passed_weighted, fraction
            (fraction of events seen at that level)
        """
        rows = []
        for kind, cuts in self._groups():
            seen = self._truth_seen if kind in (CutKind.SIGNAL_DEFINITION, CutKind.PHASE_SPACE) else self._reco_seen
            for cut, stats in zip(cuts, self._stats[kind]):
                rows.append(
                    {
                        "cut": cut.name,
                        "kind": kind.value,
                        "passed": stats.passed,
                        "passed_weighted": stats.passed_weighted,
                        "fraction": stats.passed / seen.passed if seen.passed else 0.0,
                    }
                )
        return pd.DataFrame(rows, columns=["cut", "kind", "passed", "passed_weighted", "fraction"])

    @property
    def n_reco_seen(self) -> int:
        return self._reco_seen.passed

    @property
    def n_truth_seen(self) -> int:
        return self._truth_seen.passed

    def __repr__(self) -> str:
        return (
            f"Cutter({self.name!r}, preselection={len(self.preselection)}, "
            f"sidebands={len(self.sidebands)}, signal={len(self.signal_definition)}, "
            f"phase_space={len(self.phase_space)})"
        )
