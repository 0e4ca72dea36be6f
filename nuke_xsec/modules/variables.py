"""
Derived quantities and the Variables that own histogram accumulators.

A quantity maps an event view to a float. A Variable pairs a reco quantity
(evaluated through a RecoView) with a true quantity (evaluated through a
TruthView) and books the accumulators filled by the event loop:

    data, selected_mc_reco, selected_signal_reco, efficiency_numerator,
    efficiency_denominator, migration (1D only), one background per category

Store keys are "<variable>_<role>", e.g. "tracker_pTmu_migration".
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable

from .background import BackgroundCategory
from .event_source import RecoView, TruthView
from .exceptions import ConfigurationError, TruthAccessError
from .histograms import CV_BAND, HistogramAccumulator

logger = logging.getLogger("NukeXSec.Variables")


class Quantity:
    """Interface: a pure function of one event view."""

    name: str = "quantity"

    def __call__(self, view: Any) -> float:
        raise NotImplementedError


class FieldQuantity(Quantity):
    """A single field multiplied by a unit scale."""

    def __init__(self, field_name: str, scale: float = 1.0) -> None:
        self.field_name = field_name
        self.scale = scale
        self.name = field_name

    def __call__(self, view: Any) -> float:
        return float(view[self.field_name]) * self.scale


class TransverseMomentum(Quantity):
    """p * sin(theta) from a momentum field and a polar-angle field (radians)."""

    def __init__(self, p_field: str, theta_field: str, scale: float = 1.0) -> None:
        self.p_field = p_field
        self.theta_field = theta_field
        self.scale = scale
        self.name = f"pT({p_field})"

    def __call__(self, view: Any) -> float:
        return float(view[self.p_field]) * math.sin(float(view[self.theta_field])) * self.scale


class LongitudinalMomentum(Quantity):
    """p * cos(theta) from a momentum field and a polar-angle field (radians)."""

    def __init__(self, p_field: str, theta_field: str, scale: float = 1.0) -> None:
        self.p_field = p_field
        self.theta_field = theta_field
        self.scale = scale
        self.name = f"pz({p_field})"

    def __call__(self, view: Any) -> float:
        return float(view[self.p_field]) * math.cos(float(view[self.theta_field])) * self.scale


def build_quantity(spec: dict[str, Any]) -> Quantity:
    """
    Build a quantity from its TOML description.

    Args:
        spec: {"kind": "field"|"pt"|"pz", "field" or "p"/"theta", "scale"}

    Raises:
        ConfigurationError: For unknown kinds or missing keys
    """
    kind = spec.get("kind", "field")
    scale = float(spec.get("scale", 1.0))
    try:
        if kind == "field":
            return FieldQuantity(spec["field"], scale)
        if kind == "pt":
            return TransverseMomentum(spec["p"], spec["theta"], scale)
        if kind == "pz":
            return LongitudinalMomentum(spec["p"], spec["theta"], scale)
    except KeyError as e:
        raise ConfigurationError(f"Quantity of kind '{kind}' is missing key {e}")
    raise ConfigurationError(f"Unknown quantity kind '{kind}'")


def _require_reco(view: Any) -> None:
    if not isinstance(view, RecoView):
        raise TruthAccessError(f"Reco value requested through {type(view).__name__}")


def _require_truth(view: Any) -> None:
    if not isinstance(view, TruthView):
        raise TruthAccessError(f"True value requested through {type(view).__name__}")


class _VariableBase:
    """Booking, filling and bookkeeping shared by 1D and 2D variables."""

    has_migration: bool = False

    def __init__(
        self,
        name: str,
        band_sizes: dict[str, int] | None,
        truth_band_sizes: dict[str, int] | None,
        label: str,
    ) -> None:
        band_sizes = dict(band_sizes) if band_sizes else {CV_BAND: 1}
        if truth_band_sizes is not None and dict(truth_band_sizes) != band_sizes:
            raise ConfigurationError(
                f"Variable '{name}': reco universes {band_sizes} and truth universes "
                f"{dict(truth_band_sizes)} differ"
            )
        self.name: str = name
        self.label: str = label
        self.band_sizes: dict[str, int] = band_sizes

    def _book(self, role: str, band_sizes: dict[str, int] | None = None) -> HistogramAccumulator:
        raise NotImplementedError

    def _book_all(self) -> None:
        self.data = self._book("data", {CV_BAND: 1})
        self.selected_mc_reco = self._book("selected_mc_reco")
        self.selected_signal_reco = self._book("selected_signal_reco")
        self.efficiency_numerator = self._book("efficiency_numerator")
        self.efficiency_denominator = self._book("efficiency_denominator")
        self.backgrounds: dict[BackgroundCategory, HistogramAccumulator] = {
            category: self._book(f"background_{category.value}") for category in BackgroundCategory
        }

    # value extraction -------------------------------------------------

    def _reco(self, view: RecoView) -> tuple[float, ...]:
        raise NotImplementedError

    def _true(self, view: TruthView) -> tuple[float, ...]:
        raise NotImplementedError

    # filling ----------------------------------------------------------

    def fill_data(self, view: RecoView, weight: float = 1.0) -> None:
        self.data.fill(view.universe, *self._reco(view), weight=weight)

    def fill_reco(self, view: RecoView, weight: float) -> None:
        """Fill the selected-MC ("fake data") reco distribution."""
        self.selected_mc_reco.fill(view.universe, *self._reco(view), weight=weight)

    def fill_signal_reco(self, view: RecoView, weight: float) -> None:
        self.selected_signal_reco.fill(view.universe, *self._reco(view), weight=weight)

    def fill_background(self, category: BackgroundCategory, view: RecoView, weight: float) -> None:
        self.backgrounds[category].fill(view.universe, *self._reco(view), weight=weight)

    def fill_efficiency_numerator(self, view: TruthView, weight: float) -> None:
        self.efficiency_numerator.fill(view.universe, *self._true(view), weight=weight)

    def fill_efficiency_denominator(self, view: TruthView, weight: float) -> None:
        self.efficiency_denominator.fill(view.universe, *self._true(view), weight=weight)

    def fill_migration(self, reco_view: RecoView, truth_view: TruthView, weight: float) -> None:
        raise ConfigurationError(f"Variable '{self.name}' has no migration matrix")

    # bookkeeping ------------------------------------------------------

    def mc_histograms(self) -> dict[str, HistogramAccumulator]:
        """MC accumulators keyed by store name."""
        hists = [
            self.selected_mc_reco,
            self.selected_signal_reco,
            self.efficiency_numerator,
            self.efficiency_denominator,
            *self.backgrounds.values(),
        ]
        if self.has_migration:
            hists.append(self.migration)
        return {hist.name: hist for hist in hists}

    def data_histograms(self) -> dict[str, HistogramAccumulator]:
        return {self.data.name: self.data}

    def merge(self, other: _VariableBase) -> _VariableBase:
        """Add another variable's accumulators (e.g. from another entry range)."""
        if other.name != self.name:
            raise ConfigurationError(f"Cannot merge variable '{other.name}' into '{self.name}'")
        for key, hist in self.mc_histograms().items():
            hist.merge(other.mc_histograms()[key])
        self.data.merge(other.data)
        return self

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, bands={self.band_sizes})"


class Variable(_VariableBase):
    """
    One-dimensional observable.

    Attributes:
        name: Variable name, also the prefix of its store keys
        edges: Bin edges shared by every accumulator
        reco_quantity: Quantity evaluated on RecoViews
        true_quantity: Quantity evaluated on TruthViews
        migration: 2D (reco, true) accumulator
    """

    has_migration = True

    def __init__(
        self,
        name: str,
        edges: Iterable[float],
        reco_quantity: Quantity,
        true_quantity: Quantity,
        band_sizes: dict[str, int] | None = None,
        truth_band_sizes: dict[str, int] | None = None,
        label: str = "",
    ) -> None:
        super().__init__(name, band_sizes, truth_band_sizes, label)
        self.edges = list(edges)
        self.reco_quantity = reco_quantity
        self.true_quantity = true_quantity
        self._book_all()
        self.migration = HistogramAccumulator(
            f"{name}_migration", self.edges, self.edges, band_sizes=self.band_sizes,
            title=f"reco {label}; true {label}",
        )

    def _book(self, role: str, band_sizes: dict[str, int] | None = None) -> HistogramAccumulator:
        return HistogramAccumulator(
            f"{self.name}_{role}", self.edges, band_sizes=band_sizes or self.band_sizes, title=self.label
        )

    def reco_value(self, view: RecoView) -> float:
        _require_reco(view)
        return self.reco_quantity(view)

    def true_value(self, view: TruthView) -> float:
        _require_truth(view)
        return self.true_quantity(view)

    def _reco(self, view: RecoView) -> tuple[float, ...]:
        return (self.reco_value(view),)

    def _true(self, view: TruthView) -> tuple[float, ...]:
        return (self.true_value(view),)

    def fill_migration(self, reco_view: RecoView, truth_view: TruthView, weight: float) -> None:
        """Fill (reco bin, true bin) once per selected signal event."""
        self.migration.fill(
            reco_view.universe, self.reco_value(reco_view), self.true_value(truth_view), weight=weight
        )


class Variable2D(_VariableBase):
    """Two-dimensional observable; no migration matrix is booked."""

    def __init__(
        self,
        name: str,
        x_edges: Iterable[float],
        y_edges: Iterable[float],
        reco_quantities: tuple[Quantity, Quantity],
        true_quantities: tuple[Quantity, Quantity],
        band_sizes: dict[str, int] | None = None,
        truth_band_sizes: dict[str, int] | None = None,
        label: str = "",
    ) -> None:
        super().__init__(name, band_sizes, truth_band_sizes, label)
        self.x_edges = list(x_edges)
        self.y_edges = list(y_edges)
        self.reco_quantities = reco_quantities
        self.true_quantities = true_quantities
        self._book_all()

    @classmethod
    def from_variables(cls, name: str, x: Variable, y: Variable, **kwargs: Any) -> Variable2D:
        """Combine two 1D variables into a 2D one with their binnings."""
        return cls(
            name,
            x.edges,
            y.edges,
            (x.reco_quantity, y.reco_quantity),
            (x.true_quantity, y.true_quantity),
            band_sizes=kwargs.pop("band_sizes", x.band_sizes),
            label=kwargs.pop("label", f"{x.label} vs {y.label}"),
            **kwargs,
        )

    def _book(self, role: str, band_sizes: dict[str, int] | None = None) -> HistogramAccumulator:
        return HistogramAccumulator(
            f"{self.name}_{role}",
            self.x_edges,
            self.y_edges,
            band_sizes=band_sizes or self.band_sizes,
            title=self.label,
        )

    def reco_values(self, view: RecoView) -> tuple[float, float]:
        _require_reco(view)
        return (self.reco_quantities[0](view), self.reco_quantities[1](view))

    def true_values(self, view: TruthView) -> tuple[float, float]:
        _require_truth(view)
        return (self.true_quantities[0](view), self.true_quantities[1](view))

    def _reco(self, view: RecoView) -> tuple[float, ...]:
        return self.reco_values(view)

    def _true(self, view: TruthView) -> tuple[float, ...]:
        return self.true_values(view)


def build_variables(
    sample: str,
    observables: dict[str, dict[str, Any]],
    band_sizes: dict[str, int],
    truth_band_sizes: dict[str, int] | None = None,
) -> list[_VariableBase]:
    """
    Book one Variable per observable (and one Variable2D per 2D observable) for a sample.

    Args:
        sample: Sample name, used as the variable name prefix
        observables: Parsed variables.toml ``[observables.<name>]`` tables
        band_sizes: Universe layout of the reco universe set
        truth_band_sizes: Universe layout of the truth universe set

    Returns:
        1D variables first, then 2D variables, in configuration order
    """
    one_d: dict[str, Variable] = {}
    two_d: list[tuple[str, dict[str, Any]]] = []
    for observable, spec in observables.items():
        if "x" in spec:
            two_d.append((observable, spec))
            continue
        if "edges" not in spec:
            raise ConfigurationError(f"Observable '{observable}' has no bin edges")
        one_d[observable] = Variable(
            f"{sample}_{observable}",
            spec["edges"],
            build_quantity(spec["reco"]),
            build_quantity(spec["truth"]),
            band_sizes=band_sizes,
            truth_band_sizes=truth_band_sizes,
            label=spec.get("label", observable),
        )

    variables: list[_VariableBase] = list(one_d.values())
    for observable, spec in two_d:
        if spec["x"] not in one_d or spec["y"] not in one_d:
            raise ConfigurationError(
                f"2D observable '{observable}' refers to unknown axes {spec['x']!r}, {spec['y']!r}"
            )
        variables.append(
            Variable2D.from_variables(
                f"{sample}_{observable}",
                one_d[spec["x"]],
                one_d[spec["y"]],
                truth_band_sizes=truth_band_sizes,
            )
        )
    logger.debug(f"Booked {len(variables)} variables for sample '{sample}'")
    return variables
