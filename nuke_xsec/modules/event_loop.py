"""
Three-pass event loop filling every sample's variables in every universe.

Passes, each over entries in index order:
    1. MC reco: selection, fake data, signal (efficiency numerator, migration,
       signal reco) or background by category
    2. Truth: efficiency denominator for every universe
    3. Data: pre-selection only, central value, weight 1

A sample pairs a Cutter with the Variables it fills (e.g. the active tracker
or one nuclear target), and optionally with studies filled for the same
selected events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tqdm import tqdm

from ..utils.logging_config import get_tqdm_kwargs
from .background import classify_background
from .cutter import Cutter
from .event_source import EventContext, RecoView, TruthView
from .exceptions import (
    BranchMissingError,
    ConfigurationError,
    EventLoopError,
    HistogramError,
    SelectionError,
    TruthAccessError,
)
from .flux import FluxTable, flux_integral_histogram
from .histogram_store import HistogramStore
from .studies import build_studies
from .universes import UniverseSet
from .variables import Variable, build_variables

logger = logging.getLogger("NukeXSec.EventLoop")

POT_PARAMETER = "pot_used"

# Per-event failures that abort a pass
_EVENT_ERRORS = (
    BranchMissingError,
    TruthAccessError,
    HistogramError,
    SelectionError,
    TypeError,
    ValueError,
)


@dataclass
class Sample:
    """
    Attributes:
        name: Sample name, prefix of its variables
        cutter: Selection of the sample
        variables: Variables filled for selected events
        fiducial_nucleons: Nucleons in the sample's fiducial volume
        studies: Studies filled for the same selected events
    """

    name: str
    cutter: Cutter
    variables: list[Any] = field(default_factory=list)
    fiducial_nucleons: float = 0.0
    studies: list[Any] = field(default_factory=list)


def build_samples(config: Any, universes: UniverseSet, truth_universes: UniverseSet | None = None) -> list[Sample]:
    """Samples of an AnalysisConfig with variables and studies booked for the universe sets."""
    truth_sizes = truth_universes.band_sizes if truth_universes is not None else None
    samples = []
    for name in config.sample_names:
        samples.append(
            Sample(
                name,
                Cutter.from_config(name, config.sample_cuts(name)),
                build_variables(name, config.observables, universes.band_sizes, truth_sizes),
                config.fiducial_nucleons(name),
                build_studies(name, config.studies, config.observables, universes.band_sizes),
            )
        )
    return samples


def _entry_range(n_entries: int, entries: range | None) -> range:
    if entries is None:
        return range(n_entries)
    return range(max(entries.start, 0), min(entries.stop, n_entries))


class EventLoop:
    """
    Drives the MC reco, truth and data passes.

    Attributes:
        universes: Universes of the MC reco pass
        truth_universes: Universes of the truth pass (same layout as universes)
        data_universes: Central value only
        samples: Samples filled per event
    """

    def __init__(
        self,
        universes: UniverseSet,
        samples: list[Sample],
        truth_universes: UniverseSet | None = None,
    ) -> None:
        self.universes = universes
        self.truth_universes = truth_universes if truth_universes is not None else universes
        self.data_universes = UniverseSet.cv_only(universes.model)
        self.samples = samples

        if self.truth_universes.band_sizes != universes.band_sizes:
            raise ConfigurationError(
                f"Reco universes {universes.band_sizes} and truth universes "
                f"{self.truth_universes.band_sizes} differ"
            )
        for sample in samples:
            for variable in sample.variables:
                if variable.band_sizes != universes.band_sizes:
                    raise ConfigurationError(
                        f"Variable '{variable.name}' booked for {variable.band_sizes}, "
                        f"universe set is {universes.band_sizes}"
                    )
            for study in sample.studies:
                if study.band_sizes != universes.band_sizes:
                    raise ConfigurationError(
                        f"Study '{study.name}' booked for {study.band_sizes}, "
                        f"universe set is {universes.band_sizes}"
                    )

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_mc_reco(self, source: Any, entries: range | None = None) -> int:
        """
        MC reco pass.

        Returns:
            Number of entries processed

        Raises:
            EventLoopError: On a missing field or bad truth access
        """
        if not source.is_mc:
            raise ConfigurationError(f"MC reco pass needs a simulated source, got {source}")

        cv = self.universes.cv
        entry_range = _entry_range(len(source), entries)
        for entry in tqdm(entry_range, **get_tqdm_kwargs(desc="MC reco pass")):
            try:
                event = source.reposition(entry)
                cv_weight = self.universes.weight(cv, event)
                for universe in self.universes:
                    weight = self.universes.weight(universe, event)
                    for sample in self.samples:
                        self._fill_mc_reco(sample, event, universe, weight, cv_weight)
            except _EVENT_ERRORS as e:
                raise EventLoopError("MC reco", entry, f"{type(e).__name__}: {e}") from e
        return len(entry_range)

    @staticmethod
    def _fill_mc_reco(sample: Sample, event: Any, universe: Any, weight: float, cv_weight: float) -> None:
        reco = RecoView(event, universe, EventContext())
        if not sample.cutter.is_mc_selected(reco, cv_weight).all():
            return

        for variable in sample.variables:
            variable.fill_reco(reco, weight)

        truth = reco.truth()
        is_signal = sample.cutter.is_signal(truth, cv_weight)
        if is_signal:
            for variable in sample.variables:
                variable.fill_efficiency_numerator(truth, weight)
                if variable.has_migration:
                    variable.fill_migration(reco, truth, weight)
                variable.fill_signal_reco(reco, weight)
        else:
            category = classify_background(truth)
            for variable in sample.variables:
                variable.fill_background(category, reco, weight)

        for study in sample.studies:
            study.fill_mc(reco, truth, weight, is_signal)

    def run_truth(self, source: Any, entries: range | None = None) -> int:
        """Efficiency-denominator pass over every simulated event."""
        if not source.is_mc:
            raise ConfigurationError(f"Truth pass needs a simulated source, got {source}")

        cv = self.truth_universes.cv
        entry_range = _entry_range(len(source), entries)
        for entry in tqdm(entry_range, **get_tqdm_kwargs(desc="Truth pass")):
            try:
                event = source.reposition(entry)
                cv_weight = self.truth_universes.weight(cv, event)
                for universe in self.truth_universes:
                    weight = self.truth_universes.weight(universe, event)
                    for sample in self.samples:
                        truth = TruthView(event, universe, EventContext())
                        if sample.cutter.is_efficiency_denominator(truth, cv_weight):
                            for variable in sample.variables:
                                variable.fill_efficiency_denominator(truth, weight)
            except _EVENT_ERRORS as e:
                raise EventLoopError("Truth", entry, f"{type(e).__name__}: {e}") from e
        return len(entry_range)

    def run_data(self, source: Any, entries: range | None = None) -> int:
        """Data pass: central value only, weight 1."""
        cv = self.data_universes.cv
        entry_range = _entry_range(len(source), entries)
        for entry in tqdm(entry_range, **get_tqdm_kwargs(desc="Data pass")):
            try:
                event = source.reposition(entry)
                for sample in self.samples:
                    reco = RecoView(event, cv, EventContext())
                    if sample.cutter.is_data_selected(reco).all():
                        for variable in sample.variables:
                            variable.fill_data(reco)
                        for study in sample.studies:
                            study.fill_data(reco)
            except _EVENT_ERRORS as e:
                raise EventLoopError("Data", entry, f"{type(e).__name__}: {e}") from e
        return len(entry_range)

    def run(
        self,
        mc_source: Any,
        truth_source: Any,
        data_source: Any | None = None,
        entries: range | None = None,
    ) -> None:
        """All passes in order, logging and resetting the cut summaries after each."""
        self.run_mc_reco(mc_source, entries)
        self.report_cuts("MC reco")
        self.run_truth(truth_source, entries)
        self.report_cuts("Truth")
        if data_source is not None:
            self.run_data(data_source, entries)
            self.report_cuts("Data")

    def report_cuts(self, label: str) -> None:
        """Log every sample's cut summary and reset its counters."""
        for sample in self.samples:
            summary = sample.cutter.summary()
            logger.info(f"{label} cut summary for '{sample.name}':\n{summary.to_string(index=False)}")
            sample.cutter.reset_stats()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def write_mc(
        self,
        store: HistogramStore,
        pot: float,
        flux: FluxTable | None = None,
        e_min: float = 0.0,
        e_max: float = 100.0,
    ) -> None:
        """
        Write MC accumulators, exposure, flux integrals and nucleon counts.

        Flux integrals and nucleon counts are written per 1D variable, named
        "<variable>_reweightedflux_integrated" and "<variable>_fiducial_nucleons".
        """
        for sample in self.samples:
            for variable in sample.variables:
                for name, hist in variable.mc_histograms().items():
                    store.write_histogram(name, hist)
                if not isinstance(variable, Variable):
                    continue
                if flux is not None:
                    flux_hist = flux_integral_histogram(
                        flux,
                        variable.efficiency_numerator,
                        e_min=e_min,
                        e_max=e_max,
                        name=f"{variable.name}_reweightedflux_integrated",
                    )
                    store.write_histogram(flux_hist.name, flux_hist)
                store.write_parameter(f"{variable.name}_fiducial_nucleons", sample.fiducial_nucleons)
            for study in sample.studies:
                for name, hist in study.mc_histograms().items():
                    store.write_histogram(name, hist)
        if flux is None:
            logger.warning("No flux table configured: flux integrals not written")
        store.write_parameter(POT_PARAMETER, pot)

    def write_data(self, store: HistogramStore, pot: float) -> None:
        for sample in self.samples:
            for booked in (*sample.variables, *sample.studies):
                for name, hist in booked.data_histograms().items():
                    store.write_histogram(name, hist)
        store.write_parameter(POT_PARAMETER, pot)

    def merge(self, other: EventLoop) -> EventLoop:
        """
        Add another loop's accumulators (same samples, another entry range).

        Raises:
            ConfigurationError: If samples, their variables or their studies differ
        """
        if [s.name for s in self.samples] != [s.name for s in other.samples]:
            raise ConfigurationError("Cannot merge event loops with different samples")
        for mine, theirs in zip(self.samples, other.samples):
            if len(mine.variables) != len(theirs.variables) or len(mine.studies) != len(theirs.studies):
                raise ConfigurationError(
                    f"Cannot merge sample '{mine.name}': {len(mine.variables)} variables and "
                    f"{len(mine.studies)} studies vs {len(theirs.variables)} and {len(theirs.studies)}"
                )
        for mine, theirs in zip(self.samples, other.samples):
            for variable, other_variable in zip(mine.variables, theirs.variables):
                variable.merge(other_variable)
            for study, other_study in zip(mine.studies, theirs.studies):
                study.merge(other_study)
        return self
