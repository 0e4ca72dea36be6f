"""
Cross-section extraction from event-loop histogram stores.

For every (material, observable) the ingredients of the material's targets
are summed, then:

    data -> background subtraction -> unfolding -> / efficiency
         -> / (flux * nucleons * POT), * 1e4, / bin width

A simulated cross section is normalized from the efficiency denominator the
same way, for closure comparisons.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import numpy as np

from .background import BackgroundCategory, subtract_backgrounds
from .event_loop import POT_PARAMETER
from .exceptions import ConfigurationError, MissingIngredient, UnfoldingError
from .histogram_store import HistogramStore
from .histograms import HistogramAccumulator
from .normalization import normalize
from .unfolding import DEFAULT_COVARIANCE_ITERATIONS, BayesianUnfolder

logger = logging.getLogger("NukeXSec.CrossSection")

RESULT_KEYS = (
    "backgroundSubtracted",
    "unfolded",
    "efficiency",
    "flux_reweighted",
    "crossSection",
    "simulatedEventRate",
    "simulatedCrossSection",
)


def output_name(material: str, observable: str) -> str:
    return f"{material}_{observable}_crossSection"


@dataclass
class Ingredients:
    """Target-summed inputs of one extraction."""

    data: HistogramAccumulator
    migration: HistogramAccumulator
    efficiency_numerator: HistogramAccumulator
    efficiency_denominator: HistogramAccumulator
    flux: HistogramAccumulator
    backgrounds: list[HistogramAccumulator]
    fiducial_nucleons: float


@dataclass
class CrossSectionResult:
    """
    Attributes:
        material: Material name (e.g. "Iron")
        observable: Observable name (e.g. "pTmu")
        histograms: Result histograms under RESULT_KEYS
    """

    material: str
    observable: str
    histograms: dict[str, HistogramAccumulator] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True

    @property
    def cross_section(self) -> HistogramAccumulator:
        return self.histograms["crossSection"]

    def integrated_cross_section(self) -> tuple[float, float]:
        """
        Cross section summed over the in-range bins, and its uncertainty.

        The differential cross section is multiplied by the bin widths; the
        uncertainty propagates the total covariance (statistical, stored and
        every systematic band) through that weighted sum.

        Returns:
            (value, uncertainty)
        """
        xsec = self.cross_section
        widths = xsec.bin_widths()[1:-1]
        cov = xsec.total_covariance()[1:-1, 1:-1]
        value = float(xsec.cv[1:-1] @ widths)
        variance = float(widths @ cov @ widths)
        return value, float(np.sqrt(max(variance, 0.0)))

    def write(self, output_dir: str | Path = ".") -> Path:
        """
        Write every result histogram to "<material>_<observable>_crossSection".

        Raises:
            OutputError: If the file already exists or cannot be written
        """
        store = HistogramStore.open(
            Path(output_dir) / output_name(self.material, self.observable),
            mode="create",
            description=f"{self.observable} cross section on {self.material}",
        )
        for key in RESULT_KEYS:
            store.write_histogram(key, self.histograms[key])
        return store.save()


@dataclass
class ExtractionFailure:
    """A (material, observable) combination that could not be extracted."""

    material: str
    observable: str
    reason: str

    @property
    def ok(self) -> bool:
        return False


class CrossSectionExtractor:
    """
    Extract cross sections from an MC store and a data store.

    Attributes:
        mc_store: Event-loop MC output
        data_store: Event-loop data output
        unfolder: Bayesian unfolder with the configured iterations
        n_playlists: Number of playlists merged into the stores
        mc_pot: MC exposure
        data_pot: Data exposure
    """

    def __init__(
        self,
        mc_store: HistogramStore,
        data_store: HistogramStore,
        n_iterations: int,
        n_playlists: int = 1,
        covariance_iterations: int = DEFAULT_COVARIANCE_ITERATIONS,
    ) -> None:
        if n_playlists < 1:
            raise ConfigurationError(f"Number of merged playlists must be positive, got {n_playlists}")
        self.mc_store = mc_store
        self.data_store = data_store
        self.unfolder = BayesianUnfolder(n_iterations, covariance_iterations)
        self.n_playlists = n_playlists

        try:
            self.mc_pot = mc_store.read_parameter(POT_PARAMETER)
            self.data_pot = data_store.read_parameter(POT_PARAMETER)
        except MissingIngredient as e:
            raise ConfigurationError(f"Exposure missing from input: {e}")
        logger.info(f"Data POT: {self.data_pot:.4g}, MC POT: {self.mc_pot:.4g}")

    def gather(self, targets: list[str], observable: str) -> Ingredients:
        """
        Sum the ingredients of every target.

        Flux integrals are averaged over targets and merged playlists; nucleon
        counts are summed over targets and divided by the number of playlists.

        Raises:
            MissingIngredient: If any target lacks an ingredient
        """
        if not targets:
            raise ConfigurationError(f"No targets given for observable '{observable}'")

        def summed(store: HistogramStore, suffix: str) -> HistogramAccumulator:
            total = None
            for target in targets:
                hist = store.read_histogram(f"{target}_{observable}_{suffix}")
                total = hist if total is None else total.merge(hist)
            return total

        flux = summed(self.mc_store, "reweightedflux_integrated")
        # Every target sees the same flux, so the summed integral is averaged over
        # targets here rather than only divided by the playlist count.
        flux.scale(1.0 / (len(targets) * self.n_playlists))

        nucleons = sum(
            self.mc_store.read_parameter(f"{target}_{observable}_fiducial_nucleons") for target in targets
        )

        return Ingredients(
            data=summed(self.data_store, "data"),
            migration=summed(self.mc_store, "migration"),
            efficiency_numerator=summed(self.mc_store, "efficiency_numerator"),
            efficiency_denominator=summed(self.mc_store, "efficiency_denominator"),
            flux=flux,
            backgrounds=[
                summed(self.mc_store, f"background_{category.value}") for category in BackgroundCategory
            ],
            fiducial_nucleons=nucleons / self.n_playlists,
        )

    def extract(self, material: str, targets: list[str], observable: str) -> CrossSectionResult:
        """
        Cross section of one observable on one material.

        Raises:
            MissingIngredient: If an input histogram or parameter is absent
            UnfoldingError: If unfolding fails
        """
        logger.info(f"Extracting {observable} on {material} from {targets}")
        ingredients = self.gather(targets, observable)

        simulated_rate = ingredients.efficiency_denominator.clone("simulatedEventRate")
        data = ingredients.data.clone()
        data.add_missing_bands(ingredients.migration)

        background_subtracted = subtract_backgrounds(
            data, ingredients.backgrounds, self.data_pot, self.mc_pot, name="backgroundSubtracted"
        )
        unfolded = self.unfolder.unfold(background_subtracted, ingredients.migration, name="unfolded").unfolded

        efficiency = ingredients.efficiency_numerator.clone("efficiency")
        efficiency.divide(ingredients.efficiency_denominator, binomial=True)

        efficiency_corrected = unfolded.clone("efficiencyCorrected").divide(efficiency)
        cross_section = normalize(
            efficiency_corrected,
            ingredients.flux,
            ingredients.fiducial_nucleons,
            self.data_pot,
            name="crossSection",
        )
        simulated_cross_section = normalize(
            simulated_rate,
            ingredients.flux,
            ingredients.fiducial_nucleons,
            self.mc_pot,
            name="simulatedCrossSection",
        )

        return CrossSectionResult(
            material,
            observable,
            {
                "backgroundSubtracted": background_subtracted,
                "unfolded": unfolded,
                "efficiency": efficiency,
                "flux_reweighted": ingredients.flux.clone("flux_reweighted"),
                "crossSection": cross_section,
                "simulatedEventRate": simulated_rate,
                "simulatedCrossSection": simulated_cross_section,
            },
        )

    def extract_all(
        self, materials: dict[str, list[str]], observables: Iterable[str]
    ) -> list[CrossSectionResult | ExtractionFailure]:
        """
        Extract every (material, observable); failures are reported, not raised.

        Returns:
            One result per combination, observables in the outer loop
        """
        results: list[CrossSectionResult | ExtractionFailure] = []
        for observable in observables:
            for material, targets in materials.items():
                try:
                    results.append(self.extract(material, targets, observable))
                except (MissingIngredient, UnfoldingError) as e:
                    logger.error(f"Failed to extract a cross section for {material} and {observable}: {e}")
                    results.append(ExtractionFailure(material, observable, str(e)))
        n_failed = sum(1 for result in results if not result.ok)
        logger.info(f"Extracted {len(results) - n_failed} of {len(results)} cross sections")
        return results
