"""
Reweighted neutrino flux tables and flux-integral histograms.

A flux table is a CSV with one row per neutrino-energy bin:

    e_low,e_high,cv,flux_0,flux_1,...

Flux values are per m^2 per POT per bin; energies in GeV. Columns flux_i
hold the flux in universe i of the flux band.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, DataLoadError
from .histograms import CV_BAND, HistogramAccumulator

logger = logging.getLogger("NukeXSec.Flux")

DEFAULT_E_MIN = 0.0
DEFAULT_E_MAX = 100.0


class FluxTable:
    """
    Binned flux per universe.

    Attributes:
        table: DataFrame with e_low, e_high, cv and flux_<i> columns
        flux_band: Name of the universe band whose universes have their own columns
    """

    REQUIRED_COLUMNS = ("e_low", "e_high", "cv")

    def __init__(self, table: pd.DataFrame, flux_band: str = "Flux") -> None:
        missing = [col for col in self.REQUIRED_COLUMNS if col not in table.columns]
        if missing:
            raise ConfigurationError(f"Flux table is missing columns {missing}")
        table = table.sort_values("e_low").reset_index(drop=True)
        if np.any(table["e_high"].to_numpy() <= table["e_low"].to_numpy()):
            raise ConfigurationError("Flux table has bins with e_high <= e_low")
        self.table = table
        self.flux_band = flux_band

    @classmethod
    def from_csv(cls, path: str | Path, flux_band: str = "Flux") -> FluxTable:
        path = Path(path)
        try:
            table = pd.read_csv(path)
        except FileNotFoundError:
            raise DataLoadError(f"Flux table not found: {path}")
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise DataLoadError(f"Error reading flux table {path}: {e}")
        logger.info(f"Loaded flux table {path.name}: {len(table)} energy bins")
        return cls(table, flux_band)

    @property
    def n_universes(self) -> int:
        return sum(1 for col in self.table.columns if col.startswith("flux_"))

    def column_for(self, band: str, index: int) -> str:
        """Column holding the flux of one universe (cv for bands without their own)."""
        if band != self.flux_band:
            return CV_BAND
        column = f"flux_{index}"
        if column not in self.table.columns:
            raise ConfigurationError(
                f"Flux table has {self.n_universes} universes, universe {index} requested"
            )
        return column

    def integrate(self, e_min: float = DEFAULT_E_MIN, e_max: float = DEFAULT_E_MAX, column: str = CV_BAND) -> float:
        """
        Integrated flux between e_min and e_max.

        Partially covered bins contribute in proportion to their overlap.
        """
        low = self.table["e_low"].to_numpy()
        high = self.table["e_high"].to_numpy()
        overlap = np.clip(np.minimum(high, e_max) - np.maximum(low, e_min), 0.0, None)
        fraction = overlap / (high - low)
        return float(np.sum(fraction * self.table[column].to_numpy()))


def flux_integral_histogram(
    flux: FluxTable,
    template: HistogramAccumulator,
    band_sizes: Mapping[str, int] | None = None,
    e_min: float = DEFAULT_E_MIN,
    e_max: float = DEFAULT_E_MAX,
    name: str | None = None,
) -> HistogramAccumulator:
    """
    Histogram with the template's binning where every bin holds the flux integral.

    Args:
        flux: Flux table
        template: Histogram whose binning is copied (1D)
        band_sizes: Universe layout (defaults to the template's)
        e_min: Lower neutrino-energy bound of the integral
        e_max: Upper neutrino-energy bound of the integral
        name: Name of the result

    Returns:
        New HistogramAccumulator, flow bins included, zero statistical error
    """
    if template.ndim != 1:
        raise ConfigurationError(f"Flux integral template '{template.name}' must be 1D")
    band_sizes = dict(band_sizes) if band_sizes else template.band_sizes
    hist = HistogramAccumulator(
        name or f"{template.name}_reweightedflux_integrated",
        template.x_edges,
        band_sizes=band_sizes,
        title="flux integral",
    )
    for band, n_universes in band_sizes.items():
        for index in range(n_universes):
            hist.bands[band][index, :] = flux.integrate(e_min, e_max, flux.column_for(band, index))
    return hist
