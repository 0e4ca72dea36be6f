"""
Flux, target and exposure normalization of efficiency-corrected spectra.
"""

from __future__ import annotations

import logging

from .exceptions import ConfigurationError
from .histograms import HistogramAccumulator

logger = logging.getLogger("NukeXSec.Normalization")

# Flux tables are per m^2; cross sections are quoted per cm^2
UNIT_CONVERSION = 1e4


def normalize(
    efficiency_corrected: HistogramAccumulator,
    flux_integral: HistogramAccumulator,
    n_nucleons: float,
    pot: float,
    name: str | None = None,
) -> HistogramAccumulator:
    """
    Turn an efficiency-corrected event rate into a differential cross section.

    Steps: divide by the flux integral bin by bin, multiply by UNIT_CONVERSION,
    divide by n_nucleons * pot, divide by bin width. Inputs are not modified.

    Args:
        efficiency_corrected: Unfolded, efficiency-corrected distribution
        flux_integral: Flux integral with the same binning and bands
        n_nucleons: Number of target nucleons in the fiducial volume
        pot: Exposure (protons on target)
        name: Name of the result

    Returns:
        New HistogramAccumulator with the cross section

    Raises:
        ConfigurationError: If binnings differ or n_nucleons * pot is not positive
    """
    if not efficiency_corrected.same_binning(flux_integral):
        raise ConfigurationError(
            f"Flux '{flux_integral.name}' binning does not match '{efficiency_corrected.name}'"
        )
    exposure = n_nucleons * pot
    if exposure <= 0:
        raise ConfigurationError(
            f"Cannot normalize '{efficiency_corrected.name}': nucleons x POT = {exposure}"
        )

    result = efficiency_corrected.clone(name or f"{efficiency_corrected.name}_crossSection")
    flux = flux_integral
    if flux.band_sizes != result.band_sizes:
        flux = flux_integral.clone()
        flux.add_missing_bands(result)
        if flux.band_sizes != result.band_sizes:
            raise ConfigurationError(
                f"Flux '{flux_integral.name}' has universe bands {flux_integral.band_sizes} "
                f"not present in '{efficiency_corrected.name}'"
            )
    result.divide(flux)
    result.scale(UNIT_CONVERSION / exposure)
    result.scale(1.0, "width")
    return result
