"""
Background classification and exposure-scaled background subtraction.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable

from .exceptions import ConfigurationError
from .histograms import HistogramAccumulator

logger = logging.getLogger("NukeXSec.Background")

# Truth current code of neutral-current interactions
NEUTRAL_CURRENT_CODE = 2


class BackgroundCategory(Enum):
    """Closed set of background categories for selected non-signal events."""

    NEUTRAL_CURRENT = "NC"
    OTHER = "Other"


def classify_background(truth_view: Any) -> BackgroundCategory:
    """
    Category of a selected event that failed the signal definition.

    Args:
        truth_view: TruthView of the event

    Returns:
        NEUTRAL_CURRENT for neutral-current interactions, OTHER otherwise
    """
    if int(truth_view["mc_current"]) == NEUTRAL_CURRENT_CODE:
        return BackgroundCategory.NEUTRAL_CURRENT
    return BackgroundCategory.OTHER


def subtract_backgrounds(
    data: HistogramAccumulator,
    backgrounds: Iterable[HistogramAccumulator],
    data_pot: float,
    mc_pot: float,
    name: str | None = None,
) -> HistogramAccumulator:
    """
    Subtract POT-scaled MC backgrounds from data.

    Each background is scaled by data_pot / mc_pot and subtracted from a clone
    of data, universe by universe. The inputs are left untouched.

    Args:
        data: Measured distribution (with all MC bands booked)
        backgrounds: Background predictions from MC
        data_pot: Exposure of the data sample
        mc_pot: Exposure of the MC sample
        name: Name of the result (defaults to "<data>_backgroundSubtracted")

    Returns:
        New HistogramAccumulator

    Raises:
        ConfigurationError: If mc_pot is not positive or layouts differ
    """
    if mc_pot <= 0:
        raise ConfigurationError(f"MC exposure must be positive to scale backgrounds, got {mc_pot}")

    factor = -data_pot / mc_pot
    result = data.clone(name or f"{data.name}_backgroundSubtracted")
    for background in backgrounds:
        logger.debug(f"Subtracting '{background.name}' scaled by {-factor:.6g}")
        result.add(background, factor)
    return result
