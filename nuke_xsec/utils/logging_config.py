"""
Logging and Warning Configuration Utilities

This module provides centralized control over logging, warning messages and
progress bars throughout the cross-section pipeline.

Usage:
    from nuke_xsec.utils.logging_config import setup_logging, suppress_warnings
    logger = setup_logging(verbose=True)
    suppress_warnings()  # Suppress all warnings by default

    # Via environment variables:
    export NUKE_XSEC_WARNINGS=on   # Show warnings
    export NUKE_XSEC_PROGRESS=off  # Hide progress bars
"""

from __future__ import annotations

import logging
import os
import warnings
from typing import Literal

import numpy as np

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Configure the root logger and return the package logger."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return logging.getLogger("NukeXSec")


def suppress_warnings(level: Literal["off", "error", "default", "all"] = "off") -> None:
    """
    Configure warning levels for the analysis.

    Args:
        level: Warning level to set
            - 'off': Suppress all warnings (default for pipeline)
            - 'error': Turn warnings into errors
            - 'default': Show important warnings but filter common noise
            - 'all': Show everything (useful for debugging)

    Environment variable NUKE_XSEC_WARNINGS overrides the level parameter.
    """
    env_level = os.environ.get("NUKE_XSEC_WARNINGS", "").lower()
    if env_level in ["on", "yes", "true", "1"]:
        level = "all"
    elif env_level in ["off", "no", "false", "0"]:
        level = "off"
    elif env_level in ["error", "default"]:
        level = env_level

    if level == "off":
        warnings.filterwarnings("ignore")
        np.seterr(all="ignore")

    elif level == "error":
        warnings.filterwarnings("error")
        warnings.filterwarnings("ignore", category=DeprecationWarning)
        warnings.filterwarnings("ignore", category=FutureWarning)

    elif level == "default":
        warnings.filterwarnings("default")
        warnings.filterwarnings("ignore", category=DeprecationWarning)
        warnings.filterwarnings("ignore", message=".*uproot.*")
        warnings.filterwarnings("ignore", message=".*awkward.*")

    elif level == "all":
        warnings.filterwarnings("default")
        np.seterr(all="warn")

    if level in ["off", "error", "default"]:
        warnings.filterwarnings("ignore", module="awkward.*")
        warnings.filterwarnings("ignore", module="uproot.*")


def skip_systematics() -> bool:
    """
    Check if systematic universes should be skipped.

    Controlled via the NUKE_XSEC_SKIP_SYST environment variable: any
    non-empty value other than off/no/false/0 keeps only the central value
    and a reduced flux band.
    """
    env_skip = os.environ.get("NUKE_XSEC_SKIP_SYST", "").lower()
    return env_skip not in ["", "off", "no", "false", "0"]


def enable_progress_bars() -> bool:
    """
    Check if progress bars should be enabled.

    Returns:
        True if progress bars should be shown, False otherwise.

    Can be controlled via NUKE_XSEC_PROGRESS environment variable.
    """
    env_progress = os.environ.get("NUKE_XSEC_PROGRESS", "on").lower()
    return env_progress in ["on", "yes", "true", "1"]


def get_tqdm_kwargs(desc: str = "", **kwargs) -> dict:
    """
    Get standard kwargs for tqdm progress bars with consistent styling.

    Args:
        desc: Description for the progress bar
        **kwargs: Additional tqdm parameters

    Returns:
        Dictionary of tqdm parameters
    """
    default_kwargs = {
        "desc": desc,
        "unit": "evt",
        "ncols": 80,
        "bar_format": "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
        "disable": not enable_progress_bars(),
    }
    default_kwargs.update(kwargs)
    return default_kwargs
