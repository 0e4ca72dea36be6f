"""
Analysis modules: universes, selection, variables, histograms, event loop
and cross-section extraction.
"""

from .config import AnalysisConfig
from .cross_section import CrossSectionExtractor, CrossSectionResult, ExtractionFailure
from .cutter import Cutter
from .event_loop import EventLoop, Sample
from .event_source import ArrayEventSource
from .histogram_store import HistogramStore
from .histograms import HistogramAccumulator
from .unfolding import BayesianUnfolder
from .universes import UniverseConfig, UniverseSet
from .variables import Variable, Variable2D

__all__ = [
    "AnalysisConfig",
    "ArrayEventSource",
    "BayesianUnfolder",
    "CrossSectionExtractor",
    "CrossSectionResult",
    "Cutter",
    "EventLoop",
    "ExtractionFailure",
    "HistogramAccumulator",
    "HistogramStore",
    "Sample",
    "UniverseConfig",
    "UniverseSet",
    "Variable",
    "Variable2D",
]
