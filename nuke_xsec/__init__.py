"""
Nuclear-target neutrino cross-section analysis.

Fills selection histograms for every systematic universe from MC and data
playlists, then extracts per-material differential cross sections by
background subtraction, iterative Bayesian unfolding, efficiency correction
and flux normalization.
"""

__version__ = "0.1.0"
