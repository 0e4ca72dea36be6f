"""
Custom exceptions for the nuclear-target cross-section pipeline

Provides a hierarchy of exceptions for better error handling and diagnostics.
All custom exceptions inherit from AnalysisError for easy catching.

Configuration and I/O errors are fatal. Data errors abort the current event
loop pass. Algorithmic errors (unfolding, missing extraction ingredients) are
recoverable for a single (material, observable) combination.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """
    Base exception for all analysis pipeline errors

    All custom exceptions inherit from this class, allowing users to catch
    all analysis-specific errors with a single except clause.
    """

    pass


class ConfigurationError(AnalysisError):
    """
    Raised when configuration is invalid or missing required fields

    Examples:
    - Missing required config file
    - No "cv" universe in the universe set
    - Mismatched binning between histograms being combined
    - Missing required input metadata (e.g. POT)
    """

    pass


class DataLoadError(AnalysisError):
    """
    Raised when an input source cannot be opened or read

    Examples:
    - Playlist or ROOT file not found
    - Missing reco or Truth tree
    - Corrupted file
    """

    pass


class OutputError(AnalysisError):
    """
    Raised when an output destination cannot be created or written

    Examples:
    - Output file already exists and overwriting is not allowed
    - Directory not writable
    """

    pass


class BranchMissingError(AnalysisError):
    """
    Raised when a required field is not found on an event

    Examples:
    - Field name typo in configuration
    - Reco tree without the field a cut needs
    """

    def __init__(self, branch_name: str, file_path: str | None = None):
        """
        Initialize BranchMissingError

        Args:
            branch_name: Name of the missing branch
            file_path: Optional path (or source name) being read
        """
        self.branch_name = branch_name
        self.file_path = file_path

        message = f"Required branch '{branch_name}' not found"
        if file_path:
            message += f" in file: {file_path}"

        super().__init__(message)


class TruthAccessError(AnalysisError):
    """
    Raised when truth information is requested where it does not exist,
    or when reco and truth accessors are mixed up

    Examples:
    - True value requested for a data event
    - Truth field read through a reco view
    """

    pass


class SelectionError(AnalysisError):
    """
    Raised when a selection precondition is violated

    Examples:
    - More than one sideband category matches an event
    - Truth-level check requested before reco selection
    """

    pass


class HistogramError(AnalysisError):
    """
    Raised when a histogram operation receives invalid input

    Examples:
    - NaN fill value
    - Fill for a universe the histogram was not booked with
    - Non-monotonic bin edges
    """

    pass


class EventLoopError(AnalysisError):
    """
    Raised when an event loop pass must abort

    Carries the pass name and entry index of the offending event so the
    diagnostic points at the exact record.
    """

    def __init__(self, pass_name: str, entry: int, reason: str):
        self.pass_name = pass_name
        self.entry = entry
        self.reason = reason
        super().__init__(f"{pass_name} pass aborted at entry {entry}: {reason}")


class UnfoldingError(AnalysisError):
    """
    Raised when unfolding fails

    Examples:
    - Empty or singular migration matrix
    - Non-finite unfolded result
    - Folded and migration binning disagree
    """

    pass


class MissingIngredient(AnalysisError):
    """
    Raised when an extraction input is absent from a histogram store

    Recoverable: the extraction for that (material, observable) is skipped.
    """

    def __init__(self, name: str, store_path: str | None = None):
        self.name = name
        self.store_path = store_path
        message = f"Ingredient '{name}' not found"
        if store_path:
            message += f" in {store_path}"
        super().__init__(message)
