"""
Iterative Bayesian (D'Agostini) unfolding with covariance propagation.

Given a folded distribution f over reco bins and a migration matrix M[r, t]
filled with selected signal MC, each iteration updates the true estimate n:

    P(r|t)  = M[r, t] / sum_r' M[r', t]        (r' includes reco flow bins)
    eps_t   = sum_r P(r|t)                      (in-range reco bins only)
    U[t, r] = P(r|t) n_t / (eps_t sum_t' P(r|t') n_t')
    n'_t    = sum_r U[t, r] f_r

The prior is the truth projection of M. Statistical errors of f are
propagated through the iterations by differentiating n with respect to f
(Adye's prescription), using a separate, fixed number of iterations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .exceptions import ConfigurationError, UnfoldingError
from .histograms import CV_BAND, HistogramAccumulator

logger = logging.getLogger("NukeXSec.Unfolding")

COVARIANCE_NAME = "unfoldingCov"
DEFAULT_COVARIANCE_ITERATIONS = 4


def resize_covariance(cov: np.ndarray, n_bins: int) -> np.ndarray:
    """
    Bring a covariance matrix to n_bins x n_bins.

    Larger matrices are truncated and smaller ones zero-padded, both anchored
    at the top-left corner. The diagonal of the result is zeroed; the variance
    lives in the histogram's own statistical errors.

    Args:
        cov: Square covariance matrix
        n_bins: Target dimension (true bins including flow bins)

    Returns:
        New (n_bins, n_bins) array
    """
    cov = np.asarray(cov, dtype=float)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise UnfoldingError(f"Covariance must be square, got shape {cov.shape}")

    if cov.shape[0] != n_bins:
        logger.warning(
            f"Covariance dimension {cov.shape[0]} does not match {n_bins} true bins; resizing"
        )
    resized = np.zeros((n_bins, n_bins))
    keep = min(n_bins, cov.shape[0])
    resized[:keep, :keep] = cov[:keep, :keep]
    np.fill_diagonal(resized, 0.0)
    return resized


@dataclass
class UnfoldingResult:
    """
    Attributes:
        unfolded: Unfolded histogram over the migration's true binning
        covariance: Statistical covariance of the cv, (T+2) x (T+2), full diagonal kept
        n_iterations: Iterations used for the central values
        covariance_iterations: Iterations used for the covariance
    """

    unfolded: HistogramAccumulator
    covariance: np.ndarray
    n_iterations: int
    covariance_iterations: int


def _response(migration: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Response P(r|t) over in-range bins, efficiency per true bin and truth prior."""
    truth_totals = migration[:, 1:-1].sum(axis=0)
    inner = migration[1:-1, 1:-1]
    response = np.divide(
        inner,
        truth_totals[np.newaxis, :],
        out=np.zeros_like(inner),
        where=truth_totals[np.newaxis, :] != 0,
    )
    return response, response.sum(axis=0), truth_totals


def _iterate(
    response: np.ndarray,
    efficiency: np.ndarray,
    prior: np.ndarray,
    folded: np.ndarray,
    n_iterations: int,
    track_errors: bool,
) -> tuple[np.ndarray, np.ndarray | None]:
    n_true, n_reco = response.shape[1], response.shape[0]
    estimate = prior.copy()
    derivative = np.zeros((n_true, n_reco)) if track_errors else None

    for _ in range(n_iterations):
        folded_prior = response @ estimate
        denominator = efficiency[:, np.newaxis] * folded_prior[np.newaxis, :]
        numerator = response.T * estimate[:, np.newaxis]
        unfolding_matrix = np.divide(
            numerator, denominator, out=np.zeros_like(numerator), where=denominator != 0
        )
        updated = unfolding_matrix @ folded

        if track_errors:
            ratio = np.divide(updated, estimate, out=np.zeros_like(updated), where=estimate != 0)
            eff_over_prior = np.divide(
                efficiency, estimate, out=np.zeros_like(efficiency), where=estimate != 0
            )
            coupling = (unfolding_matrix * folded[np.newaxis, :]) @ unfolding_matrix.T
            derivative = (
                unfolding_matrix
                + ratio[:, np.newaxis] * derivative
                - coupling @ (eff_over_prior[:, np.newaxis] * derivative)
            )
        estimate = updated

    return estimate, derivative


class BayesianUnfolder:
    """
    D'Agostini unfolding of every universe with its own migration universe.

    Attributes:
        n_iterations: Fixed number of Bayesian iterations for the result
        covariance_iterations: Iterations used to propagate the covariance
    """

    def __init__(self, n_iterations: int, covariance_iterations: int = DEFAULT_COVARIANCE_ITERATIONS) -> None:
        if n_iterations < 1 or covariance_iterations < 1:
            raise ConfigurationError(
                f"Unfolding needs at least one iteration (got {n_iterations}, "
                f"covariance {covariance_iterations})"
            )
        self.n_iterations = n_iterations
        self.covariance_iterations = covariance_iterations

    def _unfold_universe(
        self, folded: np.ndarray, folded_var: np.ndarray, migration: np.ndarray, label: str
    ) -> tuple[np.ndarray, np.ndarray]:
        response, efficiency, prior = _response(migration)
        if not np.any(response):
            raise UnfoldingError(f"Migration matrix is empty in {label}")
        if prior.sum() <= 0:
            raise UnfoldingError(f"Migration matrix has no positive truth content in {label}")

        values = folded[1:-1]
        variances = folded_var[1:-1]

        estimate, derivative = _iterate(
            response, efficiency, prior, values, self.n_iterations,
            track_errors=self.covariance_iterations == self.n_iterations,
        )
        if derivative is None:
            _, derivative = _iterate(
                response, efficiency, prior, values, self.covariance_iterations, track_errors=True
            )
        covariance = (derivative * variances[np.newaxis, :]) @ derivative.T

        if not (np.all(np.isfinite(estimate)) and np.all(np.isfinite(covariance))):
            raise UnfoldingError(f"Unfolding produced non-finite values in {label}")
        return estimate, covariance

    def unfold(
        self,
        folded: HistogramAccumulator,
        migration: HistogramAccumulator,
        name: str | None = None,
    ) -> UnfoldingResult:
        """
        Unfold folded through migration.

        Args:
            folded: Background-subtracted reco distribution (1D)
            migration: (reco, true) migration matrix from signal MC
            name: Name of the unfolded histogram

        Returns:
            UnfoldingResult with the unfolded histogram (covariance pushed as
            "unfoldingCov", diagonal variance in sumw2) and the cv covariance

        Raises:
            UnfoldingError: On shape mismatch, empty migration or non-finite output
        """
        if folded.ndim != 1 or migration.ndim != 2:
            raise UnfoldingError(
                f"Expected 1D folded and 2D migration, got {folded.ndim}D '{folded.name}' "
                f"and {migration.ndim}D '{migration.name}'"
            )
        if not np.array_equal(folded.x_edges, migration.x_edges):
            raise UnfoldingError(
                f"Reco binning of '{folded.name}' does not match migration '{migration.name}'"
            )
        missing = set(folded.bands) - set(migration.bands)
        if missing:
            raise UnfoldingError(
                f"Migration '{migration.name}' lacks universe bands {sorted(missing)} of '{folded.name}'"
            )
        for band in folded.bands:
            if folded.bands[band].shape[0] != migration.bands[band].shape[0]:
                raise UnfoldingError(
                    f"Band '{band}' has {folded.bands[band].shape[0]} universes in '{folded.name}' "
                    f"but {migration.bands[band].shape[0]} in '{migration.name}'"
                )

        unfolded = HistogramAccumulator(
            name or f"{folded.name}_unfolded",
            migration.y_edges,
            band_sizes=folded.band_sizes,
            title=folded.title,
        )
        cv_covariance = None
        for band, contents in folded.bands.items():
            for index in range(contents.shape[0]):
                label = f"universe {index} of band '{band}' ({folded.name})"
                estimate, covariance = self._unfold_universe(
                    contents[index],
                    folded.sumw2[band][index],
                    migration.bands[band][index],
                    label,
                )
                unfolded.bands[band][index, 1:-1] = estimate
                unfolded.sumw2[band][index, 1:-1] = np.clip(np.diag(covariance), 0.0, None)
                if band == CV_BAND:
                    cv_covariance = covariance

        n_full = unfolded.shape[0]
        full = np.zeros((n_full, n_full))
        full[1:-1, 1:-1] = cv_covariance
        unfolded.push_cov_matrix(COVARIANCE_NAME, resize_covariance(full, n_full))

        logger.debug(
            f"Unfolded '{folded.name}' with {self.n_iterations} iterations "
            f"(covariance: {self.covariance_iterations})"
        )
        return UnfoldingResult(unfolded, full, self.n_iterations, self.covariance_iterations)
