"""
Histogram accumulators with one content array per systematic universe.

A HistogramAccumulator owns a mapping from band name to a content array of
shape (n_universes, nx + 2[, ny + 2]). Index 0 along each axis is the
underflow bin and the last index is the overflow bin. The central value is
the single universe of the "cv" band.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import numpy as np

from .exceptions import ConfigurationError, HistogramError

CV_BAND = "cv"

logger = logging.getLogger("NukeXSec.Histograms")


def validate_edges(edges: Iterable[float], name: str = "") -> np.ndarray:
    """
    Convert bin edges to an array and check they increase strictly.

    Raises:
        HistogramError: If fewer than two edges or not strictly increasing
    """
    edges = np.asarray(list(edges), dtype=float)
    if edges.ndim != 1 or len(edges) < 2:
        raise HistogramError(f"Histogram '{name}' needs at least two bin edges")
    if not np.all(np.diff(edges) > 0):
        raise HistogramError(f"Bin edges of '{name}' must be strictly increasing: {edges}")
    return edges


def find_bin(edges: np.ndarray, value: float) -> int:
    """
    Index of the bin containing value, with 0 = underflow, len(edges) = overflow.

    Bins are closed on the left: value == edges[-1] lands in the overflow.
    """
    return int(np.searchsorted(edges, value, side="right"))


class HistogramAccumulator:
    """
    Named 1D or 2D weighted histogram with per-universe content.

    Attributes:
        name: Histogram name used as the store key
        x_edges: Bin edges along x
        y_edges: Bin edges along y (None for 1D)
        bands: {band_name: content array (n_universes, ...)}
        sumw2: {band_name: sum of squared weights, same shapes as bands}
        cov_matrices: {name: covariance matrix over the full (flow-included) x axis}
    """

    def __init__(
        self,
        name: str,
        x_edges: Iterable[float],
        y_edges: Iterable[float] | None = None,
        band_sizes: dict[str, int] | None = None,
        title: str = "",
    ) -> None:
        """
        Book an empty histogram.

        Args:
            name: Histogram name
            x_edges: Bin edges along x
            y_edges: Bin edges along y for a 2D histogram
            band_sizes: {band_name: number of universes}; defaults to {"cv": 1}
            title: Axis label(s), informational only
        """
        self.name: str = name
        self.title: str = title
        self.x_edges: np.ndarray = validate_edges(x_edges, name)
        self.y_edges: np.ndarray | None = (
            None if y_edges is None else validate_edges(y_edges, name)
        )

        band_sizes = dict(band_sizes) if band_sizes else {CV_BAND: 1}
        if band_sizes.get(CV_BAND) != 1:
            raise ConfigurationError(
                f"Histogram '{name}' must be booked with exactly one '{CV_BAND}' universe, "
                f"got band sizes {band_sizes}"
            )

        self.bands: dict[str, np.ndarray] = {}
        self.sumw2: dict[str, np.ndarray] = {}
        for band, n_universes in band_sizes.items():
            if n_universes < 1:
                raise ConfigurationError(f"Band '{band}' of '{name}' has no universes")
            self.bands[band] = np.zeros((n_universes,) + self.shape)
            self.sumw2[band] = np.zeros((n_universes,) + self.shape)

        self.cov_matrices: dict[str, np.ndarray] = {}

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def ndim(self) -> int:
        return 1 if self.y_edges is None else 2

    @property
    def shape(self) -> tuple[int, ...]:
        """Content shape of one universe, flow bins included."""
        if self.y_edges is None:
            return (len(self.x_edges) + 1,)
        return (len(self.x_edges) + 1, len(self.y_edges) + 1)

    @property
    def n_bins(self) -> int:
        """Number of in-range x bins."""
        return len(self.x_edges) - 1

    @property
    def band_sizes(self) -> dict[str, int]:
        return {band: content.shape[0] for band, content in self.bands.items()}

    @property
    def cv(self) -> np.ndarray:
        """Central-value content, flow bins included."""
        return self.bands[CV_BAND][0]

    @property
    def cv_sumw2(self) -> np.ndarray:
        return self.sumw2[CV_BAND][0]

    def bin_widths(self) -> np.ndarray:
        """
        Width (1D) or area (2D) per bin, flow bins included.

        Flow bins get width 1 so width scaling leaves them unchanged.
        """
        x_widths = np.ones(len(self.x_edges) + 1)
        x_widths[1:-1] = np.diff(self.x_edges)
        if self.y_edges is None:
            return x_widths
        y_widths = np.ones(len(self.y_edges) + 1)
        y_widths[1:-1] = np.diff(self.y_edges)
        return np.outer(x_widths, y_widths)

    def same_binning(self, other: HistogramAccumulator) -> bool:
        if self.ndim != other.ndim:
            return False
        if not np.array_equal(self.x_edges, other.x_edges):
            return False
        if self.y_edges is not None and not np.array_equal(self.y_edges, other.y_edges):
            return False
        return True

    def _check_compatible(self, other: HistogramAccumulator, operation: str) -> None:
        if not self.same_binning(other):
            raise ConfigurationError(
                f"Cannot {operation} '{other.name}' into '{self.name}': binning differs"
            )
        if self.band_sizes != other.band_sizes:
            raise ConfigurationError(
                f"Cannot {operation} '{other.name}' into '{self.name}': universe bands differ "
                f"({other.band_sizes} vs {self.band_sizes})"
            )

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    def fill(self, universe: Any, x: float, y: float | None = None, weight: float = 1.0) -> None:
        """
        Add weight to the bin containing (x[, y]) in the universe's content array.

        Args:
            universe: Object with ``band`` and ``index`` attributes
            x: Value along x
            y: Value along y (2D only)
            weight: Fill weight

        Raises:
            HistogramError: For NaN values, wrong dimensionality or unknown universe
        """
        band = universe.band
        index = universe.index
        if band not in self.bands:
            raise HistogramError(
                f"Histogram '{self.name}' has no band '{band}' (booked: {sorted(self.bands)})"
            )
        if index >= self.bands[band].shape[0]:
            raise HistogramError(
                f"Universe {index} out of range for band '{band}' of '{self.name}'"
            )
        if np.isnan(x) or (y is not None and np.isnan(y)):
            raise HistogramError(f"NaN fill value for '{self.name}' in universe {universe}")

        ix = find_bin(self.x_edges, x)
        if self.y_edges is None:
            if y is not None:
                raise HistogramError(f"1D histogram '{self.name}' filled with two values")
            key: tuple[int, ...] = (index, ix)
        else:
            if y is None:
                raise HistogramError(f"2D histogram '{self.name}' filled with one value")
            key = (index, ix, find_bin(self.y_edges, y))

        self.bands[band][key] += weight
        self.sumw2[band][key] += weight * weight

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def clone(self, name: str | None = None) -> HistogramAccumulator:
        """Deep copy, optionally renamed."""
        new = HistogramAccumulator.__new__(HistogramAccumulator)
        new.name = self.name if name is None else name
        new.title = self.title
        new.x_edges = self.x_edges.copy()
        new.y_edges = None if self.y_edges is None else self.y_edges.copy()
        new.bands = {band: content.copy() for band, content in self.bands.items()}
        new.sumw2 = {band: w2.copy() for band, w2 in self.sumw2.items()}
        new.cov_matrices = {key: cov.copy() for key, cov in self.cov_matrices.items()}
        return new

    def merge(self, other: HistogramAccumulator) -> HistogramAccumulator:
        """
        Add another accumulator of identical layout universe by universe.

        Returns:
            self, for chaining

        Raises:
            ConfigurationError: If binning or universe bands differ
        """
        return self.add(other, 1.0)

    def add(self, other: HistogramAccumulator, factor: float = 1.0) -> HistogramAccumulator:
        """
        self += factor * other for every universe.

        Statistical errors add as factor**2 * sumw2.
        """
        self._check_compatible(other, "add")
        for band in self.bands:
            self.bands[band] += factor * other.bands[band]
            self.sumw2[band] += factor * factor * other.sumw2[band]
        for key, cov in other.cov_matrices.items():
            if key in self.cov_matrices:
                self.cov_matrices[key] = self.cov_matrices[key] + factor * factor * cov
            else:
                self.cov_matrices[key] = factor * factor * cov.copy()
        return self

    def scale(self, factor: float, option: str = "") -> HistogramAccumulator:
        """
        Multiply every universe by factor, optionally dividing by bin width.

        Args:
            factor: Multiplicative factor
            option: "width" to also divide each bin by its width (area in 2D)

        Returns:
            self, for chaining
        """
        if option not in ("", "width"):
            raise HistogramError(f"Unknown scale option '{option}'")

        per_bin = np.full(self.shape, float(factor))
        if option == "width":
            per_bin = per_bin / self.bin_widths()

        for band in self.bands:
            self.bands[band] *= per_bin
            self.sumw2[band] *= per_bin**2

        if self.ndim == 1:
            for key, cov in self.cov_matrices.items():
                self.cov_matrices[key] = cov * np.outer(per_bin, per_bin)
        return self

    def divide(self, other: HistogramAccumulator, binomial: bool = False) -> HistogramAccumulator:
        """
        self /= other universe by universe; empty denominator bins give 0.

        Args:
            other: Denominator with identical layout
            binomial: Use binomial errors (efficiency-style ratios)

        Returns:
            self, for chaining
        """
        self._check_compatible(other, "divide")
        for band in self.bands:
            num = self.bands[band]
            den = other.bands[band]
            safe = den != 0
            ratio = np.divide(num, den, out=np.zeros_like(num), where=safe)

            if binomial:
                var = np.divide(
                    np.abs(ratio * (1.0 - ratio)),
                    den,
                    out=np.zeros_like(num),
                    where=safe,
                )
            else:
                # relative errors in quadrature
                rel_num = np.divide(self.sumw2[band], num**2, out=np.zeros_like(num), where=num != 0)
                rel_den = np.divide(other.sumw2[band], den**2, out=np.zeros_like(num), where=safe)
                var = ratio**2 * (rel_num + rel_den)

            self.bands[band] = ratio
            self.sumw2[band] = var

        if self.ndim == 1 and self.cov_matrices:
            inverse = np.divide(1.0, other.cv, out=np.zeros_like(other.cv), where=other.cv != 0)
            for key, cov in self.cov_matrices.items():
                self.cov_matrices[key] = cov * np.outer(inverse, inverse)
        return self

    def add_missing_bands(self, reference: HistogramAccumulator) -> HistogramAccumulator:
        """
        Book every band of reference that self lacks, filled with copies of the cv.

        Data histograms only carry a cv universe; this gives derived results
        somewhere to propagate the MC universes.
        """
        for band, n_universes in reference.band_sizes.items():
            if band in self.bands:
                if self.bands[band].shape[0] != n_universes:
                    raise ConfigurationError(
                        f"Band '{band}' has {self.bands[band].shape[0]} universes in "
                        f"'{self.name}' but {n_universes} in '{reference.name}'"
                    )
                continue
            self.bands[band] = np.repeat(self.cv[np.newaxis, ...], n_universes, axis=0)
            self.sumw2[band] = np.repeat(self.cv_sumw2[np.newaxis, ...], n_universes, axis=0)
        return self

    # ------------------------------------------------------------------
    # Uncertainties
    # ------------------------------------------------------------------

    def push_cov_matrix(self, name: str, cov: np.ndarray) -> None:
        """Attach a named covariance matrix over the full x axis (1D only)."""
        if self.ndim != 1:
            raise HistogramError(f"Covariance matrices are 1D-only ('{self.name}')")
        cov = np.asarray(cov, dtype=float)
        if cov.shape != (self.shape[0], self.shape[0]):
            raise HistogramError(
                f"Covariance '{name}' has shape {cov.shape}, expected "
                f"{(self.shape[0], self.shape[0])} for '{self.name}'"
            )
        self.cov_matrices[name] = cov

    def band_errors(self, band: str) -> tuple[np.ndarray, np.ndarray]:
        """
        Upper and lower spread of one band around the cv.

        One universe: symmetric |u - cv|. Two universes: the largest upward and
        downward deviations. More: root mean square of the deviations from the
        cv, so a band shifted coherently away from the cv keeps its full size.
        """
        deviations = self.bands[band] - self.cv
        n_universes = deviations.shape[0]
        if n_universes == 1:
            err = np.abs(deviations[0])
            return err, err.copy()
        if n_universes == 2:
            up = np.clip(deviations.max(axis=0), 0.0, None)
            down = np.clip(-deviations.min(axis=0), 0.0, None)
            return up, down
        err = np.sqrt((deviations**2).sum(axis=0) / n_universes)
        return err, err.copy()

    def cv_with_uncertainty(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Central value with total upper/lower errors per bin.

        Systematic spreads of all non-cv bands are summed in quadrature with the
        cv statistical error and the diagonal of stored covariance matrices.

        Returns:
            (value, error_up, error_down), flow bins included
        """
        stat_var = self.cv_sumw2.copy()
        for cov in self.cov_matrices.values():
            stat_var = stat_var + np.diag(cov).reshape(stat_var.shape)

        var_up = stat_var.copy()
        var_down = stat_var.copy()
        for band in self.bands:
            if band == CV_BAND:
                continue
            up, down = self.band_errors(band)
            var_up += up**2
            var_down += down**2

        return self.cv.copy(), np.sqrt(var_up), np.sqrt(var_down)

    def systematic_covariance(self, band: str) -> np.ndarray:
        """Covariance of one band's universes around the cv (1D only)."""
        if self.ndim != 1:
            raise HistogramError(f"Covariance matrices are 1D-only ('{self.name}')")
        deviations = self.bands[band] - self.cv
        return deviations.T @ deviations / deviations.shape[0]

    def total_covariance(self) -> np.ndarray:
        """Statistical + stored + systematic covariance over the full x axis."""
        cov = np.diag(self.cv_sumw2)
        for stored in self.cov_matrices.values():
            cov = cov + stored
        for band in self.bands:
            if band != CV_BAND:
                cov = cov + self.systematic_covariance(band)
        return cov

    def integral(self, include_flow: bool = False) -> float:
        if include_flow:
            return float(self.cv.sum())
        if self.ndim == 1:
            return float(self.cv[1:-1].sum())
        return float(self.cv[1:-1, 1:-1].sum())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "x_edges": self.x_edges.tolist(),
            "y_edges": None if self.y_edges is None else self.y_edges.tolist(),
            "bands": {band: content.copy() for band, content in self.bands.items()},
            "sumw2": {band: w2.copy() for band, w2 in self.sumw2.items()},
            "cov_matrices": {key: cov.copy() for key, cov in self.cov_matrices.items()},
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistogramAccumulator:
        hist = cls(
            payload["name"],
            payload["x_edges"],
            payload["y_edges"],
            band_sizes={band: content.shape[0] for band, content in payload["bands"].items()},
            title=payload.get("title", ""),
        )
        for band, content in payload["bands"].items():
            if content.shape[1:] != hist.shape:
                raise HistogramError(
                    f"Stored band '{band}' of '{hist.name}' has shape {content.shape[1:]}, "
                    f"expected {hist.shape}"
                )
            hist.bands[band] = np.array(content, dtype=float)
            hist.sumw2[band] = np.array(payload["sumw2"][band], dtype=float)
        hist.cov_matrices = {
            key: np.array(cov, dtype=float) for key, cov in payload.get("cov_matrices", {}).items()
        }
        return hist

    def __repr__(self) -> str:
        return (
            f"HistogramAccumulator(name={self.name!r}, ndim={self.ndim}, "
            f"bands={self.band_sizes})"
        )
