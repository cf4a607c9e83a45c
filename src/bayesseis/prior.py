"""
Prior model for the log elastic parameters.

The prior residual around the background is stationary Gaussian with
covariance Sigma0 * rho(h): Sigma0 couples (ln Vp, ln Vs, ln rho) at one
point and rho is a spatial correlation function. In the frequency domain
the per-wavenumber covariance is Sigma0 * S(k), where S is the transform
of rho.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .context import GridContext
from .errors import NumericalError
from .fftgrid import BaseGrid, GridShape
from .filegrid import create_grid

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ParameterCovariance:
    """
    3x3 covariance of (ln Vp, ln Vs, ln rho) at one point.

    Raises:
        NumericalError: if the matrix is not symmetric positive definite.
    """
    matrix: np.ndarray

    def __post_init__(self):
        m = np.asarray(self.matrix, dtype=float)
        if m.shape != (3, 3):
            raise ValueError("parameter covariance must be 3x3")
        if not np.all(np.isfinite(m)):
            raise NumericalError("parameter covariance contains NaN or infinite values")
        if not np.allclose(m, m.T, rtol=1e-8, atol=1e-12):
            raise NumericalError("parameter covariance is not symmetric")
        try:
            np.linalg.cholesky(m)
        except np.linalg.LinAlgError as exc:
            raise NumericalError("parameter covariance is not positive definite") from exc
        object.__setattr__(self, "matrix", 0.5 * (m + m.T))

    @classmethod
    def from_std_and_correlation(cls, std: Sequence[float], correlation: Optional[np.ndarray] = None):
        s = np.asarray(std, dtype=float)
        if s.shape != (3,):
            raise ValueError("std must have three entries")
        corr = np.eye(3) if correlation is None else np.asarray(correlation, dtype=float)
        return cls(np.outer(s, s) * corr)

    @classmethod
    def from_samples(cls, samples: np.ndarray, log: bool = True):
        """
        Estimate from well samples of (Vp, Vs, rho), shape (n, 3).

        Args:
            samples: Samples in natural units, or log units if `log` is False.
            log: Take the logarithm of the samples first.
        """
        x = np.asarray(samples, dtype=float)
        if x.ndim != 2 or x.shape[1] != 3:
            raise ValueError("samples must have shape (n_samples, 3)")
        x = x[np.all(np.isfinite(x), axis=1)]
        if log:
            x = x[np.all(x > 0.0, axis=1)]
            x = np.log(x)
        if x.shape[0] < 4:
            raise ValueError("at least four valid samples are required")
        return cls(np.cov(x, rowvar=False))

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(np.diag(self.matrix))


def _correlation_function(h: np.ndarray, kind: str) -> np.ndarray:
    if kind == "gaussian":
        return np.exp(-3.0 * h ** 2)
    if kind == "exponential":
        return np.exp(-3.0 * h)
    if kind == "spherical":
        return np.where(h < 1.0, 1.0 - 1.5 * h + 0.5 * h ** 3, 0.0)
    raise ValueError(f"unknown correlation kind {kind!r}")


def _periodic_lags(n: int, d: float) -> np.ndarray:
    idx = np.arange(n)
    return np.minimum(idx, n - idx) * d


def make_correlation_grid(
    shape: GridShape,
    spacing: Tuple[float, float, float],
    ranges: Tuple[float, float, float],
    kind: str = "gaussian",
    context: Optional[GridContext] = None,
) -> BaseGrid:
    """
    Stationary correlation function on the padded block, wrapped around
    so that lag 0 sits at index (0, 0, 0).

    Args:
        shape: Grid extents; the whole padded block is filled.
        spacing: (dx, dy, dz) cell sizes.
        ranges: Practical ranges along x, y and z in the same units.
        kind: "gaussian", "exponential" or "spherical".
        context: Grid context deciding memory or disk storage.
    """
    if min(ranges) <= 0.0:
        raise ValueError("ranges must be positive")
    hx = _periodic_lags(shape.nxp, spacing[0]) / ranges[0]
    hy = _periodic_lags(shape.nyp, spacing[1]) / ranges[1]
    hz = _periodic_lags(shape.nzp, spacing[2]) / ranges[2]
    HX, HY, HZ = np.meshgrid(hx, hy, hz, indexing="ij")
    rho = _correlation_function(np.sqrt(HX ** 2 + HY ** 2 + HZ ** 2), kind)

    grid = create_grid(shape, context)
    grid.fill_from_array(rho, padded=True)
    return grid


def white_correlation_grid(shape: GridShape, context: Optional[GridContext] = None) -> BaseGrid:
    """Correlation of an uncorrelated field: 1 at lag 0, 0 elsewhere."""
    rho = np.zeros((shape.nxp, shape.nyp, shape.nzp))
    rho[0, 0, 0] = 1.0
    grid = create_grid(shape, context)
    grid.fill_from_array(rho, padded=True)
    return grid


def clip_spectrum(slab: np.ndarray, tolerance: float = 1e-4) -> Tuple[np.ndarray, int]:
    """
    Real, non-negative part of one slab of a correlation spectrum.

    A correlation with value 1 at lag 0 has a spectrum averaging 1, so
    negatives below -tolerance are not round-off.

    Returns:
        (clipped slab, number of values below -tolerance)
    """
    real = np.asarray(slab).real.astype(float)
    n_bad = int(np.count_nonzero(real < -tolerance))
    return np.maximum(real, 0.0), n_bad
