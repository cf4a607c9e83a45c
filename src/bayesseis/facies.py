"""
Facies probabilities from the posterior distribution.

Each facies is described by a Gaussian over (ln Vp, ln Vs, ln rho). With
posterior N(m_hat, C0) at a voxel, the facies likelihood integrates to
N(m_hat; mu_f, Sigma_f + C0).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence

import numpy as np
from scipy.special import logsumexp
from scipy.stats import multivariate_normal

from .fftgrid import BaseGrid

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class GaussianFacies:
    """
    Rock-physics distribution of one facies in log-parameter space.

    Attributes:
        name: Facies label.
        mean: (3,) mean of (ln Vp, ln Vs, ln rho).
        cov: (3, 3) covariance.
        prior_probability: Prior proportion of the facies.
    """
    name: str
    mean: np.ndarray
    cov: np.ndarray
    prior_probability: float = 1.0

    def __post_init__(self):
        mean = np.asarray(self.mean, dtype=float)
        cov = np.asarray(self.cov, dtype=float)
        if mean.shape != (3,) or cov.shape != (3, 3):
            raise ValueError("facies mean must be (3,) and cov (3, 3)")
        if self.prior_probability <= 0.0:
            raise ValueError("prior_probability must be positive")
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "cov", 0.5 * (cov + cov.T))

    @classmethod
    def from_samples(cls, name: str, samples: np.ndarray, prior_probability: float = 1.0, log: bool = True):
        """
        Fit a facies from well samples of (Vp, Vs, rho), shape (n, 3).
        """
        x = np.asarray(samples, dtype=float)
        if x.ndim != 2 or x.shape[1] != 3:
            raise ValueError("samples must have shape (n_samples, 3)")
        x = x[np.all(np.isfinite(x), axis=1)]
        if log:
            x = np.log(x[np.all(x > 0.0, axis=1)])
        if x.shape[0] < 4:
            raise ValueError(f"facies {name}: at least four valid samples are required")
        return cls(name, x.mean(axis=0), np.cov(x, rowvar=False), prior_probability)

    def log_likelihood(self, points: np.ndarray, extra_cov: np.ndarray) -> np.ndarray:
        return multivariate_normal.logpdf(points, mean=self.mean, cov=self.cov + extra_cov, allow_singular=True)


class FaciesModel:
    """
    Set of facies queried by the inversion.

    Any object exposing `names` and `log_likelihoods(points, extra_cov)`
    can stand in for it.
    """

    def __init__(self, facies: Sequence[GaussianFacies]):
        if len(facies) == 0:
            raise ValueError("at least one facies is required")
        names = [f.name for f in facies]
        if len(set(names)) != len(names):
            raise ValueError("facies names must be unique")
        self.facies = list(facies)
        total = sum(f.prior_probability for f in facies)
        self.log_priors = np.log(np.array([f.prior_probability for f in facies]) / total)

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.facies]

    def log_likelihoods(self, points: np.ndarray, extra_cov: np.ndarray) -> np.ndarray:
        """(n, n_facies) log densities, prior proportions included."""
        cols = [np.atleast_1d(f.log_likelihood(points, extra_cov)) for f in self.facies]
        return np.column_stack(cols) + self.log_priors

    def probabilities(self, points: np.ndarray, extra_cov: np.ndarray) -> np.ndarray:
        """
        Facies probabilities per point, rows summing to one.

        Args:
            points: (n, 3) posterior means in log-parameter space.
            extra_cov: (3, 3) posterior covariance added to every facies.
        """
        points = np.asarray(points, dtype=float)
        probs = np.full((points.shape[0], len(self.facies)), np.nan)
        valid = np.all(np.isfinite(points), axis=1)
        if np.any(valid):
            logp = self.log_likelihoods(points[valid], extra_cov)
            probs[valid] = np.exp(logp - logsumexp(logp, axis=1, keepdims=True))
        return probs


def facies_probability_grids(
    post_log: Sequence[BaseGrid],
    pointwise_cov: np.ndarray,
    facies_model,
    make_grid: Callable[[], BaseGrid],
) -> Dict[str, BaseGrid]:
    """
    One probability grid per facies from the posterior log-parameter mean.
    """
    arrays = [g.to_array() for g in post_log]
    dims = arrays[0].shape
    points = np.stack(arrays, axis=-1).reshape(-1, 3)
    probs = facies_model.probabilities(points, pointwise_cov)
    n_undefined = int(np.count_nonzero(~np.isfinite(probs[:, 0])))
    if n_undefined:
        logger.warning(f"{n_undefined} voxels have no defined facies probability")

    grids = {}
    for n, name in enumerate(facies_model.names):
        grid = make_grid()
        grid.fill_from_array(probs[:, n].reshape(dims))
        grids[name] = grid
    return grids
