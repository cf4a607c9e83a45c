"""
Posterior simulation and posterior covariance grids.
"""

import logging
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from .fftgrid import AccessMode, BaseGrid
from .forward import PARAMETER_NAMES
from .posterior import PARAMETER_PAIRS, hermitian_sqrt, unpack_covariance

logger = logging.getLogger(__name__)


def draw_realization(
    cov_spectra: Sequence[BaseGrid],
    post_log: Sequence[BaseGrid],
    rng: np.random.Generator,
    make_grid: Callable[[], BaseGrid],
    exp_output: bool = True,
) -> List[BaseGrid]:
    """
    Draw one realization of (Vp, Vs, rho) from the posterior.

    Each wavenumber gets sqrt(Sigma_post(k)) times the spectrum of white
    noise; the result is transformed back and added to the posterior mean.

    Args:
        cov_spectra: Six frequency-domain grids holding the upper triangle
            of the posterior covariance per wavenumber.
        post_log: Spatial posterior mean of the log parameters.
        rng: Random source.
        make_grid: Factory for new zero grids on the same shape.
        exp_output: Return natural units instead of logs.
    """
    noise = [make_grid() for _ in PARAMETER_NAMES]
    outputs = [make_grid() for _ in PARAMETER_NAMES]
    try:
        for g in noise:
            g.create_complex_grid()
            g.fill_in_complex_noise(rng)
        for g in outputs:
            g.create_complex_grid()
            g.set_access_mode(AccessMode.WRITE)
        for g in list(cov_spectra) + noise:
            g.set_access_mode(AccessMode.READ)
        for _ in range(outputs[0].nzp):
            packed = np.stack([g.get_next_complex_slice() for g in cov_spectra])
            root = hermitian_sqrt(unpack_covariance(packed))
            z = np.stack([g.get_next_complex_slice() for g in noise], axis=-1)
            x = (root @ z[..., None])[..., 0]
            for p, g in enumerate(outputs):
                g.set_next_complex_slice(x[..., p])
    finally:
        for g in list(cov_spectra) + noise + outputs:
            g.end_access()
        for g in noise:
            g.close()

    for g, mean in zip(outputs, post_log):
        g.inv_fft_in_place()
        g.add(mean)
        if exp_output:
            g.exp_transf()
    return outputs


def covariance_function_grids(cov_spectra: Sequence[BaseGrid]) -> Dict[Tuple[str, str], BaseGrid]:
    """
    Posterior covariance functions c_ab(h) on the lag grid.

    The sample at lag (0, 0, 0) is the pointwise posterior covariance.
    """
    grids = {}
    for (a, b), spectrum in zip(PARAMETER_PAIRS, cov_spectra):
        grid = spectrum.copy()
        grid.inv_fft_in_place()
        grids[(PARAMETER_NAMES[a], PARAMETER_NAMES[b])] = grid
    return grids


def pointwise_covariance(cov_grids: Dict[Tuple[str, str], BaseGrid]) -> np.ndarray:
    """3x3 covariance at zero lag read from covariance function grids."""
    cov = np.zeros((3, 3))
    for a, b in PARAMETER_PAIRS:
        grid = cov_grids[(PARAMETER_NAMES[a], PARAMETER_NAMES[b])]
        grid.set_access_mode(AccessMode.RANDOMACCESS)
        try:
            value = grid.get_real_value(0, 0, 0)
        finally:
            grid.end_access()
        cov[a, b] = cov[b, a] = value
    return cov
