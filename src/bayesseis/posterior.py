"""
Closed-form Gaussian update, batched over wavenumber bins.

For data d = H m + e with m ~ N(mu, P) and e ~ N(0, R):

    K     = P H^H (H P H^H + R)^+
    mean  = mu + K (d - H mu)
    cov   = (I - K H) P (I - K H)^H + K R K^H

which equals (P^-1 + H^H R^-1 H)^-1 whenever those inverses exist, and
stays finite for R = 0 or singular P.
"""

from typing import Optional

import numpy as np

# Upper triangle of the 3x3 parameter covariance, in storage order.
PARAMETER_PAIRS = ((0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2))


def _herm(a: np.ndarray) -> np.ndarray:
    return np.conj(np.swapaxes(a, -1, -2))


def hermitian_pinv(a: np.ndarray, rcond: float = 1e-10) -> np.ndarray:
    """Pseudo-inverse of a batch of Hermitian matrices."""
    w, V = np.linalg.eigh(a)
    cutoff = rcond * np.max(np.abs(w), axis=-1, keepdims=True)
    keep = np.abs(w) > cutoff
    inv_w = np.where(keep, 1.0 / np.where(keep, w, 1.0), 0.0)
    return (V * inv_w[..., None, :]) @ _herm(V)


def posterior_moments(
    H: np.ndarray,
    prior_cov: np.ndarray,
    noise_cov: np.ndarray,
    data: np.ndarray,
    prior_mean: Optional[np.ndarray] = None,
    rcond: float = 1e-10,
):
    """
    Posterior mean and covariance for a batch of linear-Gaussian models.

    Args:
        H: Observation matrices, shape (..., m, p).
        prior_cov: Prior covariances, shape (..., p, p).
        noise_cov: Noise covariances, shape (..., m, m).
        data: Observations, shape (..., m).
        prior_mean: Prior means, shape (..., p); zero when None.
        rcond: Relative cutoff for the pseudo-inverse of H P H^H + R.

    Returns:
        mean: (..., p)
        cov: (..., p, p), Hermitian positive semi-definite.
    """
    H = np.asarray(H, dtype=complex)
    P = np.asarray(prior_cov, dtype=complex)
    R = np.asarray(noise_cov, dtype=complex)
    d = np.asarray(data, dtype=complex)
    p = H.shape[-1]
    mu = np.zeros(d.shape[:-1] + (p,), dtype=complex) if prior_mean is None else np.asarray(prior_mean, dtype=complex)

    PHh = P @ _herm(H)
    innovation = H @ PHh + R
    innovation = 0.5 * (innovation + _herm(innovation))
    K = PHh @ hermitian_pinv(innovation, rcond)

    residual = d - (H @ mu[..., None])[..., 0]
    mean = mu + (K @ residual[..., None])[..., 0]

    A = np.eye(p) - K @ H
    cov = A @ P @ _herm(A) + K @ R @ _herm(K)
    cov = 0.5 * (cov + _herm(cov))
    return mean, cov


def hermitian_sqrt(cov: np.ndarray) -> np.ndarray:
    """
    Symmetric square root L with L L^H = cov for a batch of Hermitian PSD
    matrices. Negative round-off eigenvalues are clipped to zero.

    The symmetric root is unique, so bins k and -k get conjugate roots and
    correlated draws stay the spectrum of a real field.
    """
    w, V = np.linalg.eigh(cov)
    w = np.clip(w, 0.0, None)
    return (V * np.sqrt(w)[..., None, :]) @ _herm(V)


def hermitian_weights(nxp: int) -> np.ndarray:
    """
    Multiplicity of each x-bin of a half spectrum in the full spectrum.
    """
    cnxp = nxp // 2 + 1
    w = np.full(cnxp, 2.0)
    w[0] = 1.0
    if nxp % 2 == 0:
        w[-1] = 1.0
    return w


def pack_covariance(cov: np.ndarray) -> np.ndarray:
    """(..., 3, 3) -> (6, ...) upper triangle."""
    return np.stack([cov[..., a, b] for a, b in PARAMETER_PAIRS])


def unpack_covariance(packed: np.ndarray) -> np.ndarray:
    """(6, ...) upper triangle -> (..., 3, 3) Hermitian matrices."""
    packed = np.asarray(packed)
    cov = np.zeros(packed.shape[1:] + (3, 3), dtype=complex)
    for n, (a, b) in enumerate(PARAMETER_PAIRS):
        cov[..., a, b] = packed[n]
        if a != b:
            cov[..., b, a] = np.conj(packed[n])
    return cov
