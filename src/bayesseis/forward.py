"""
Linear observation operator relating log elastic parameters to seismic.

For stack s and vertical wavenumber kz the seismic spectrum is

    D_s(k) = W_s(kz) * (c_s . M(k)) + E_s(k)

where c_s holds the linearised reflection coefficients for the stack angle,
W_s is the wavelet spectrum and M stacks the spectra of (ln Vp, ln Vs, ln rho).
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .errors import NumericalError
from .fftgrid import BaseGrid
from .wavelet import Wavelet

PARAMETER_NAMES = ("vp", "vs", "rho")


def reflection_coefficients(theta: float, vs_vp_ratio: float) -> np.ndarray:
    """
    Aki-Richards weights of (d ln Vp, d ln Vs, d ln rho) at angle theta.

    Args:
        theta: Incidence angle in radians.
        vs_vp_ratio: Background Vs/Vp.

    Returns:
        Array of shape (3,).
    """
    if not (0.0 < vs_vp_ratio < 1.0):
        raise ValueError("vs_vp_ratio must be in (0, 1)")
    k = vs_vp_ratio ** 2
    sin2 = np.sin(theta) ** 2
    tan2 = np.tan(theta) ** 2
    return np.array([
        0.5 * (1.0 + tan2),
        -4.0 * k * sin2,
        0.5 * (1.0 - 4.0 * k * sin2),
    ])


def noise_variance_from_sn_ratio(signal_variance: float, sn_ratio: float) -> float:
    """Noise variance giving the requested signal-to-noise ratio."""
    if sn_ratio <= 0.0:
        raise ValueError("sn_ratio must be positive")
    if signal_variance < 0.0:
        raise ValueError("signal_variance must be non-negative")
    return signal_variance / sn_ratio


@dataclass(eq=False)
class StackData:
    """
    One angle stack handed to the inversion.

    Attributes:
        seismic: Spatial amplitude grid on the simbox.
        wavelet: Stack wavelet (its angle is the stack angle).
        noise_variance: Variance of the additive white noise.
        name: Label used in diagnostics.
    """
    seismic: BaseGrid
    wavelet: Wavelet
    noise_variance: float
    name: str = ""

    @property
    def theta(self) -> float:
        return self.wavelet.theta


@dataclass(frozen=True, eq=False)
class FrequencyOperator:
    """
    Per-wavenumber linear model shared by every bin of one run.

    Attributes:
        reflectivity: (n_stacks, 3) reflection coefficients.
        wavelet_spectra: (n_stacks, nzp) complex wavelet spectra.
        noise_variances: (n_stacks,) white-noise variances.
    """
    reflectivity: np.ndarray
    wavelet_spectra: np.ndarray
    noise_variances: np.ndarray

    @property
    def n_stacks(self) -> int:
        return self.reflectivity.shape[0]

    @property
    def nzp(self) -> int:
        return self.wavelet_spectra.shape[1]

    def design_matrix(self, kz: int) -> np.ndarray:
        """(n_stacks, 3) complex matrix H at vertical wavenumber index kz."""
        return self.wavelet_spectra[:, kz][:, None] * self.reflectivity

    def noise_covariance(self) -> np.ndarray:
        return np.diag(self.noise_variances).astype(complex)

    def apply(self, kz: int, parameter_spectra: np.ndarray) -> np.ndarray:
        """
        Forward model one slab.

        Args:
            kz: Vertical wavenumber index of the slab.
            parameter_spectra: (3, ...) complex spectra.

        Returns:
            (n_stacks, ...) seismic spectra.
        """
        H = self.design_matrix(kz)
        return np.tensordot(H, parameter_spectra, axes=(1, 0))


def build_forward_operator(
    stacks: Sequence[StackData],
    nzp: int,
    vs_vp_ratio: float,
    differentiate: bool = True,
) -> FrequencyOperator:
    """
    Build the observation operator for all stacks.

    Raises:
        NumericalError: if a noise variance is negative or non-finite, or
            if the operator carries no signal at any wavenumber.
    """
    if len(stacks) == 0:
        raise ValueError("at least one stack is required")
    reflectivity = np.array([reflection_coefficients(s.theta, vs_vp_ratio) for s in stacks])
    spectra = np.array([s.wavelet.spectrum(nzp, differentiate=differentiate) for s in stacks])
    noise = np.array([float(s.noise_variance) for s in stacks])

    if not np.all(np.isfinite(noise)) or np.any(noise < 0.0):
        raise NumericalError("noise variances must be finite and non-negative")
    if not np.all(np.isfinite(spectra)):
        raise NumericalError("wavelet spectra contain NaN or infinite values")
    if not np.any(np.abs(spectra) > 0.0):
        raise NumericalError("observation operator is identically zero")
    return FrequencyOperator(reflectivity=reflectivity, wavelet_spectra=spectra, noise_variances=noise)


def stack_names(stacks: Sequence[StackData]):
    """Labels for stacks, falling back to the angle in degrees."""
    return [s.name or f"{np.degrees(s.theta):.1f}deg" for s in stacks]
