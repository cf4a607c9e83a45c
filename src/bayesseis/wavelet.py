"""
Stack wavelets and their vertical spectra.
"""

from dataclasses import dataclass, replace
from typing import Optional

import numpy as np
from scipy import fft as sfft


@dataclass(frozen=True, eq=False)
class Wavelet:
    """
    Impulse response of one angle stack.

    Attributes:
        samples: Wavelet amplitudes at a regular sample interval.
        dz: Sample interval in milliseconds.
        theta: Incidence angle of the stack in radians.
        center: Index of zero lag in `samples` (middle sample when None).
        scale: Global amplitude scale.
        shift: Time shift in milliseconds, positive delays the wavelet.
    """
    samples: np.ndarray
    dz: float
    theta: float = 0.0
    center: Optional[int] = None
    scale: float = 1.0
    shift: float = 0.0

    def __post_init__(self):
        samples = np.asarray(self.samples, dtype=float).ravel()
        if samples.size == 0:
            raise ValueError("wavelet must have at least one sample")
        if not np.all(np.isfinite(samples)):
            raise ValueError("wavelet contains NaN or infinite values")
        if self.dz <= 0.0:
            raise ValueError("dz must be positive")
        if not (0.0 <= self.theta < np.pi / 2):
            raise ValueError("theta must be in [0, pi/2)")
        object.__setattr__(self, "samples", samples)
        if self.center is None:
            object.__setattr__(self, "center", samples.size // 2)

    def shift_and_scale(self, shift: float, scale: float) -> "Wavelet":
        """Return a copy with an extra shift (ms) and multiplied scale."""
        return replace(self, shift=self.shift + shift, scale=self.scale * scale)

    def padded_response(self, nzp: int) -> np.ndarray:
        """Circular impulse response of length nzp, zero lag at index 0."""
        if self.samples.size > nzp:
            raise ValueError(f"wavelet has {self.samples.size} samples, more than nzp={nzp}")
        response = np.zeros(nzp)
        lags = (np.arange(self.samples.size) - self.center) % nzp
        np.add.at(response, lags, self.samples)
        return response

    def spectrum(self, nzp: int, differentiate: bool = False) -> np.ndarray:
        """
        Complex vertical spectrum of length nzp in `scipy.fft.fft` order.

        With `differentiate` the wavelet is convolved with the forward
        difference m[k+1] - m[k], which turns log-parameter contrasts into
        reflectivity.
        """
        response = sfft.fft(self.padded_response(nzp)) * self.scale
        freqs = sfft.fftfreq(nzp)
        if self.shift != 0.0:
            response = response * np.exp(-2j * np.pi * freqs * self.shift / self.dz)
        if differentiate:
            response = response * (np.exp(2j * np.pi * freqs) - 1.0)
        return response


def ricker(peak_frequency: float, dz: float, theta: float = 0.0, n_samples: Optional[int] = None) -> Wavelet:
    """
    Ricker wavelet with peak frequency in Hz sampled every dz milliseconds.
    """
    if peak_frequency <= 0.0:
        raise ValueError("peak_frequency must be positive")
    if n_samples is None:
        # Three periods of the peak frequency on each side of zero lag.
        half = int(np.ceil(3000.0 / (peak_frequency * dz)))
        n_samples = 2 * half + 1
    t = (np.arange(n_samples) - n_samples // 2) * dz / 1000.0
    a = (np.pi * peak_frequency * t) ** 2
    return Wavelet(samples=(1.0 - 2.0 * a) * np.exp(-a), dz=dz, theta=theta)


def delta_wavelet(dz: float = 4.0, theta: float = 0.0) -> Wavelet:
    """Unit spike at zero lag."""
    return Wavelet(samples=np.array([1.0]), dz=dz, theta=theta, center=0)
