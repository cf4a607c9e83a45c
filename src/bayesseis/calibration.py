"""
Calibration of wavelet scale and noise level against well synthetics.

Model:
    seismic = gain * synthetic + noise
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .fftgrid import AccessMode, BaseGrid
from .simbox import Simbox
from .wavelet import Wavelet


@dataclass(frozen=True)
class WaveletScale:
    """Global wavelet gain and the noise left after scaling."""

    gain: float
    noise_variance: float
    sn_ratio: float
    r2: float
    n_samples: int


def _validate_1d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be a 1D array")
    if arr.size == 0:
        raise ValueError(f"{name} must not be empty")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains NaN or infinite values")
    return arr


def fit_wavelet_scale(
    synthetic_traces: Sequence[np.ndarray],
    seismic_traces: Sequence[np.ndarray],
    weights: Optional[Sequence[float]] = None,
) -> WaveletScale:
    """
    Gain-only least-squares fit of seismic against well synthetics.

    Args:
        synthetic_traces: One 1D synthetic per well made with a unit wavelet.
        seismic_traces: Seismic traces at the wells, same lengths.
        weights: Optional non-negative weight per well.

    Returns:
        WaveletScale with the pooled gain, residual noise variance, S/N and R^2.
    """
    if len(synthetic_traces) != len(seismic_traces):
        raise ValueError("synthetic_traces and seismic_traces must have the same number of wells")
    if len(synthetic_traces) == 0:
        raise ValueError("at least one well is required")
    if weights is None:
        weights = [1.0] * len(synthetic_traces)
    w = _validate_1d("weights", weights)
    if w.size != len(synthetic_traces):
        raise ValueError("weights length must match number of wells")
    if np.any(w < 0.0) or not np.any(w > 0.0):
        raise ValueError("weights must be non-negative and not all zero")

    xs, ys, ws = [], [], []
    for n, (syn, seis) in enumerate(zip(synthetic_traces, seismic_traces)):
        x = _validate_1d(f"synthetic_traces[{n}]", syn)
        y = _validate_1d(f"seismic_traces[{n}]", seis)
        if x.shape != y.shape:
            raise ValueError(f"well {n}: synthetic and seismic traces must have the same length")
        xs.append(x)
        ys.append(y)
        ws.append(np.full(x.size, w[n]))
    x = np.concatenate(xs)
    y = np.concatenate(ys)
    wt = np.concatenate(ws)

    denom = float(np.sum(wt * x * x))
    if denom <= 0.0:
        raise ValueError("cannot fit gain when synthetic traces are all zero")
    gain = float(np.sum(wt * x * y) / denom)

    residual = y - gain * x
    total_weight = float(np.sum(wt))
    noise_variance = float(np.sum(wt * residual ** 2) / total_weight)
    signal = gain * x
    signal_mean = float(np.sum(wt * signal) / total_weight)
    signal_variance = float(np.sum(wt * (signal - signal_mean) ** 2) / total_weight)
    sn_ratio = float("inf") if noise_variance == 0.0 else signal_variance / noise_variance

    y_mean = float(np.sum(wt * y) / total_weight)
    ss_tot = float(np.sum(wt * (y - y_mean) ** 2))
    ss_res = noise_variance * total_weight
    r2 = 1.0 if ss_tot == 0.0 else 1.0 - (ss_res / ss_tot)

    return WaveletScale(
        gain=gain,
        noise_variance=noise_variance,
        sn_ratio=sn_ratio,
        r2=r2,
        n_samples=int(x.size),
    )


def apply_wavelet_scale(wavelet: Wavelet, scale: WaveletScale) -> Wavelet:
    """Wavelet multiplied by the fitted gain."""
    return wavelet.shift_and_scale(0.0, scale.gain)


def extract_traces(grid: BaseGrid, simbox: Simbox, well_xy: np.ndarray) -> Tuple[List[np.ndarray], np.ndarray]:
    """
    Vertical traces of a spatial grid at the columns nearest to wells.

    Args:
        grid: Spatial grid over `simbox`.
        simbox: Geometry of the grid.
        well_xy: Array (n_wells, 2) of well x, y positions.

    Returns:
        traces: One (nz,) array per well.
        columns: Array (n_wells, 2) of the (i, j) columns used.
    """
    points = np.asarray(well_xy, dtype=float)
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError("well_xy must have shape (n_wells, 2)")
    if not np.all(np.isfinite(points)):
        raise ValueError("well_xy contains NaN or infinite values")

    nx, ny, nz = simbox.dims
    centers = simbox.cell_centers()[:, :, 0, :2].reshape(-1, 2)
    tree = cKDTree(centers)
    _, idx = tree.query(points)
    columns = np.column_stack(np.unravel_index(idx, (nx, ny)))

    traces = []
    grid.set_access_mode(AccessMode.RANDOMACCESS)
    try:
        for i, j in columns:
            traces.append(np.array([grid.get_real_value(int(i), int(j), k) for k in range(nz)]))
    finally:
        grid.end_access()
    return traces, columns
