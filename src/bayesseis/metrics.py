"""
Diagnostics for quality control of an inversion.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Sequence

import numpy as np

from .fftgrid import AccessMode, BaseGrid
from .forward import FrequencyOperator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnergySummary:
    """
    Energy balance of one stack.

    Attributes:
        name: Stack label.
        data_variance: Variance of the observed seismic in the logical box.
        signal_variance: Seismic variance predicted by the prior model.
        noise_variance: Noise variance used in the inversion.
    """

    name: str
    data_variance: float
    signal_variance: float
    noise_variance: float

    @property
    def model_variance(self) -> float:
        return self.signal_variance + self.noise_variance

    @property
    def sn_ratio(self) -> float:
        if self.noise_variance == 0.0:
            return float("inf")
        return self.signal_variance / self.noise_variance

    @property
    def relative_mismatch(self) -> float:
        if self.data_variance == 0.0:
            return float("inf") if self.model_variance > 0.0 else 0.0
        return abs(self.model_variance - self.data_variance) / self.data_variance


def logical_variance(grid: BaseGrid) -> float:
    """Variance of the finite samples in the logical box."""
    values = grid.to_array()
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 0.0
    return float(np.var(values))


def energy_warnings(summaries: Sequence[EnergySummary], tolerance: float) -> List[str]:
    """Warning text for stacks whose modelled and observed energy disagree."""
    warnings = []
    for s in summaries:
        if s.relative_mismatch > tolerance:
            warnings.append(
                f"Stack {s.name}: observed seismic variance {s.data_variance:.4g} differs from "
                f"modelled variance {s.model_variance:.4g} (signal {s.signal_variance:.4g}, "
                f"noise {s.noise_variance:.4g})"
            )
    return warnings


def compute_synthetic_seismic(
    operator: FrequencyOperator,
    log_parameters: Sequence[BaseGrid],
    make_grid: Callable[[], BaseGrid],
) -> List[BaseGrid]:
    """
    Forward model seismic for every stack from spatial log-parameter grids.

    Args:
        operator: Observation operator of the run.
        log_parameters: Spatial grids of (ln Vp, ln Vs, ln rho).
        make_grid: Factory for new zero grids on the same shape.

    Returns:
        One spatial grid per stack.
    """
    spectra = [g.copy() for g in log_parameters]
    outputs = [make_grid() for _ in range(operator.n_stacks)]
    try:
        for s in spectra:
            s.fft_in_place()
        for out in outputs:
            out.create_complex_grid()
            out.set_access_mode(AccessMode.WRITE)
        for s in spectra:
            s.set_access_mode(AccessMode.READ)
        for kz in range(spectra[0].nzp):
            m = np.stack([s.get_next_complex_slice() for s in spectra])
            d = operator.apply(kz, m)
            for n, out in enumerate(outputs):
                out.set_next_complex_slice(d[n])
    finally:
        for g in spectra + outputs:
            g.end_access()
        for s in spectra:
            s.close()
    for out in outputs:
        out.inv_fft_in_place()
    return outputs


def compute_seismic_residuals(
    seismic: Sequence[BaseGrid],
    synthetic: Sequence[BaseGrid],
) -> List[BaseGrid]:
    """
    Observed minus synthetic seismic, one grid per stack.
    """
    if len(seismic) != len(synthetic):
        raise ValueError("seismic and synthetic must have the same number of stacks")
    residuals = []
    for obs, syn in zip(seismic, synthetic):
        res = obs.copy()
        neg = syn.copy()
        neg.multiply_by_scalar(-1.0)
        res.add(neg)
        neg.close()
        residuals.append(res)
    return residuals


def compute_data_misfit_norm(residuals: Sequence[BaseGrid]) -> float:
    """
    L2 norm of residual seismic over the logical boxes of all stacks.
    """
    total = 0.0
    for r in residuals:
        values = r.to_array()
        total += float(np.sum(values[np.isfinite(values)] ** 2))
    return float(np.sqrt(total))


def compute_correlation(true_values: np.ndarray, estimate: np.ndarray) -> float:
    """
    Pearson correlation between a reference model and an estimate.
    """
    true_arr = np.asarray(true_values, dtype=float).ravel()
    est_arr = np.asarray(estimate, dtype=float).ravel()
    if true_arr.shape != est_arr.shape:
        raise ValueError("true_values and estimate must have the same shape")
    if not np.all(np.isfinite(true_arr)) or not np.all(np.isfinite(est_arr)):
        raise ValueError("true_values and estimate must not contain NaN/Inf")
    return float(np.corrcoef(true_arr, est_arr)[0, 1])
