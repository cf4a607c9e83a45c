"""
bayesseis: Bayesian seismic inversion in the wavenumber domain.

Core library with padded FFT grids (in memory or on disk), the inversion
engine, posterior simulation and diagnostics.
"""

from .errors import AccessModeError, PhaseError, NumericalError, GridIOError
from .context import GridContext
from .settings import InversionSettings, load_settings
from .fftgrid import MISSING, AccessMode, Domain, GridShape, BaseGrid, FFTGrid, extend_into_padding
from .filegrid import FileFFTGrid, create_grid
from .simbox import Simbox
from .wavelet import Wavelet, ricker, delta_wavelet
from .forward import StackData, FrequencyOperator, build_forward_operator, reflection_coefficients
from .prior import ParameterCovariance, make_correlation_grid, white_correlation_grid
from .posterior import posterior_moments, hermitian_sqrt
from .inversion import Phase, Background, InversionResult, BayesianInversion
from .simulation import draw_realization, covariance_function_grids, pointwise_covariance
from .facies import GaussianFacies, FaciesModel
from .calibration import WaveletScale, fit_wavelet_scale, apply_wavelet_scale, extract_traces
from .io import write_storm_file, write_segy_file, save_grid, load_grid, save_slice_png
from .metrics import (
    EnergySummary,
    compute_synthetic_seismic,
    compute_seismic_residuals,
    compute_data_misfit_norm,
    compute_correlation,
)

__all__ = [
    "AccessModeError",
    "PhaseError",
    "NumericalError",
    "GridIOError",
    "GridContext",
    "InversionSettings",
    "load_settings",
    "MISSING",
    "AccessMode",
    "Domain",
    "GridShape",
    "BaseGrid",
    "FFTGrid",
    "extend_into_padding",
    "FileFFTGrid",
    "create_grid",
    "Simbox",
    "Wavelet",
    "ricker",
    "delta_wavelet",
    "StackData",
    "FrequencyOperator",
    "build_forward_operator",
    "reflection_coefficients",
    "ParameterCovariance",
    "make_correlation_grid",
    "white_correlation_grid",
    "posterior_moments",
    "hermitian_sqrt",
    "Phase",
    "Background",
    "InversionResult",
    "BayesianInversion",
    "draw_realization",
    "covariance_function_grids",
    "pointwise_covariance",
    "GaussianFacies",
    "FaciesModel",
    "WaveletScale",
    "fit_wavelet_scale",
    "apply_wavelet_scale",
    "extract_traces",
    "write_storm_file",
    "write_segy_file",
    "save_grid",
    "load_grid",
    "save_slice_png",
    "EnergySummary",
    "compute_synthetic_seismic",
    "compute_seismic_residuals",
    "compute_data_misfit_norm",
    "compute_correlation",
]
