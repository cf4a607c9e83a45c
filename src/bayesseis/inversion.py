"""
Frequency-domain Bayesian inversion engine.

The residual of (ln Vp, ln Vs, ln rho) around the log background is a
stationary Gaussian field, so its spectrum decouples over wavenumbers and
each bin gets a 3-parameter linear-Gaussian update.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .context import GridContext
from .errors import NumericalError, PhaseError
from .facies import facies_probability_grids
from .fftgrid import AccessMode, BaseGrid, Domain, extend_into_padding
from .filegrid import create_grid
from .forward import PARAMETER_NAMES, StackData, build_forward_operator, stack_names
from .metrics import (
    EnergySummary,
    compute_data_misfit_norm,
    compute_seismic_residuals,
    compute_synthetic_seismic,
    energy_warnings,
    logical_variance,
)
from .posterior import hermitian_weights, pack_covariance, posterior_moments
from .prior import ParameterCovariance, clip_spectrum
from .settings import InversionSettings
from .simbox import Simbox
from .simulation import covariance_function_grids, draw_realization, pointwise_covariance

logger = logging.getLogger(__name__)


class Phase(Enum):
    NEW = 0
    BUILD_PRIORS = 1
    TRANSFORM_INPUTS = 2
    PER_FREQUENCY_UPDATE = 3
    INVERSE_TRANSFORM = 4
    SIMULATE = 5
    POSTERIOR_COVARIANCE = 6
    FACIES_PROBABILITY = 7
    DONE = 8


_POSTERIOR_READY = frozenset({Phase.INVERSE_TRANSFORM, Phase.SIMULATE})


@dataclass(eq=False)
class Background:
    """
    Background trend in natural units, one spatial grid per parameter.
    """
    vp: BaseGrid
    vs: BaseGrid
    rho: BaseGrid

    def grids(self) -> List[BaseGrid]:
        return [self.vp, self.vs, self.rho]


@dataclass(eq=False)
class InversionResult:
    """
    Everything a run hands back to the caller.

    Attributes:
        posterior: Posterior mean per parameter name ("vp", "vs", "rho").
        simulations: One dict per realization, keyed like `posterior`.
        covariance: Posterior covariance functions keyed by parameter pair.
        pointwise_covariance: (3, 3) posterior covariance at one voxel.
        facies_probabilities: Probability grid per facies name.
        synthetic_seismic: Forward modelled posterior per stack.
        seismic_residuals: Observed minus synthetic seismic per stack.
        seismic_misfit: L2 norm of all residuals over the logical box.
        energy: Energy balance per stack.
        warnings: Modelling warnings collected during the run.
    """
    posterior: Dict[str, BaseGrid]
    simulations: List[Dict[str, BaseGrid]] = field(default_factory=list)
    covariance: Optional[Dict[Tuple[str, str], BaseGrid]] = None
    pointwise_covariance: Optional[np.ndarray] = None
    facies_probabilities: Optional[Dict[str, BaseGrid]] = None
    synthetic_seismic: Optional[List[BaseGrid]] = None
    seismic_residuals: Optional[List[BaseGrid]] = None
    seismic_misfit: Optional[float] = None
    energy: List[EnergySummary] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class BayesianInversion:
    """
    One inversion run over a simbox.

    Phases run in the order build_priors, transform_inputs,
    per_frequency_update, inverse_transform, then any of simulate,
    compute_post_covariance and compute_facies_probabilities. Calling a
    phase out of order raises PhaseError.

    Args:
        simbox: Geometry shared by every grid.
        stacks: Seismic stacks with wavelets and noise variances.
        background: Background trend in natural units.
        parameter_cov: Pointwise covariance of the log parameters.
        correlation: Spatial correlation grid on the padded block, lag 0 at
            the origin. Every input must carry the padding of
            `simbox.grid_shape(settings.min_pad_fraction)`.
        settings: Run settings.
        context: Grid context; one is created from `settings` when omitted
            and closed with the engine.
    """

    def __init__(
        self,
        simbox: Simbox,
        stacks: Sequence[StackData],
        background: Background,
        parameter_cov: Union[ParameterCovariance, np.ndarray],
        correlation: BaseGrid,
        settings: Optional[InversionSettings] = None,
        context: Optional[GridContext] = None,
    ):
        if len(stacks) == 0:
            raise ValueError("at least one stack is required")
        self.simbox = simbox
        self.stacks = list(stacks)
        self.background = background
        if not isinstance(parameter_cov, ParameterCovariance):
            parameter_cov = ParameterCovariance(np.asarray(parameter_cov, dtype=float))
        self.parameter_cov = parameter_cov
        self.correlation = correlation
        self.settings = settings if settings is not None else InversionSettings()

        self.shape = simbox.grid_shape(self.settings.min_pad_fraction)
        inputs = [s.seismic for s in self.stacks] + background.grids() + [correlation]
        for grid in inputs:
            if (grid.nx, grid.ny, grid.nz) != simbox.dims:
                raise ValueError("input grid extents do not match the simbox")
            if not grid.shape.same_padding(self.shape):
                raise ValueError(
                    f"input grids must be padded to {self.shape.nxp}x{self.shape.nyp}x{self.shape.nzp} "
                    f"(min_pad_fraction={self.settings.min_pad_fraction})"
                )
            if grid.domain is not Domain.SPATIAL:
                raise ValueError("input grids must be in the spatial domain")

        self._owns_context = context is None
        if context is None:
            context = GridContext(
                work_dir=self.settings.work_dir,
                use_file_grids=self.settings.use_file_grids,
                max_memory_bytes=self.settings.max_memory_bytes,
            )
        self.context = context
        # Data spectra, synthetics and residuals, background, mean and
        # covariance spectra, posterior grids.
        self._n_live_grids = 3 * len(self.stacks) + 3 + 3 + 6 + 6 + 1

        self.phase = Phase.NEW
        self.warnings: List[str] = []
        self.names = stack_names(self.stacks)
        self.operator = None
        self.vs_vp_ratio = None

        self._log_background: List[BaseGrid] = []
        self._corr_spectrum: Optional[BaseGrid] = None
        self._data_spectra: List[BaseGrid] = []
        self._background_spectra: List[BaseGrid] = []
        self._mean_spectra: List[BaseGrid] = []
        self._cov_spectra: List[BaseGrid] = []
        self._pointwise_cov: Optional[np.ndarray] = None
        self._signal_variance: Optional[np.ndarray] = None
        self._energy: List[EnergySummary] = []

        self.post_log: List[BaseGrid] = []
        self.posterior: Dict[str, BaseGrid] = {}
        self.simulations: List[Dict[str, BaseGrid]] = []
        self.covariance: Optional[Dict[Tuple[str, str], BaseGrid]] = None
        self.facies_probabilities: Optional[Dict[str, BaseGrid]] = None
        self.synthetic_seismic: Optional[List[BaseGrid]] = None
        self.seismic_residuals: Optional[List[BaseGrid]] = None
        self.seismic_misfit: Optional[float] = None

    # -- helpers -----------------------------------------------------------

    def _require_phase(self, allowed, what: str):
        if self.phase not in allowed:
            raise PhaseError(f"{what} cannot run in phase {self.phase.name}")

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def _make_grid(self) -> BaseGrid:
        return create_grid(self.shape, self.context, self._n_live_grids)

    def _make_complex_grid(self) -> BaseGrid:
        grid = self._make_grid()
        grid.create_complex_grid()
        return grid

    # -- phases ------------------------------------------------------------

    def build_priors(self):
        """
        Take the log of the background, build the observation operator and
        transform the correlation function.

        Raises:
            NumericalError: if the operator or the Vs/Vp ratio is unusable.
        """
        self._require_phase({Phase.NEW}, "build_priors")
        logger.info(
            f"Building priors for {len(self.stacks)} stacks on a "
            f"{self.shape.nxp}x{self.shape.nyp}x{self.shape.nzp} padded grid"
        )

        arrays = []
        for name, grid in zip(PARAMETER_NAMES, self.background.grids()):
            values = grid.to_array()
            valid = np.isfinite(values) & (values > 0.0)
            if not np.any(valid):
                raise NumericalError(f"Background {name} has no positive trend samples")
            log_values = np.zeros_like(values)
            log_values[valid] = np.log(values[valid])
            n_missing = int(np.count_nonzero(~valid))
            if n_missing:
                self._warn(f"Background {name}: {n_missing} missing or non-positive trend samples")
                log_values[~valid] = log_values[valid].mean()
            arrays.append(values)
            # Padding continues the trend without adding contrast.
            log_grid = self._make_grid()
            log_grid.fill_from_array(extend_into_padding(log_values, self.shape), padded=True)
            self._log_background.append(log_grid)

        if self.settings.vs_vp_ratio is not None:
            self.vs_vp_ratio = self.settings.vs_vp_ratio
        else:
            vp, vs = arrays[0], arrays[1]
            valid = np.isfinite(vp) & np.isfinite(vs) & (vp > 0.0) & (vs > 0.0)
            if not np.any(valid):
                raise NumericalError("cannot derive Vs/Vp: background has no valid samples")
            self.vs_vp_ratio = float(np.median(vs[valid] / vp[valid]))
            if not (0.0 < self.vs_vp_ratio < 1.0):
                raise NumericalError(f"background Vs/Vp ratio {self.vs_vp_ratio:.4g} is outside (0, 1)")
        logger.info(f"Using Vs/Vp = {self.vs_vp_ratio:.4f}")

        self.operator = build_forward_operator(
            self.stacks,
            self.shape.nzp,
            self.vs_vp_ratio,
            differentiate=self.settings.differentiate_wavelet,
        )
        self._corr_spectrum = self.correlation.copy(self._make_grid())
        self._corr_spectrum.fft_in_place()
        self.phase = Phase.BUILD_PRIORS

    def transform_inputs(self):
        """Forward transform copies of the seismic and the log background."""
        self._require_phase({Phase.BUILD_PRIORS}, "transform_inputs")
        logger.info("Transforming inputs to the frequency domain")
        for stack in self.stacks:
            spectrum = stack.seismic.copy(self._make_grid())
            spectrum.fft_in_place()
            self._data_spectra.append(spectrum)
        for grid in self._log_background:
            spectrum = grid.copy()
            spectrum.fft_in_place()
            self._background_spectra.append(spectrum)
        self.phase = Phase.TRANSFORM_INPUTS

    def _update_slab(self, kz: int, data: np.ndarray, background: np.ndarray, corr: np.ndarray):
        """
        Posterior of one z-slab of wavenumbers.

        Returns:
            (mean (3, nyp, cnxp), packed covariance (6, nyp, cnxp),
            signal energy per stack, pointwise covariance share, number of
            negative correlation spectrum values)
        """
        H = self.operator.design_matrix(kz)
        s, n_bad = clip_spectrum(corr)
        sigma0 = self.parameter_cov.matrix
        prior_cov = s[..., None, None] * sigma0
        noise_cov = self.operator.noise_covariance()

        d = np.moveaxis(data, 0, -1).astype(complex)
        mu = np.moveaxis(background, 0, -1).astype(complex)
        residual = d - mu @ H.T
        mean, cov = posterior_moments(H, prior_cov, noise_cov, residual)

        weights = hermitian_weights(self.shape.nxp)
        weighted_s = float(np.sum(s * weights))
        signal = np.real(np.einsum("sp,pq,sq->s", H, sigma0, np.conj(H))) * weighted_s
        pointwise = np.real(np.einsum("i,jiab->ab", weights, cov))
        return np.moveaxis(mean, -1, 0), pack_covariance(cov), signal, pointwise, n_bad

    def per_frequency_update(self):
        """
        Posterior mean and covariance spectra for every wavenumber bin.

        Slabs are read and written by this thread in z order; only the
        per-slab algebra runs on the worker pool.
        """
        self._require_phase({Phase.TRANSFORM_INPUTS}, "per_frequency_update")
        n_threads = self.settings.n_threads
        logger.info(f"Per-frequency update of {self.shape.nzp} slabs on {n_threads} threads")

        self._mean_spectra = [self._make_complex_grid() for _ in PARAMETER_NAMES]
        self._cov_spectra = [self._make_complex_grid() for _ in range(6)]
        inputs = self._data_spectra + self._background_spectra + [self._corr_spectrum]
        outputs = self._mean_spectra + self._cov_spectra
        n_stacks = len(self._data_spectra)

        signal = np.zeros(n_stacks)
        pointwise = np.zeros((3, 3))
        n_bad = 0
        batch_size = 4 * n_threads
        try:
            for g in inputs:
                g.set_access_mode(AccessMode.READ)
            for g in outputs:
                g.set_access_mode(AccessMode.WRITE)
            with ThreadPoolExecutor(max_workers=n_threads) as executor:
                for start in range(0, self.shape.nzp, batch_size):
                    kzs = list(range(start, min(start + batch_size, self.shape.nzp)))
                    data, background, corr = [], [], []
                    for _ in kzs:
                        data.append(np.stack([g.get_next_complex_slice() for g in self._data_spectra]))
                        background.append(np.stack([g.get_next_complex_slice() for g in self._background_spectra]))
                        corr.append(self._corr_spectrum.get_next_complex_slice())
                    for mean, cov, sig, pw, bad in executor.map(self._update_slab, kzs, data, background, corr):
                        for p, g in enumerate(self._mean_spectra):
                            g.set_next_complex_slice(mean[p])
                        for n, g in enumerate(self._cov_spectra):
                            g.set_next_complex_slice(cov[n])
                        signal += sig
                        pointwise += pw
                        n_bad += bad
        finally:
            for g in inputs + outputs:
                g.end_access()

        n = self.shape.n_padded
        self._signal_variance = signal / n
        self._pointwise_cov = 0.5 * (pointwise + pointwise.T) / n
        if n_bad:
            self._warn(f"Correlation spectrum has {n_bad} negative values; they were set to zero")

        self._energy = [
            EnergySummary(name, logical_variance(stack.seismic), float(sv), float(nv))
            for name, stack, sv, nv in zip(
                self.names, self.stacks, self._signal_variance, self.operator.noise_variances
            )
        ]
        for message in energy_warnings(self._energy, self.settings.energy_tolerance):
            self._warn(message)
        self.phase = Phase.PER_FREQUENCY_UPDATE

    def inverse_transform(self):
        """
        Posterior mean in the spatial domain, background added back.
        """
        self._require_phase({Phase.PER_FREQUENCY_UPDATE}, "inverse_transform")
        logger.info("Inverse transforming posterior mean")
        for spectrum, log_bg in zip(self._mean_spectra, self._log_background):
            spectrum.inv_fft_in_place()
            spectrum.add(log_bg)
            self.post_log.append(spectrum)
        self._mean_spectra = []

        for grid in self._data_spectra + self._background_spectra:
            grid.close()
        self._data_spectra = []
        self._background_spectra = []

        for name, grid in zip(PARAMETER_NAMES, self.post_log):
            if self.settings.exp_output:
                grid = grid.copy()
                grid.exp_transf()
            self.posterior[name] = grid
        self.phase = Phase.INVERSE_TRANSFORM

    def simulate(self, n: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        """
        Draw posterior realizations.

        Args:
            n: Number of realizations; settings.n_simulations when None.
            rng: Random source; seeded from settings.seed when None.

        Returns:
            The new realizations, each a dict keyed by parameter name.
        """
        self._require_phase(_POSTERIOR_READY, "simulate")
        n = self.settings.n_simulations if n is None else n
        if n < 0:
            raise ValueError("n must be non-negative")
        rng = np.random.default_rng(self.settings.seed) if rng is None else rng
        logger.info(f"Drawing {n} posterior realizations")

        drawn = []
        for _ in range(n):
            grids = draw_realization(
                self._cov_spectra, self.post_log, rng, self._make_grid, self.settings.exp_output
            )
            drawn.append(dict(zip(PARAMETER_NAMES, grids)))
        self.simulations.extend(drawn)
        self.phase = Phase.SIMULATE
        return drawn

    def compute_post_covariance(self):
        """
        Posterior covariance functions on the lag grid.

        Returns:
            Dict keyed by parameter pair, e.g. ("vp", "vs").
        """
        self._require_phase(_POSTERIOR_READY, "compute_post_covariance")
        logger.info("Computing posterior covariance grids")
        self.covariance = covariance_function_grids(self._cov_spectra)
        self._pointwise_cov = pointwise_covariance(self.covariance)
        self.phase = Phase.POSTERIOR_COVARIANCE
        return self.covariance

    def compute_facies_probabilities(self, facies_model):
        """
        Probability grid per facies from the posterior mean and the
        pointwise posterior covariance.
        """
        self._require_phase(_POSTERIOR_READY | {Phase.POSTERIOR_COVARIANCE}, "compute_facies_probabilities")
        logger.info(f"Computing probabilities for facies {', '.join(facies_model.names)}")
        self.facies_probabilities = facies_probability_grids(
            self.post_log, self._pointwise_cov, facies_model, self._make_grid
        )
        self.phase = Phase.FACIES_PROBABILITY
        return self.facies_probabilities

    def compute_synthetic_seismic(self):
        """
        Forward model the posterior mean for every stack and keep the
        residuals against the observed seismic. Does not change the phase.
        """
        self._require_phase(
            _POSTERIOR_READY | {Phase.POSTERIOR_COVARIANCE, Phase.FACIES_PROBABILITY},
            "compute_synthetic_seismic",
        )
        for grid in (self.synthetic_seismic or []) + (self.seismic_residuals or []):
            grid.close()
        self.synthetic_seismic = compute_synthetic_seismic(self.operator, self.post_log, self._make_grid)
        self.seismic_residuals = compute_seismic_residuals(
            [s.seismic for s in self.stacks], self.synthetic_seismic
        )
        self.seismic_misfit = compute_data_misfit_norm(self.seismic_residuals)
        logger.info(f"Seismic misfit of the posterior mean: {self.seismic_misfit:.6g}")
        return self.synthetic_seismic

    @property
    def pointwise_covariance(self) -> Optional[np.ndarray]:
        return self._pointwise_cov

    def energy_summary(self) -> List[EnergySummary]:
        if self.phase.value < Phase.PER_FREQUENCY_UPDATE.value:
            raise PhaseError("energy summary is available after the per-frequency update")
        return list(self._energy)

    def finish(self) -> InversionResult:
        self._require_phase(
            _POSTERIOR_READY | {Phase.POSTERIOR_COVARIANCE, Phase.FACIES_PROBABILITY}, "finish"
        )
        self.phase = Phase.DONE
        logger.info(f"Inversion finished with {len(self.warnings)} warnings")
        return InversionResult(
            posterior=dict(self.posterior),
            simulations=list(self.simulations),
            covariance=self.covariance,
            pointwise_covariance=self._pointwise_cov,
            facies_probabilities=self.facies_probabilities,
            synthetic_seismic=self.synthetic_seismic,
            seismic_residuals=self.seismic_residuals,
            seismic_misfit=self.seismic_misfit,
            energy=list(self._energy),
            warnings=list(self.warnings),
        )

    def run(self, facies_model=None) -> InversionResult:
        """
        Run every phase the settings ask for.

        Raises:
            ValueError: if facies probabilities are requested without a model.
        """
        if self.settings.compute_facies_probabilities and facies_model is None:
            raise ValueError("compute_facies_probabilities requires a facies_model")
        self.build_priors()
        self.transform_inputs()
        self.per_frequency_update()
        self.inverse_transform()
        if self.settings.n_simulations > 0:
            self.simulate()
        if self.settings.compute_post_covariance:
            self.compute_post_covariance()
        if self.settings.compute_facies_probabilities:
            self.compute_facies_probabilities(facies_model)
        if self.settings.compute_synthetic_seismic:
            self.compute_synthetic_seismic()
        return self.finish()

    def close(self):
        """Release every grid the engine created, and its own context."""
        owned = self._log_background + self._data_spectra + self._background_spectra
        owned += self._mean_spectra + self._cov_spectra + self.post_log
        if self._corr_spectrum is not None:
            owned.append(self._corr_spectrum)
        if self.settings.exp_output:
            owned += list(self.posterior.values())
        for sim in self.simulations:
            owned += list(sim.values())
        for grids in (self.covariance, self.facies_probabilities):
            if grids:
                owned += list(grids.values())
        owned += (self.synthetic_seismic or []) + (self.seismic_residuals or [])
        for grid in owned:
            grid.close()
        if self._owns_context:
            self.context.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
