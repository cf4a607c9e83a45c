"""
Tests for inversion.py
"""

import numpy as np
import pytest

from bayesseis.context import GridContext
from bayesseis.errors import NumericalError, PhaseError
from bayesseis.facies import FaciesModel, GaussianFacies
from bayesseis.fftgrid import FFTGrid, extend_into_padding
from bayesseis.forward import FrequencyOperator, StackData, reflection_coefficients
from bayesseis.inversion import Background, BayesianInversion, Phase
from bayesseis.metrics import compute_synthetic_seismic
from bayesseis.prior import make_correlation_grid, white_correlation_grid
from bayesseis.settings import InversionSettings
from bayesseis.simbox import Simbox
from bayesseis.wavelet import Wavelet, delta_wavelet

SIMBOX = Simbox((0.0, 0.0, 0.0), (10.0, 10.0, 4.0), (4, 4, 4))
SHAPE = SIMBOX.grid_shape()
BACKGROUND = (3000.0, 1500.0, 2300.0)
THREE_ANGLES = (0.0, 0.5, 1.0)
PARAMETER_COV = np.diag([0.0025, 0.0025, 0.0025])


def _true_log_model(seed=0):
    rng = np.random.default_rng(seed)
    return [np.log(v) + 0.05 * rng.standard_normal(SIMBOX.dims) for v in BACKGROUND]


def _stacks(log_model, thetas, noise=0.0, differentiate=False):
    wavelets = [delta_wavelet(dz=4.0, theta=t) for t in thetas]
    op = FrequencyOperator(
        reflectivity=np.array([reflection_coefficients(t, 0.5) for t in thetas]),
        wavelet_spectra=np.array([w.spectrum(SHAPE.nzp, differentiate=differentiate) for w in wavelets]),
        noise_variances=np.full(len(thetas), noise),
    )
    grids = [FFTGrid.from_array(m, SHAPE) for m in log_model]
    seismic = compute_synthetic_seismic(op, grids, lambda: FFTGrid(SHAPE))
    return [StackData(s, w, noise, f"stack{n}") for n, (s, w) in enumerate(zip(seismic, wavelets))]


def _background(values=BACKGROUND):
    return Background(*[FFTGrid.from_array(np.full(SIMBOX.dims, v), SHAPE) for v in values])


def _engine(stacks, settings, correlation=None, context=None, background=None):
    if correlation is None:
        correlation = white_correlation_grid(SHAPE)
    return BayesianInversion(
        SIMBOX,
        stacks,
        background or _background(),
        PARAMETER_COV,
        correlation,
        settings,
        context,
    )


def _posterior_arrays(engine):
    return [engine.posterior[name].to_array() for name in ("vp", "vs", "rho")]


def _smooth_correlation():
    return make_correlation_grid(SHAPE, SIMBOX.spacing, (20.0, 20.0, 8.0))


def _invert(engine):
    engine.build_priors()
    engine.transform_inputs()
    engine.per_frequency_update()
    engine.inverse_transform()


def test_zero_noise_recovers_the_model_exactly():
    log_model = _true_log_model()
    stacks = _stacks(log_model, THREE_ANGLES)
    settings = InversionSettings(differentiate_wavelet=False)
    with _engine(stacks, settings) as engine:
        _invert(engine)
        assert engine.vs_vp_ratio == pytest.approx(0.5)
        for grid, expected in zip(engine.post_log, log_model):
            np.testing.assert_allclose(grid.to_array(), expected, atol=1e-3)
        for values, expected in zip(_posterior_arrays(engine), log_model):
            np.testing.assert_allclose(values, np.exp(expected), rtol=1e-3)


def test_zero_noise_single_stack_reproduces_the_data():
    stacks = _stacks(_true_log_model(1), (0.0,))
    settings = InversionSettings(differentiate_wavelet=False)
    with _engine(stacks, settings) as engine:
        _invert(engine)
        synthetic = engine.compute_synthetic_seismic()
        assert engine.phase is Phase.INVERSE_TRANSFORM
        np.testing.assert_allclose(synthetic[0].to_array(), stacks[0].seismic.to_array(), atol=1e-4)


def test_inputs_are_not_modified():
    stacks = _stacks(_true_log_model(2), (0.0, 0.5), noise=0.01, differentiate=True)
    before = stacks[0].seismic.to_array()
    background = _background()
    with _engine(stacks, InversionSettings(), background=background) as engine:
        _invert(engine)
    np.testing.assert_array_equal(stacks[0].seismic.to_array(), before)
    np.testing.assert_array_equal(background.vp.to_array(), BACKGROUND[0])


def test_threads_give_identical_results():
    stacks = _stacks(_true_log_model(3), (0.0, 0.5), noise=0.01, differentiate=True)
    results = []
    for n_threads in (1, 3):
        settings = InversionSettings(n_threads=n_threads)
        with _engine(stacks, settings, _smooth_correlation()) as engine:
            _invert(engine)
            results.append((_posterior_arrays(engine), engine.pointwise_covariance.copy()))
    for a, b in zip(results[0][0], results[1][0]):
        np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(results[0][1], results[1][1])


def test_file_grids_give_the_same_results(tmp_path):
    stacks = _stacks(_true_log_model(4), (0.0, 0.5), noise=0.01, differentiate=True)
    results = []
    for use_files in (False, True):
        settings = InversionSettings(n_simulations=1, seed=5)
        with GridContext(work_dir=str(tmp_path), use_file_grids=use_files) as ctx:
            with _engine(stacks, settings, _smooth_correlation(), ctx) as engine:
                _invert(engine)
                sims = engine.simulate()
                results.append(_posterior_arrays(engine) + [sims[0]["vp"].to_array()])
    for a, b in zip(*results):
        np.testing.assert_allclose(a, b, rtol=1e-6)
    assert list(tmp_path.iterdir()) == []


def test_phase_order_is_enforced():
    stacks = _stacks(_true_log_model(5), (0.0,), noise=0.01)
    with _engine(stacks, InversionSettings()) as engine:
        with pytest.raises(PhaseError):
            engine.transform_inputs()
        with pytest.raises(PhaseError):
            engine.energy_summary()
        engine.build_priors()
        with pytest.raises(PhaseError):
            engine.build_priors()
        with pytest.raises(PhaseError):
            engine.simulate(1)
        engine.transform_inputs()
        engine.per_frequency_update()
        with pytest.raises(PhaseError):
            engine.compute_post_covariance()
        engine.inverse_transform()
        engine.compute_post_covariance()
        with pytest.raises(PhaseError):
            engine.simulate(1)
        engine.finish()
        assert engine.phase is Phase.DONE


def test_simulations_are_reproducible():
    stacks = _stacks(_true_log_model(6), (0.0, 0.5), noise=0.01, differentiate=True)
    draws = []
    for _ in range(2):
        with _engine(stacks, InversionSettings(), _smooth_correlation()) as engine:
            _invert(engine)
            sims = engine.simulate(2, np.random.default_rng(9))
            draws.append([s["rho"].to_array() for s in sims])
            mean = engine.posterior["rho"].to_array()
    np.testing.assert_array_equal(draws[0][0], draws[1][0])
    np.testing.assert_array_equal(draws[0][1], draws[1][1])
    assert not np.allclose(draws[0][0], draws[0][1])
    assert not np.allclose(draws[0][0], mean)
    assert np.all(draws[0][0] > 0.0)


def test_simulations_collapse_on_the_mean_without_uncertainty():
    stacks = _stacks(_true_log_model(7), THREE_ANGLES)
    settings = InversionSettings(differentiate_wavelet=False, exp_output=False)
    with _engine(stacks, settings) as engine:
        _invert(engine)
        sim = engine.simulate(1, np.random.default_rng(0))[0]
        for name, mean in zip(("vp", "vs", "rho"), engine.post_log):
            np.testing.assert_allclose(sim[name].to_array(), mean.to_array(), atol=1e-3)


def test_covariance_grids_match_pointwise_covariance():
    stacks = _stacks(_true_log_model(8), (0.0, 0.5), noise=0.01, differentiate=True)
    with _engine(stacks, InversionSettings(), _smooth_correlation()) as engine:
        _invert(engine)
        accumulated = engine.pointwise_covariance.copy()
        grids = engine.compute_post_covariance()
        assert ("vp", "vs") in grids
        np.testing.assert_allclose(engine.pointwise_covariance, accumulated, rtol=1e-3, atol=1e-8)
        assert np.all(np.diag(accumulated) <= np.diag(PARAMETER_COV) * 1.001)
        assert np.all(np.linalg.eigvalsh(accumulated) > -1e-10)


def test_huge_noise_returns_the_prior():
    stacks = _stacks(_true_log_model(9), (0.0,), noise=0.0)
    for stack in stacks:
        stack.noise_variance = 1e10
    with _engine(stacks, InversionSettings()) as engine:
        _invert(engine)
        np.testing.assert_allclose(engine.pointwise_covariance, PARAMETER_COV, rtol=1e-4, atol=1e-10)
        for values, expected in zip(_posterior_arrays(engine), BACKGROUND):
            np.testing.assert_allclose(values, expected, rtol=1e-4)
        summary = engine.energy_summary()
        assert summary[0].noise_variance == 1e10
        assert any("stack0" in w for w in engine.warnings)


def test_missing_background_samples_are_warnings():
    stacks = _stacks(_true_log_model(10), (0.0,), noise=0.01)
    vp = np.full(SIMBOX.dims, BACKGROUND[0])
    vp[0, 0, 0] = 0.0
    background = Background(
        FFTGrid.from_array(vp, SHAPE),
        FFTGrid.from_array(np.full(SIMBOX.dims, BACKGROUND[1]), SHAPE),
        FFTGrid.from_array(np.full(SIMBOX.dims, BACKGROUND[2]), SHAPE),
    )
    with _engine(stacks, InversionSettings(), background=background) as engine:
        engine.build_priors()
        assert any("Background vp" in w for w in engine.warnings)
        assert engine.vs_vp_ratio == pytest.approx(0.5)


def test_invalid_priors_abort():
    stacks = _stacks(_true_log_model(11), (0.0,), noise=0.01)
    stacks[0].wavelet = Wavelet(samples=[0.0], dz=4.0)
    with _engine(stacks, InversionSettings()) as engine:
        with pytest.raises(NumericalError):
            engine.build_priors()

    stacks = _stacks(_true_log_model(11), (0.0,), noise=0.01)
    with _engine(stacks, InversionSettings(), background=_background((1500.0, 3000.0, 2300.0))) as engine:
        with pytest.raises(NumericalError):
            engine.build_priors()


def test_rejects_grids_off_the_simbox():
    stacks = _stacks(_true_log_model(12), (0.0,), noise=0.01)
    other = Simbox((0.0, 0.0, 0.0), (10.0, 10.0, 4.0), (4, 4, 5))
    with pytest.raises(ValueError):
        BayesianInversion(other, stacks, _background(), PARAMETER_COV, white_correlation_grid(SHAPE))
    with pytest.raises(ValueError):
        BayesianInversion(SIMBOX, [], _background(), PARAMETER_COV, white_correlation_grid(SHAPE))


def _facies_model():
    log_bg = np.log(BACKGROUND)
    return FaciesModel([
        GaussianFacies("shale", log_bg, 0.0025 * np.eye(3), 0.5),
        GaussianFacies("sand", log_bg + 0.3, 0.0025 * np.eye(3), 0.5),
    ])


def test_run_with_every_phase():
    stacks = _stacks(_true_log_model(13), (0.0, 0.5), noise=0.01, differentiate=True)
    settings = InversionSettings(
        n_simulations=2,
        seed=3,
        n_threads=2,
        compute_post_covariance=True,
        compute_facies_probabilities=True,
        compute_synthetic_seismic=True,
    )
    with _engine(stacks, settings, _smooth_correlation()) as engine:
        result = engine.run(_facies_model())
        assert engine.phase is Phase.DONE
        assert set(result.posterior) == {"vp", "vs", "rho"}
        assert len(result.simulations) == 2
        assert len(result.covariance) == 6
        assert result.pointwise_covariance.shape == (3, 3)
        assert len(result.synthetic_seismic) == 2
        assert [e.name for e in result.energy] == ["stack0", "stack1"]

        shale = result.facies_probabilities["shale"].to_array()
        sand = result.facies_probabilities["sand"].to_array()
        np.testing.assert_allclose(shale + sand, 1.0, atol=1e-6)
        assert shale.mean() > 0.9


def test_run_requires_facies_model_when_asked():
    stacks = _stacks(_true_log_model(14), (0.0,), noise=0.01)
    settings = InversionSettings(compute_facies_probabilities=True)
    with _engine(stacks, settings) as engine:
        with pytest.raises(ValueError):
            engine.run()


PADDED_BOX = Simbox((0.0, 0.0, 0.0), (10.0, 10.0, 4.0), (4, 4, 7))
PADDED_SETTINGS = dict(min_pad_fraction=0.5, vs_vp_ratio=0.5)


def _padded_inputs(log_background, perturbation, thetas, differentiate):
    """Seismic forward modelled over the whole padded block of PADDED_BOX."""
    shape = PADDED_BOX.grid_shape(PADDED_SETTINGS["min_pad_fraction"])
    nx, ny, nz = PADDED_BOX.dims
    wavelets = [delta_wavelet(dz=4.0, theta=t) for t in thetas]
    op = FrequencyOperator(
        reflectivity=np.array([reflection_coefficients(t, 0.5) for t in thetas]),
        wavelet_spectra=np.array([w.spectrum(shape.nzp, differentiate=differentiate) for w in wavelets]),
        noise_variances=np.zeros(len(thetas)),
    )
    truth = []
    for bg, dm in zip(log_background, perturbation):
        full = extend_into_padding(bg, shape)
        full[:nx, :ny, :nz] += dm
        grid = FFTGrid(shape)
        grid.fill_from_array(full, padded=True)
        truth.append(grid)
    seismic = compute_synthetic_seismic(op, truth, lambda: FFTGrid(shape))
    stacks = [StackData(s, w, 0.0, f"stack{n}") for n, (s, w) in enumerate(zip(seismic, wavelets))]
    background = Background(*[FFTGrid.from_array(np.exp(bg), shape) for bg in log_background])
    return shape, stacks, background


def _padded_engine(shape, stacks, background, noise=0.0, **settings):
    for stack in stacks:
        stack.noise_variance = noise
    return BayesianInversion(
        PADDED_BOX,
        stacks,
        background,
        PARAMETER_COV,
        white_correlation_grid(shape),
        InversionSettings(**PADDED_SETTINGS, **settings),
    )


def test_padded_grid_shape():
    shape = PADDED_BOX.grid_shape(PADDED_SETTINGS["min_pad_fraction"])
    assert (shape.nxp, shape.nyp, shape.nzp) == (6, 6, 12)


def test_constant_model_on_a_padded_grid_returns_the_background():
    log_bg = [np.full(PADDED_BOX.dims, np.log(v)) for v in BACKGROUND]
    zeros = [np.zeros(PADDED_BOX.dims)] * 3
    shape, stacks, background = _padded_inputs(log_bg, zeros, (0.0, 0.5), differentiate=True)
    np.testing.assert_allclose(stacks[0].seismic.to_array(), 0.0, atol=1e-4)
    with _padded_engine(shape, stacks, background, noise=1e-4) as engine:
        _invert(engine)
        for values, expected in zip(_posterior_arrays(engine), BACKGROUND):
            np.testing.assert_allclose(values, expected, rtol=1e-3)


def test_zero_noise_recovers_the_model_on_a_padded_grid():
    rng = np.random.default_rng(20)
    trend = 0.02 * np.arange(PADDED_BOX.dims[2])
    log_bg = [np.log(v) + np.broadcast_to(trend, PADDED_BOX.dims) for v in BACKGROUND]
    perturbation = [0.05 * rng.standard_normal(PADDED_BOX.dims) for _ in BACKGROUND]
    shape, stacks, background = _padded_inputs(log_bg, perturbation, THREE_ANGLES, differentiate=False)
    with _padded_engine(shape, stacks, background, differentiate_wavelet=False) as engine:
        _invert(engine)
        for grid, bg, dm in zip(engine.post_log, log_bg, perturbation):
            np.testing.assert_allclose(grid.to_array(), bg + dm, atol=1e-3)


def test_invalid_background_samples_take_the_mean_log_value():
    log_bg = [np.full(PADDED_BOX.dims, np.log(v)) for v in BACKGROUND]
    zeros = [np.zeros(PADDED_BOX.dims)] * 3
    shape, stacks, _ = _padded_inputs(log_bg, zeros, (0.0,), differentiate=True)
    vp = np.full(PADDED_BOX.dims, BACKGROUND[0])
    vp[1, 2, 3] = 0.0
    vp[0, 0, 6] = np.nan
    background = Background(
        FFTGrid.from_array(vp, shape),
        FFTGrid.from_array(np.full(PADDED_BOX.dims, BACKGROUND[1]), shape),
        FFTGrid.from_array(np.full(PADDED_BOX.dims, BACKGROUND[2]), shape),
    )
    with _padded_engine(shape, stacks, background, noise=1e10) as engine:
        _invert(engine)
        assert any("Background vp: 2 missing" in w for w in engine.warnings)
        np.testing.assert_allclose(engine.posterior["vp"].to_array(), BACKGROUND[0], rtol=1e-4)


def test_inputs_must_match_the_configured_padding():
    log_bg = [np.full(PADDED_BOX.dims, np.log(v)) for v in BACKGROUND]
    zeros = [np.zeros(PADDED_BOX.dims)] * 3
    shape, stacks, background = _padded_inputs(log_bg, zeros, (0.0,), differentiate=True)
    with pytest.raises(ValueError):
        BayesianInversion(
            PADDED_BOX,
            stacks,
            background,
            PARAMETER_COV,
            white_correlation_grid(shape),
            InversionSettings(min_pad_fraction=0.0),
        )


def test_synthetic_seismic_keeps_residuals():
    stacks = _stacks(_true_log_model(15), (0.0,))
    settings = InversionSettings(differentiate_wavelet=False, compute_synthetic_seismic=True)
    with _engine(stacks, settings) as engine:
        result = engine.run()
        assert len(result.seismic_residuals) == 1
        assert result.seismic_residuals is engine.seismic_residuals
        np.testing.assert_allclose(result.seismic_residuals[0].to_array(), 0.0, atol=1e-4)
        assert result.seismic_misfit == pytest.approx(0.0, abs=1e-2)
