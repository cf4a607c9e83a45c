"""
Tests for fftgrid.py
"""

import numpy as np
import pytest

from bayesseis.errors import AccessModeError, GridIOError
from bayesseis.fftgrid import (
    MISSING,
    AccessMode,
    Domain,
    FFTGrid,
    GridShape,
    extend_into_padding,
    legal_transition,
)


def _random_grid(shape, seed=0):
    rng = np.random.default_rng(seed)
    arr = rng.standard_normal((shape.nx, shape.ny, shape.nz))
    return FFTGrid.from_array(arr, shape), arr


def test_grid_shape_padding_sizes():
    shape = GridShape.padded(5, 4, 3, min_pad_fraction=0.5)
    assert shape.nxp >= 8 and shape.nyp >= 6 and shape.nzp >= 5
    assert shape.cnxp == shape.nxp // 2 + 1
    assert shape.rnxp == 2 * shape.cnxp
    assert shape.rsize == shape.rnxp * shape.nyp * shape.nzp


def test_grid_shape_rejects_small_padding():
    with pytest.raises(ValueError):
        GridShape(4, 4, 4, 3, 4, 4)


@pytest.mark.parametrize("shape", [GridShape(4, 4, 4, 4, 4, 4), GridShape(5, 4, 3, 8, 6, 4), GridShape(3, 2, 5, 5, 3, 6)])
def test_fft_round_trip(shape):
    grid, arr = _random_grid(shape)
    grid.fft_in_place()
    assert grid.domain is Domain.FREQUENCY
    grid.inv_fft_in_place()
    assert grid.domain is Domain.SPATIAL
    np.testing.assert_allclose(grid.to_array(), arr, atol=1e-5)


def test_inverse_transform_zeros_padding_columns():
    shape = GridShape(5, 4, 3, 6, 4, 3)
    grid, _ = _random_grid(shape)
    grid.fft_in_place()
    grid.inv_fft_in_place()
    words = grid.raw_buffer.reshape(shape.real_shape)
    assert np.all(words[:, :, shape.nxp:] == 0.0)


def test_transform_requires_matching_domain():
    grid, _ = _random_grid(GridShape(4, 4, 4, 4, 4, 4))
    with pytest.raises(AccessModeError):
        grid.inv_fft_in_place()
    grid.fft_in_place()
    with pytest.raises(AccessModeError):
        grid.fft_in_place()
    with pytest.raises(AccessModeError):
        grid.to_array()


def test_transition_table():
    assert legal_transition(AccessMode.NONE, AccessMode.READ)
    assert legal_transition(AccessMode.RANDOMACCESS, AccessMode.NONE)
    assert not legal_transition(AccessMode.READ, AccessMode.WRITE)
    assert not legal_transition(AccessMode.NONE, AccessMode.NONE)


def test_access_mode_discipline():
    grid = FFTGrid(GridShape(4, 4, 4, 4, 4, 4))
    grid.set_access_mode(AccessMode.WRITE)
    with pytest.raises(AccessModeError):
        grid.get_next_real()
    with pytest.raises(AccessModeError):
        grid.set_access_mode(AccessMode.READ)
    with pytest.raises(AccessModeError):
        grid.create_real_grid()
    with pytest.raises(AccessModeError):
        grid.fft_in_place()
    grid.end_access()

    grid.set_access_mode(AccessMode.READ)
    with pytest.raises(AccessModeError):
        grid.set_next_real(1.0)
    with pytest.raises(AccessModeError):
        grid.get_real_value(0, 0, 0)
    grid.end_access()

    with pytest.raises(AccessModeError):
        grid.set_access_mode(AccessMode.NONE)
    grid.end_access()
    assert grid.access_mode is AccessMode.NONE


def test_sequential_slices_round_trip():
    shape = GridShape(3, 2, 2, 4, 2, 2)
    grid = FFTGrid(shape)
    slabs = [np.full((shape.nyp, shape.rnxp), k + 1.0) for k in range(shape.nzp)]
    grid.set_access_mode(AccessMode.WRITE)
    for slab in slabs:
        grid.set_next_real_slice(slab)
    grid.end_access()

    grid.set_access_mode(AccessMode.READ)
    assert grid.get_next_real() == 1.0
    grid.end_access()
    grid.set_access_mode(AccessMode.READ)
    for slab in slabs:
        np.testing.assert_array_equal(grid.get_next_real_slice(), slab)
    with pytest.raises(GridIOError):
        grid.get_next_real()
    grid.end_access()


def test_missing_index_policy():
    shape = GridShape(4, 4, 4, 6, 4, 4)
    grid = FFTGrid(shape)
    grid.set_access_mode(AccessMode.RANDOMACCESS)
    assert grid.set_real_value(3, 3, 3, 7.0)
    before = grid.raw_buffer.copy()
    for index in [(4, 0, 0), (0, 4, 0), (0, 0, 4), (-1, 0, 0), (0, -1, 0), (0, 0, -1)]:
        assert not grid.set_real_value(*index, 1.0)
        assert grid.get_real_value(*index) == MISSING
    np.testing.assert_array_equal(grid.raw_buffer, before)
    assert grid.get_real_value(3, 3, 3) == 7.0
    grid.end_access()


def test_complex_random_access():
    grid = FFTGrid(GridShape(4, 4, 4, 4, 4, 4))
    grid.create_complex_grid()
    grid.set_access_mode(AccessMode.RANDOMACCESS)
    assert grid.set_complex_value(2, 1, 3, 1.0 - 2.0j)
    assert not grid.set_complex_value(3, 0, 0, 1.0)
    assert grid.get_complex_value(2, 1, 3) == 1.0 - 2.0j
    grid.end_access()
    assert grid.spectrum()[3, 1, 2] == 1.0 - 2.0j


def test_multiply_is_component_wise_for_complex_grids():
    shape = GridShape(4, 4, 4, 4, 4, 4)
    a = FFTGrid(shape)
    b = FFTGrid(shape)
    for grid, value in ((a, 2.0 + 3.0j), (b, 4.0 + 5.0j)):
        grid.create_complex_grid()
        grid.set_access_mode(AccessMode.RANDOMACCESS)
        grid.set_complex_value(0, 0, 0, value)
        grid.end_access()
    a.multiply(b)
    assert a.spectrum()[0, 0, 0] == 8.0 + 15.0j


def test_add_and_scalar_multiply():
    shape = GridShape(3, 3, 3, 4, 4, 4)
    a, arr_a = _random_grid(shape, seed=1)
    b, arr_b = _random_grid(shape, seed=2)
    a.add(b)
    a.multiply_by_scalar(0.5)
    np.testing.assert_allclose(a.to_array(), 0.5 * (arr_a + arr_b), rtol=1e-6)


def test_algebra_checks_compatibility():
    a = FFTGrid(GridShape(4, 4, 4, 4, 4, 4))
    b = FFTGrid(GridShape(4, 4, 4, 6, 4, 4))
    with pytest.raises(ValueError):
        a.add(b)
    c = FFTGrid(GridShape(4, 4, 4, 4, 4, 4))
    c.create_complex_grid()
    with pytest.raises(AccessModeError):
        a.multiply(c)


def test_square_in_both_domains():
    grid = FFTGrid.from_array(np.full((2, 2, 2), -3.0))
    grid.square()
    np.testing.assert_allclose(grid.to_array(), 9.0)

    spec = FFTGrid(GridShape(4, 4, 4, 4, 4, 4))
    spec.create_complex_grid()
    spec.set_access_mode(AccessMode.RANDOMACCESS)
    spec.set_complex_value(1, 1, 1, 3.0 + 4.0j)
    spec.end_access()
    spec.square()
    assert spec.spectrum()[1, 1, 1] == 25.0 + 0.0j


def test_log_and_exp_transforms():
    arr = np.array([-1.0, 0.0, np.e, 1.0]).reshape(4, 1, 1)
    grid = FFTGrid.from_array(arr)
    grid.log_transf()
    np.testing.assert_allclose(grid.to_array().ravel(), [0.0, 0.0, 1.0, 0.0], atol=1e-6)
    grid.exp_transf()
    np.testing.assert_allclose(grid.to_array().ravel(), [1.0, 1.0, np.e, 1.0], rtol=1e-6)


def test_collapse_and_add():
    shape = GridShape(2, 3, 4, 4, 4, 5)
    grid = FFTGrid.from_array(np.ones((2, 3, 4)), shape)
    target = np.ones((2, 3))
    out = grid.collapse_and_add(target)
    assert out is target
    np.testing.assert_allclose(target, 5.0)
    with pytest.raises(ValueError):
        grid.collapse_and_add(np.zeros((3, 2)))


def test_complex_noise_has_unit_variance():
    grid = FFTGrid(GridShape(16, 16, 16, 16, 16, 16))
    grid.create_complex_grid()
    grid.fill_in_complex_noise(np.random.default_rng(3))
    grid.inv_fft_in_place()
    values = grid.to_array()
    assert abs(values.mean()) < 0.1
    assert abs(values.var() - 1.0) < 0.1


def test_complex_noise_is_reproducible():
    shape = GridShape(4, 4, 4, 4, 4, 4)
    spectra = []
    for _ in range(2):
        grid = FFTGrid(shape)
        grid.create_complex_grid()
        grid.fill_in_complex_noise(np.random.default_rng(11))
        spectra.append(grid.spectrum())
    np.testing.assert_array_equal(spectra[0], spectra[1])


def test_fill_from_padded_array():
    shape = GridShape(2, 2, 2, 4, 3, 2)
    padded = np.arange(24, dtype=float).reshape(4, 3, 2)
    grid = FFTGrid(shape)
    grid.fill_from_array(padded, padded=True)
    np.testing.assert_array_equal(grid.to_array(), padded[:2, :2, :2])
    with pytest.raises(ValueError):
        grid.fill_from_array(padded)


def test_copy_is_independent():
    grid, arr = _random_grid(GridShape(3, 3, 3, 4, 4, 4))
    grid.fft_in_place()
    clone = grid.copy()
    assert clone.domain is Domain.FREQUENCY
    np.testing.assert_array_equal(clone.spectrum(), grid.spectrum())
    clone.multiply_by_scalar(2.0)
    clone.inv_fft_in_place()
    grid.inv_fft_in_place()
    np.testing.assert_allclose(clone.to_array(), 2.0 * arr, atol=1e-5)
    np.testing.assert_allclose(grid.to_array(), arr, atol=1e-5)


def test_add_grid_to_itself():
    grid, arr = _random_grid(GridShape(3, 3, 3, 4, 4, 4))
    grid.add(grid)
    np.testing.assert_allclose(grid.to_array(), 2.0 * arr, rtol=1e-6)
    grid.set_access_mode(AccessMode.RANDOMACCESS)
    grid.add(grid)
    grid.end_access()
    np.testing.assert_allclose(grid.to_array(), 4.0 * arr, rtol=1e-6)


def test_extend_into_padding_blends_back_to_the_first_sample():
    shape = GridShape(3, 1, 2, 5, 1, 2)
    values = np.zeros((3, 1, 2))
    values[:, 0, 0] = [1.0, 4.0, 7.0]
    values[:, 0, 1] = 10.0
    padded = extend_into_padding(values, shape)
    assert padded.shape == (5, 1, 2)
    np.testing.assert_array_equal(padded[:3], values)
    np.testing.assert_allclose(padded[3:, 0, 0], [5.0, 3.0])
    np.testing.assert_allclose(padded[3:, 0, 1], 10.0)
    with pytest.raises(ValueError):
        extend_into_padding(np.zeros((2, 1, 2)), shape)


def test_extend_into_padding_keeps_constants_flat():
    shape = GridShape(3, 2, 7, 4, 3, 8)
    padded = extend_into_padding(np.full((3, 2, 7), 8.0), shape)
    np.testing.assert_allclose(padded, 8.0)
    grid = FFTGrid(shape)
    grid.fill_from_array(padded, padded=True)
    grid.fft_in_place()
    spectrum = grid.spectrum()
    assert abs(spectrum[0, 0, 0]) == pytest.approx(8.0 * shape.n_padded, rel=1e-6)
    spectrum[0, 0, 0] = 0.0
    np.testing.assert_allclose(np.abs(spectrum), 0.0, atol=1e-2)
