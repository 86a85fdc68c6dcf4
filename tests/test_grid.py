"""Tests of the Grid2D container."""

import numpy as np
import pytest

from grid import Grid2D

pytestmark = [pytest.mark.unit]


class TestAccess:

    def test_new_grid_is_zero(self):
        grid = Grid2D(4, 3)
        assert grid.shape == (4, 3)
        assert grid.get_flux() == 0.

    def test_get_clamps_out_of_range_indices(self):
        grid = Grid2D.from_array(np.arange(12.).reshape(4, 3))
        assert grid.get(-5, 0) == grid.get(0, 0)
        assert grid.get(10, 10) == grid.get(3, 2)
        assert grid.get(2, 7) == 8.

    def test_set_out_of_range_raises(self):
        grid = Grid2D(3, 3)
        with pytest.raises(IndexError):
            grid.set(3, 0, 1.)
        with pytest.raises(IndexError):
            grid.set(0, -1, 1.)

    def test_copy_is_independent(self):
        grid = Grid2D(2, 2)
        other = grid.copy()
        other.set(0, 0, 5.)
        assert grid.get(0, 0) == 0.

    def test_wrong_initial_shape(self):
        with pytest.raises(AssertionError):
            Grid2D(2, 2, np.zeros((3, 2)))


class TestArithmetic:

    def test_add_then_subtract_is_identity(self, rng):
        a = Grid2D.from_array(rng.normal(size=(5, 6)))
        b = Grid2D.from_array(rng.normal(size=(5, 6)))
        out = a.add(b).subtract(b)
        np.testing.assert_allclose(out.values, a.values, atol=1e-12)

    def test_size_mismatch_gives_empty_grid(self):
        a = Grid2D(3, 3)
        b = Grid2D(3, 4)
        assert a.add(b).is_empty()
        assert a.subtract(b).is_empty()
        assert a.add(b).shape == (0, 0)

    def test_multiply(self):
        grid = Grid2D.from_array(np.ones((2, 2)))
        assert grid.multiply(3.).get_flux() == 12.

    def test_multiply_scales_the_maximum(self, rng):
        grid = Grid2D.from_array(rng.normal(size=(4, 5)))
        assert grid.multiply(2.5).get_max() == pytest.approx(grid.get_max()*2.5)


class TestStatistics:

    def test_extrema_and_flux(self):
        grid = Grid2D.from_array(np.array([[1., -2.], [3., 4.]]))
        assert grid.get_max() == 4.
        assert grid.get_min() == -2.
        assert grid.get_flux() == 6.

    def test_standard_deviation_skips_first_element(self):
        grid = Grid2D.from_array(np.array([[100., 1.], [1., 1.]]))
        assert grid.get_standard_deviation() == pytest.approx(0., abs=1e-12)

    def test_standard_deviation_value(self):
        grid = Grid2D.from_array(np.array([[0., 1.], [3., 5.]]))
        assert grid.get_standard_deviation() == pytest.approx(np.std([1., 3., 5.]))

    def test_sigma_uses_every_element(self):
        values = np.array([[100., 1.], [1., 1.]])
        assert Grid2D.from_array(values).get_sigma() == pytest.approx(np.std(values))

    def test_apply_threshold(self):
        grid = Grid2D.from_array(np.array([[0.5, -2.], [-0.1, 3.]]))
        grid.apply_threshold(1.)
        np.testing.assert_array_equal(grid.values, [[0., -2.], [0., 3.]])


class TestLocalMaxima:

    def test_border_pixel_is_never_a_maximum(self):
        values = np.zeros((5, 5))
        values[0, 2] = 10.
        grid = Grid2D.from_array(values)
        assert not grid.is_local_max(0, 2)
        assert not grid.local_maxima().any()

    def test_interior_maximum(self):
        values = np.zeros((5, 5))
        values[2, 2] = 1.
        grid = Grid2D.from_array(values)
        assert grid.is_local_max(2, 2)
        assert grid.local_maxima()[2, 2]
        assert grid.local_maxima().sum() == 1

    def test_plateau_is_not_a_maximum(self):
        values = np.zeros((5, 5))
        values[2, 2] = values[2, 3] = 1.
        grid = Grid2D.from_array(values)
        assert not grid.is_local_max(2, 2)
        assert not grid.local_maxima().any()

    def test_vectorised_scan_matches_pixelwise_test(self, rng):
        grid = Grid2D.from_array(rng.normal(size=(12, 9)))
        expected = np.array([[grid.is_local_max(x, y) for y in range(9)] for x in range(12)])
        np.testing.assert_array_equal(grid.local_maxima(), expected)
