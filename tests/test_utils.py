"""Tests of the geometry helpers and filters."""

import numpy as np
import pytest

from utils import (CoordinateBound, PatchDef, gnomonic_projection, inverse_gnomonic_projection,
                   apply_random_rotation, b3_spline, get_b3_filter, get_std, is_power_of_two)

pytestmark = [pytest.mark.unit]


class TestPatchDef:

    def test_bounds(self, patch):
        assert (patch.ra_min, patch.ra_max) == (-5., 5.)
        assert (patch.dec_min, patch.dec_max) == (-5., 5.)

    def test_number_of_bins(self):
        assert PatchDef(0., 0., 10., 1.).n_bins == 10
        assert PatchDef(0., 0., 10., 3.).n_bins == 4
        assert PatchDef(0., 0., 1.1, 0.1).n_bins == 11

    def test_degenerate_patch_has_no_bins(self):
        assert PatchDef(0., 0., 0., 1.).n_bins == 0
        assert PatchDef(0., 0., 10., 0.).n_bins == 0

    def test_bound_keeps_redshift(self, patch):
        bound = patch.bound(0.3, 0.9)
        assert bound.z_min == 0.3 and bound.z_max == 0.9
        assert bound.ra_range == 10.


class TestCoordinateBound:

    def test_contains_is_half_open(self):
        bound = CoordinateBound(0., 1., 0., 1., 0., 1.)
        inside = bound.contains([0., 0.5, 1., 0.5], [0., 0.5, 0.5, 0.5], [0., 0.5, 0.5, 1.])
        np.testing.assert_array_equal(inside, [True, True, False, False])


class TestProjection:

    def test_round_trip(self):
        ra0, dec0 = np.deg2rad(30.), np.deg2rad(-20.)
        ra = ra0 + np.deg2rad(np.array([3., -4., 2.]))
        dec = dec0 + np.deg2rad(np.array([2., 3., -5.]))
        x, y = gnomonic_projection(ra, dec, ra0, dec0)
        ra_back, dec_back = inverse_gnomonic_projection(x, y, ra0, dec0)
        np.testing.assert_allclose(ra_back, ra, atol=1e-10)
        np.testing.assert_allclose(dec_back, dec, atol=1e-10)

    def test_small_offsets_map_to_tangent_point(self):
        ra, dec = inverse_gnomonic_projection(0.001, -0.002, 1., 0.5)
        assert (ra, dec) == (1., 0.5)


def test_random_rotation_keeps_modulus(rng):
    e1 = rng.normal(0., 0.3, 100)
    e2 = rng.normal(0., 0.3, 100)
    r1, r2 = apply_random_rotation(e1, e2, rng=np.random.default_rng(0))
    np.testing.assert_allclose(np.hypot(r1, r2), np.hypot(e1, e2), atol=1e-12)
    assert not np.allclose(r1, e1)


def test_b3_spline_values():
    assert b3_spline(0.) == pytest.approx(2./3.)
    assert b3_spline(2.) == pytest.approx(0.)
    assert b3_spline(-3.) == pytest.approx(0.)


def test_b3_filter_is_low_pass():
    filt = get_b3_filter(47, 1)
    assert filt[0] == pytest.approx(1.)
    np.testing.assert_allclose(filt[24:], 0., atol=1e-12)


def test_std_skips_first_value():
    assert get_std(np.array([1e6, 2., 2., 2.])) == pytest.approx(0., abs=1e-9)


def test_power_of_two():
    assert is_power_of_two(16)
    assert not is_power_of_two(12)
    assert not is_power_of_two(0)
