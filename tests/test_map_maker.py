"""Tests of the Cartesian maps and of the catalog binning."""

import numpy as np
import healpy as hp
import pytest

from catalog import Catalog
from map_maker import (GenericMap, ShearMap, ConvergenceMap, make_shear_map, make_convergence_map,
                       make_healpix_shear_maps)

pytestmark = [pytest.mark.unit]


class TestBinning:

    def test_one_galaxy_per_pixel(self, patch, pixel_center_catalog):
        shear = make_shear_map(pixel_center_catalog, patch.bound(0., 1.), patch.bins_x, patch.bins_y,
                               pixel_size=patch.pixel_size)
        i, j = np.meshgrid(np.arange(10), np.arange(10), indexing='ij')
        np.testing.assert_allclose(shear.g1, 0.01*i, atol=1e-15)
        np.testing.assert_allclose(shear.g2, -0.01*j, atol=1e-15)
        np.testing.assert_array_equal(shear.array(2), np.ones((10, 10)))
        assert shear.n_galaxies == 100

    def test_empty_window_is_flagged(self, patch, pixel_center_catalog):
        shear = make_shear_map(pixel_center_catalog, patch.bound(2., 3.), 10, 10)
        assert shear.n_galaxies == 0
        assert not shear.g1.any()

    def test_mean_per_pixel(self, patch):
        cat = Catalog([0.2, 0.4, 3.], [0.2, 0.3, 3.], [0.5, 0.5, 0.5], [0.1, 0.3, 0.5], [0., 0.2, 0.],
                      w=[1., 3., 1.])
        bound = patch.bound(0., 1.)
        shear = make_shear_map(cat, bound, 10, 10)
        assert shear.g1[5, 5] == pytest.approx(0.2)
        assert shear.g2[5, 5] == pytest.approx(0.1)
        assert shear.g1[8, 8] == pytest.approx(0.5)
        weighted = make_shear_map(cat, bound, 10, 10, weighted=True)
        assert weighted.g1[5, 5] == pytest.approx(0.25)

    def test_mask(self, patch):
        cat = Catalog([0.5], [0.5], [0.5], [0.1], [0.])
        mask = make_shear_map(cat, patch.bound(0., 1.), 10, 10).mask()
        assert mask.sum() == 1
        assert mask[5, 5] == 1.

    def test_convergence_catalog(self, patch):
        cat = Catalog([0.5], [0.5], [0.5], [0.], [0.], kappa=[0.3])
        kappa = make_convergence_map(cat, patch.bound(0., 1.), 10, 10)
        assert kappa.kappa_e[5, 5] == pytest.approx(0.3)
        assert not kappa.kappa_b.any()

    def test_healpix_binning(self):
        nside = 8
        cat = Catalog([10., 10., 200.], [20., 20., -40.], [0.5]*3, [0.1, 0.3, 0.5], [0.2, 0., -0.1])
        g1, g2, n = make_healpix_shear_maps(cat, nside)
        pix = hp.ang2pix(nside, np.deg2rad(70.), np.deg2rad(10.))
        assert g1.values[pix] == pytest.approx(0.2)
        assert g2.values[pix] == pytest.approx(0.1)
        assert n.values[pix] == 2
        assert n.values.sum() == 3
        assert np.count_nonzero(g1.values) == 2


class TestMapOperations:

    def test_borders_round_trip(self, rng):
        conv = ConvergenceMap.from_arrays([rng.normal(size=(6, 8)), rng.normal(size=(6, 8))], pixel_size=0.5)
        padded = conv.add_borders()
        assert (padded.size_x, padded.size_y) == (12, 16)
        assert padded.to_array().sum() == pytest.approx(conv.to_array().sum())
        np.testing.assert_array_equal(padded.remove_borders().to_array(), conv.to_array())
        assert isinstance(padded, ConvergenceMap)

    def test_pixelate(self):
        shear = ShearMap.from_arrays([np.arange(16.).reshape(4, 4)]*3, pixel_size=1.)
        rebinned = shear.pixelate(1, 1)
        assert (rebinned.size_x, rebinned.size_y) == (2, 2)
        assert rebinned.g1[0, 0] == pytest.approx(2.5)
        assert rebinned.pixel_size == 2.
        assert shear.pixelate(0, 0) is None
        assert shear.pixelate(2, 1) is None

    def test_offset(self):
        gmap = GenericMap.from_arrays([np.full((3, 3), 2.), np.full((3, 3), -1.)])
        mean = gmap.get_mean_values()
        gmap.remove_offset(mean)
        assert gmap.get_mean_values() == pytest.approx([0., 0.])

    def test_bin_value_access(self):
        conv = ConvergenceMap(3, 3)
        conv.set_bin_value(1, 2, 1, 4.)
        assert conv.get_bin_value(1, 2, 1) == 4.
        assert conv.get_bin_value(1, 2, 5) == 4.
        conv.set_kappa_b_to_zero()
        assert conv.get_bin_value(1, 2, 1) == 0.

    def test_reduced_shear_step_rescales_both_components(self):
        shear = ShearMap.from_arrays([np.full((2, 2), 0.1), np.full((2, 2), 0.1)])
        conv = ConvergenceMap.from_arrays([np.full((2, 2), 0.5), np.full((2, 2), 0.2)])
        shear.correct_reduced_shear(conv)
        np.testing.assert_allclose(shear.g1, 0.05)
        np.testing.assert_allclose(shear.g2, 0.05)

    def test_tilde_convergence_thresholds_kappa_e(self):
        kappa_b = np.zeros((4, 4))
        kappa_b[0, 0], kappa_b[1, 1] = 1., -1.
        kappa_e = np.full((4, 4), 0.1)
        kappa_e[2, 2] = 5.
        conv = ConvergenceMap.from_arrays([kappa_e, kappa_b])
        tilde = conv.get_tilde_convergence(0., 3.)
        assert tilde.kappa_e[2, 2] == 5.
        assert np.count_nonzero(tilde.kappa_e) == 1
        np.testing.assert_array_equal(tilde.kappa_b, kappa_b)
        assert conv.kappa_e[0, 0] == 0.1
