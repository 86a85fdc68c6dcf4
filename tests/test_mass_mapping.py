"""Tests of the Kaiser-Squires transforms and of the SNR accumulation."""

import threading

import numpy as np
import healpy as hp
import pytest

from map_maker import ShearMap, ConvergenceMap
from mass_mapping import (ks_kernel, CartesianMassMapper, SphericalMassMapper, get_mass_mapper, kaiser_squire,
                          accumulate_snr, SnrAccumulator)
from params import MassMapParams

pytestmark = [pytest.mark.unit]


def zero_mean(values):
    return values - values.mean()


class TestCartesian:

    def test_kernel_has_unit_modulus(self):
        psi = ks_kernel(8, 6)
        assert psi[0, 0] == 0.
        modulus = np.abs(psi)
        modulus[0, 0] = 1.
        np.testing.assert_allclose(modulus, 1., atol=1e-12)

    def test_round_trip_on_zero_mean_shear(self, rng):
        g1 = zero_mean(rng.normal(size=(16, 12)))
        g2 = zero_mean(rng.normal(size=(16, 12)))
        shear = ShearMap.from_arrays([g1, g2, np.zeros((16, 12))])
        mapper = CartesianMassMapper()
        back = mapper.convergence_to_shear(mapper.shear_to_convergence(shear))
        np.testing.assert_allclose(back.g1, g1, atol=1e-10)
        np.testing.assert_allclose(back.g2, g2, atol=1e-10)

    def test_pure_e_mode(self, rng):
        kappa = zero_mean(rng.normal(size=(16, 16)))
        conv = ConvergenceMap.from_arrays([kappa, np.zeros((16, 16))])
        mapper = CartesianMassMapper()
        recovered = mapper.shear_to_convergence(mapper.convergence_to_shear(conv))
        np.testing.assert_allclose(recovered.kappa_e, kappa, atol=1e-10)
        np.testing.assert_allclose(recovered.kappa_b, 0., atol=1e-10)

    def test_metadata_is_propagated(self, patch):
        shear = ShearMap(4, 4, bound=patch.bound(0., 1.), n_galaxies=12, pixel_size=1.)
        conv = CartesianMassMapper().shear_to_convergence(shear)
        assert conv.bound == shear.bound
        assert conv.n_galaxies == 12
        assert conv.pixel_size == 1.

    def test_no_iteration_is_plain_kaiser_squires(self, rng):
        shear = ShearMap.from_arrays([rng.normal(size=(8, 8)), rng.normal(size=(8, 8)), np.ones((8, 8))])
        mapper = CartesianMassMapper()
        corrected, conv = mapper.reduced_shear_correction(shear, 0)
        np.testing.assert_array_equal(corrected.g1, shear.g1)
        np.testing.assert_allclose(conv.to_array(), mapper.shear_to_convergence(shear).to_array())

    def test_high_threshold_leaves_shear_unchanged(self, rng):
        shear = ShearMap.from_arrays([rng.normal(size=(8, 8)), rng.normal(size=(8, 8)), np.ones((8, 8))])
        mapper = CartesianMassMapper(rs_threshold=1e9)
        corrected, _ = mapper.reduced_shear_correction(shear, 3)
        np.testing.assert_allclose(corrected.g1, shear.g1)
        np.testing.assert_allclose(corrected.g2, shear.g2)

    def test_correction_does_not_modify_input(self, rng):
        g1 = rng.normal(0., 0.1, size=(8, 8))
        shear = ShearMap.from_arrays([g1, rng.normal(0., 0.1, size=(8, 8)), np.ones((8, 8))])
        mapper = CartesianMassMapper(rs_threshold=0.)
        corrected, _ = mapper.reduced_shear_correction(shear, 2)
        np.testing.assert_array_equal(shear.g1, g1)
        assert not np.allclose(corrected.g1, g1)

    def test_iterations_compound(self, rng):
        shear = ShearMap.from_arrays([rng.normal(0., 0.1, size=(8, 8)), rng.normal(0., 0.1, size=(8, 8)),
                                      np.ones((8, 8))])
        mapper = CartesianMassMapper(rs_threshold=0.)
        corrected, conv = mapper.reduced_shear_correction(shear, 2)

        expected = shear.copy()
        steps = []
        for _ in range(2):
            steps.append(mapper.shear_to_convergence(expected))
            expected.correct_reduced_shear(steps[-1].get_tilde_convergence(0., 0.))
        np.testing.assert_allclose(corrected.g1, expected.g1, atol=1e-14)
        np.testing.assert_allclose(corrected.g2, expected.g2, atol=1e-14)
        # the convergence of the second iteration, not the first one
        np.testing.assert_allclose(conv.to_array(), steps[1].to_array(), atol=1e-14)
        assert not np.allclose(conv.to_array(), steps[0].to_array())
        once, _ = mapper.reduced_shear_correction(shear, 1)
        assert not np.allclose(corrected.g1, once.g1)


class TestSpherical:

    def test_forward_factor_nulls_low_multipoles(self, rng):
        lmax = 23
        size = hp.Alm.getsize(lmax)
        alm = rng.normal(size=size) + 1j*rng.normal(size=size)
        alm_e, alm_b = SphericalMassMapper.shear_alm_to_convergence_alm(alm, alm, lmax)
        for ell in (0, 1):
            for m in range(ell + 1):
                idx = hp.Alm.getidx(lmax, ell, m)
                assert alm_e[idx] == 0.
                assert alm_b[idx] == 0.

    def test_inverse_factor_nulls_low_multipoles(self, rng):
        lmax = 23
        size = hp.Alm.getsize(lmax)
        alm = rng.normal(size=size) + 1j*rng.normal(size=size)
        alm_e, _ = SphericalMassMapper.convergence_alm_to_shear_alm(alm, alm, lmax)
        assert alm_e[hp.Alm.getidx(lmax, 0, 0)] == 0.
        assert alm_e[hp.Alm.getidx(lmax, 1, 1)] == 0.

    def test_factors_are_inverse(self, rng):
        lmax = 23
        size = hp.Alm.getsize(lmax)
        alm = rng.normal(size=size) + 1j*rng.normal(size=size)
        ell = hp.Alm.getlm(lmax)[0]
        forward, _ = SphericalMassMapper.shear_alm_to_convergence_alm(alm, alm, lmax)
        back, _ = SphericalMassMapper.convergence_alm_to_shear_alm(forward, forward, lmax)
        np.testing.assert_allclose(back[ell >= 2], alm[ell >= 2], rtol=1e-12)

    def test_recovers_bandlimited_convergence(self, bandlimited_fields):
        kappa, g1, g2 = bandlimited_fields
        kappa_e, kappa_b = SphericalMassMapper().shear_to_convergence(g1, g2)
        scale = np.abs(kappa).max()
        assert np.abs(kappa_e.values - kappa).max() < 1e-2*scale
        assert np.abs(kappa_b.values).max() < 1e-2*scale

    def test_round_trip_on_bandlimited_shear(self, bandlimited_fields):
        _, g1, g2 = bandlimited_fields
        mapper = SphericalMassMapper()
        g1_back, g2_back = mapper.convergence_to_shear(*mapper.shear_to_convergence(g1, g2))
        scale = max(np.abs(g1).max(), np.abs(g2).max())
        assert np.abs(g1_back.values - g1).max() < 1e-2*scale
        assert np.abs(g2_back.values - g2).max() < 1e-2*scale

    def test_complex_wrapper(self, bandlimited_fields):
        _, g1, g2 = bandlimited_fields
        kappa_e, _ = kaiser_squire(g1 + 1j*g2)
        expected, _ = SphericalMassMapper().shear_to_convergence(g1, g2)
        np.testing.assert_allclose(kappa_e, expected.values)

    def test_reduced_shear_step(self, nside):
        npix = hp.nside2npix(nside)
        g1, g2 = SphericalMassMapper().correct_reduced_shear(np.full(npix, 0.1), np.full(npix, 0.2),
                                                             np.full(npix, 0.5), np.full(npix, 0.25))
        np.testing.assert_allclose(g1.values, 0.05)
        np.testing.assert_allclose(g2.values, 0.15)


def test_get_mass_mapper():
    params = MassMapParams(rs_gauss_std=2., rs_threshold=3.)
    mapper = get_mass_mapper("Conv_Patch", params)
    assert isinstance(mapper, CartesianMassMapper)
    assert (mapper.rs_gauss_std, mapper.rs_threshold) == (2., 3.)
    assert isinstance(get_mass_mapper("Conv_Sphere"), SphericalMassMapper)
    with pytest.raises(ValueError):
        get_mass_mapper("Conv_Cube")


class TestSnr:

    def test_unit_realisations(self):
        snr = np.zeros((3, 3))
        for k in range(4):
            accumulate_snr(np.ones((3, 3)), snr, 4, k == 3)
        np.testing.assert_allclose(snr, 1.)

    def test_normalised_on_last_only(self):
        snr = np.zeros(2)
        accumulate_snr(np.array([1., 3.]), snr, 2, False)
        np.testing.assert_allclose(snr, [1., 9.])
        accumulate_snr(np.array([3., 1.]), snr, 2, True)
        np.testing.assert_allclose(snr, np.sqrt([5., 5.]))

    def test_accumulator_is_order_independent(self, rng):
        samples = [rng.normal(size=(2, 4, 4)) for _ in range(5)]
        forward = SnrAccumulator((2, 4, 4), 5)
        backward = SnrAccumulator((2, 4, 4), 5)
        for a, b in zip(samples, samples[::-1]):
            forward.add(a)
            backward.add(b)
        np.testing.assert_allclose(forward.result(), backward.result())

    def test_accumulator_with_threads(self):
        acc = SnrAccumulator((4,), 8)
        threads = [threading.Thread(target=acc.add, args=(np.full(4, 2.),)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert acc.is_complete
        np.testing.assert_allclose(acc.result(), 2.)

    def test_extra_realisation_raises(self):
        acc = SnrAccumulator((2,), 1)
        acc.add(np.ones(2))
        with pytest.raises(RuntimeError):
            acc.add(np.ones(2))

    def test_incomplete_result(self):
        acc = SnrAccumulator((2,), 3)
        acc.add(np.ones(2))
        with pytest.raises(AssertionError):
            acc.result()
