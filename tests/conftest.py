"""Shared pytest fixtures of the mass mapping test suite.

Provides small synthetic catalogs, patches and band-limited shear fields on
the sphere so that every test runs in a fraction of a second.
"""

import numpy as np
import healpy as hp
import pytest

from catalog import Catalog
from mass_mapping import SphericalMassMapper
from params import MassMapParams
from utils import PatchDef


# =============================================================================
# Random generators
# =============================================================================

@pytest.fixture
def rng():
    """Seeded generator, identical in every test."""
    return np.random.default_rng(1234)


# =============================================================================
# Cartesian fixtures
# =============================================================================

@pytest.fixture
def patch():
    """10x10 degree patch centered on (0, 0) with 1 degree pixels."""
    return PatchDef(0., 0., 10., 1.)


@pytest.fixture
def pixel_center_catalog(patch):
    """One galaxy at the center of each pixel of `patch`.

    The shear of pixel (i, j) is g1 = 0.01*i and g2 = -0.01*j so that the
    binned map can be checked pixel by pixel.
    """
    n = patch.n_bins
    i, j = np.meshgrid(np.arange(n), np.arange(n), indexing='ij')
    ra = patch.ra_min + (i.ravel() + 0.5)*patch.pixel_size
    dec = patch.dec_min + (j.ravel() + 0.5)*patch.pixel_size
    return Catalog(ra, dec, np.full(n*n, 0.5), 0.01*i.ravel(), -0.01*j.ravel())


@pytest.fixture
def make_random_catalog(rng):
    """Factory of uniform catalogs over a RA/Dec box.

    Examples
    --------
    >>> def test_binning(make_random_catalog):
    ...     cat = make_random_catalog(1000, ra=(-2, 2), dec=(-2, 2))
    """
    def _make(n, ra=(-5., 5.), dec=(-5., 5.), z=(0.2, 1.5), sigma_e=0.2):
        return Catalog(rng.uniform(*ra, n), rng.uniform(*dec, n), rng.uniform(*z, n),
                       rng.normal(0., sigma_e, n), rng.normal(0., sigma_e, n))
    return _make


@pytest.fixture
def patch_params(patch):
    """Validated parameters of a small patch run."""
    return MassMapParams(param_type="Conv_Patch", pixel_size=patch.pixel_size, patches=(patch,),
                         z_min=(0.,), z_max=(2.,), seed=42).validate()


# =============================================================================
# Spherical fixtures
# =============================================================================

@pytest.fixture
def nside():
    return 16


@pytest.fixture
def bandlimited_fields(nside):
    """Pure E mode convergence and its shear, with power on 2 <= l <= 12 only.

    Returns
    -------
    tuple
        (kappa_e, g1, g2) arrays in RING ordering.
    """
    lmax = 3*nside - 1
    cl = np.zeros(lmax + 1)
    cl[2:13] = 1e-4
    np.random.seed(7)
    alm_kappa = hp.synalm(cl, lmax=lmax)
    zeros = np.zeros_like(alm_kappa)
    alm_e, alm_b = SphericalMassMapper.convergence_alm_to_shear_alm(alm_kappa, zeros, lmax)
    _, g1, g2 = hp.alm2map([zeros, alm_e, alm_b], nside, lmax=lmax, pol=True)
    kappa_e = hp.alm2map(alm_kappa, nside, lmax=lmax)
    return kappa_e, g1, g2
