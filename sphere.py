"""
sphere.py

Thin wrapper around healpy for scalar fields on the sphere. Maps are always
stored in RING ordering; NESTED inputs are reordered on construction.
"""

import numpy as np
import healpy as hp


def get_lmax(nside):
    """Maximum multipole used by every harmonic transform at this resolution."""
    return 3*nside - 1


def alm_degrees(lmax):
    """Multipole l of each coefficient of a healpy alm array."""
    ell, _ = hp.Alm.getlm(lmax)
    return ell


class SphericalPixelMap:
    """
    Scalar field over a HEALPix pixelization.

    Parameters
    ----------
    values: np.array
        Pixel values, of length 12*nside**2.
    nest: bool
        True if `values` are given in NESTED ordering.
    """

    def __init__(self, values, nest=False):
        values = np.array(values, dtype=np.float64)
        self.nside = hp.npix2nside(len(values))
        if nest:
            values = hp.reorder(values, n2r=True)
        self.values = values

    @classmethod
    def zeros(cls, nside):
        return cls(np.zeros(hp.nside2npix(nside)))

    @classmethod
    def synthesize(cls, alm, nside, lmax=None):
        """Harmonic synthesis of a scalar alm array into a map."""
        if lmax is None:
            lmax = get_lmax(nside)
        return cls(hp.alm2map(alm, nside, lmax=lmax))

    @property
    def npix(self):
        return len(self.values)

    @property
    def lmax(self):
        return get_lmax(self.nside)

    def copy(self):
        return SphericalPixelMap(self.values)

    def get(self, ipix):
        return self.values[ipix]

    def set(self, ipix, value):
        self.values[ipix] = value

    def analyze(self, lmax=None, n_iter=3):
        """
        Harmonic analysis of the map.

        Parameters
        ----------
        lmax: int, optional
            Maximum multipole, 3*nside-1 by default.
        n_iter: int
            Number of Jacobi iterations of healpy's map2alm.

        Returns
        -------
        np.array
            Complex alm array in healpy ordering.
        """
        if lmax is None:
            lmax = self.lmax
        return hp.map2alm(self.values, lmax=lmax, iter=n_iter, use_weights=False)

    def smooth(self, sigma):
        """
        Gaussian smoothing.

        Parameters
        ----------
        sigma: float
            Standard deviation of the Gaussian beam in arcmin.
        """
        smoothed = hp.smoothing(self.values, sigma=np.deg2rad(sigma/60.), lmax=self.lmax)
        return SphericalPixelMap(smoothed)

    def filter(self, filter_ell, n_iter=3):
        """Multiply the harmonic coefficients by a filter defined per multipole."""
        lmax = len(filter_ell) - 1
        alm = self.analyze(lmax=lmax, n_iter=n_iter)
        alm = hp.almxfl(alm, filter_ell)
        return SphericalPixelMap.synthesize(alm, self.nside, lmax=lmax)

    def neighbours(self, ipix):
        """The 8 neighbours of a pixel, -1 where a neighbour does not exist."""
        return hp.get_all_neighbours(self.nside, ipix)

    def pix2radec(self, ipix):
        """Position of pixel centers in degrees."""
        theta, phi = hp.pix2ang(self.nside, ipix)
        return np.rad2deg(phi), 90. - np.rad2deg(theta)

    def __repr__(self):
        return f"SphericalPixelMap(nside={self.nside})"


def ensure_map(m):
    """Accept either a SphericalPixelMap or a plain RING ordered array."""
    if isinstance(m, SphericalPixelMap):
        return m
    return SphericalPixelMap(m)
