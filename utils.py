import math
from dataclasses import dataclass

import numpy as np

"""
utils.py

Utility functions and small records shared by the mass mapping modules:
patch geometry, tangent plane projections, random rotation of the
ellipticities and B3-spline filters.
"""


@dataclass(frozen=True)
class CoordinateBound:
    """
    Rectangular sky and redshift selection window. Every interval is half
    open, [min, max).
    """
    ra_min: float
    ra_max: float
    dec_min: float
    dec_max: float
    z_min: float
    z_max: float

    def contains(self, ra, dec, z):
        """
        Vectorised membership test.

        Parameters
        ----------
        ra: np.array
            Right ascension (deg).
        dec: np.array
            Declination (deg).
        z: np.array
            Redshift.

        Returns
        -------
        np.array
            Boolean array, True for the rows inside the window.
        """
        ra = np.asarray(ra)
        dec = np.asarray(dec)
        z = np.asarray(z)
        return ((ra >= self.ra_min) & (ra < self.ra_max)
                & (dec >= self.dec_min) & (dec < self.dec_max)
                & (z >= self.z_min) & (z < self.z_max))

    @property
    def ra_range(self):
        return self.ra_max - self.ra_min

    @property
    def dec_range(self):
        return self.dec_max - self.dec_min


@dataclass(frozen=True)
class PatchDef:
    """
    Square patch of the sky centered on (ra_center, dec_center), all values
    in degrees.
    """
    ra_center: float
    dec_center: float
    width: float
    pixel_size: float

    @property
    def ra_min(self):
        return self.ra_center - 0.5*self.width

    @property
    def ra_max(self):
        return self.ra_min + self.width

    @property
    def dec_min(self):
        return self.dec_center - 0.5*self.width

    @property
    def dec_max(self):
        return self.dec_min + self.width

    @property
    def n_bins(self):
        """Number of pixels along each axis, ceil(width/pixel_size)."""
        if self.width <= 0 or self.pixel_size <= 0:
            return 0
        # rounding guards against 1.1/0.1 = 11.000000000000002
        return int(math.ceil(round(self.width/self.pixel_size, 9)))

    @property
    def bins_x(self):
        return self.n_bins

    @property
    def bins_y(self):
        return self.n_bins

    def bound(self, z_min, z_max):
        return CoordinateBound(self.ra_min, self.ra_max, self.dec_min, self.dec_max, z_min, z_max)


def gnomonic_projection(ra, dec, ra0, dec0):
    """
    Project (ra, dec) on the plane tangent to the sphere at (ra0, dec0).
    All angles in radians.

    Returns
    -------
    np.array
        x coordinate on the tangent plane.
    np.array
        y coordinate on the tangent plane.
    """
    cos_c = np.sin(dec0)*np.sin(dec) + np.cos(dec0)*np.cos(dec)*np.cos(ra - ra0)
    x = np.cos(dec)*np.sin(ra - ra0)/cos_c
    y = (np.cos(dec0)*np.sin(dec) - np.sin(dec0)*np.cos(dec)*np.cos(ra - ra0))/cos_c
    return x, y


def inverse_gnomonic_projection(x, y, ra0, dec0):
    """
    Inverse of `gnomonic_projection`. Offsets smaller than 0.01 rad on both
    axes are mapped to the tangent point itself.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    rho = np.hypot(x, y)
    c = np.arctan(rho)
    with np.errstate(divide='ignore', invalid='ignore'):
        dec = np.arcsin(np.cos(c)*np.sin(dec0) + y*np.sin(c)*np.cos(dec0)/rho)
        ra = ra0 + np.arctan2(x*np.sin(c), rho*np.cos(dec0)*np.cos(c) - y*np.sin(dec0)*np.sin(c))
    center = (np.abs(x) < 0.01) & (np.abs(y) < 0.01)
    ra = np.where(center, ra0, ra)
    dec = np.where(center, dec0, dec)
    if ra.ndim == 0:
        return float(ra), float(dec)
    return ra, dec


def apply_random_rotation(e1, e2, rng=None):
    """
    Apply a random rotation to the ellipticity components e1 and e2.

    Parameters
    ----------
    e1 : np.array
        First component of the ellipticity.
    e2 : np.array
        Second component of the ellipticity.
    rng : np.random.Generator, optional
        Random generator, a fresh unseeded one is used if None.

    Returns
    -------
    np.array
        First component of the rotated ellipticity.
    np.array
        Second component of the rotated ellipticity.
    """
    if rng is None:
        rng = np.random.default_rng()
    rot_angle = rng.random(len(e1))*2*np.pi
    e1_out = e1*np.cos(rot_angle) + e2*np.sin(rot_angle)
    e2_out = -e1*np.sin(rot_angle) + e2*np.cos(rot_angle)
    return e1_out, e2_out


def b3_spline(x):
    """Cubic B-spline with support ]-2, 2[."""
    x = np.asarray(x, dtype=np.float64)
    return (np.abs(x - 2)**3 - 4*np.abs(x - 1)**3 + 6*np.abs(x)**3
            - 4*np.abs(x + 1)**3 + np.abs(x + 2)**3)/12.


def get_b3_filter(lmax, scale):
    """
    Harmonic low-pass filter of the B-spline wavelet transform at a given
    scale. The cut-off multipole halves at each scale, lc = lmax/2**scale.

    Returns
    -------
    np.array
        Filter value for each multipole l in [0, lmax].
    """
    lc = lmax*0.5**scale
    ell = np.arange(lmax + 1)
    return 1.5*b3_spline(2.*ell/lc)


def get_std(values):
    """
    Population standard deviation of a pixel map computed over every pixel
    but the first one, as `Grid2D.get_standard_deviation` does.
    """
    flat = np.ravel(values)[1:]
    if flat.size == 0:
        return 0.
    n = flat.size
    mean = flat.sum()
    return np.sqrt(max((flat**2).sum()/n - mean**2/n**2, 0.))


def is_power_of_two(n):
    return n > 0 and (n & (n - 1)) == 0
