"""
peak_count.py

Detection of the peaks (local maxima) of the convergence maps, on patches
and on the sphere, directly or after a wavelet or aperture mass filtering.
"""

import numpy as np
import pandas as pd
from scipy.ndimage import correlate1d

from grid import Grid2D
from sphere import ensure_map, get_lmax
from utils import inverse_gnomonic_projection, get_b3_filter, get_std

PEAK_COLUMNS = ['RA_OBJ', 'DEC_OBJ', 'ZMIN', 'ZMAX', 'THETA', 'SNR']

#Standard deviation of the B3-spline wavelet bands of a unit white noise
NORM = [0.8811, 0.1988, 0.0846, 0.0408, 0.0202, 0.01014, 0.0051, 0.00382, 0., 0.]
SPHERICAL_NORM = [0.8980439031689823, 0.1794034833116207, 0.08969876606779066, 0.04487843144318756,
                  0.022418383118745656, 0.011220793531292756, 0.005608036372105656, 0.0028126266820498905,
                  0.0013715941244536187, 0.0006964483614277237, 0.0003751679040680689, 0.0001904098857186993,
                  0.00012508689538739463]

B3_KERNEL = np.array([1/16., 1/4., 3/8., 1/4., 1/16.])


class PeakCatalog:
    """Append-only list of peaks."""

    def __init__(self):
        self._rows = []

    def add_peak(self, ra, dec, z_min, z_max, theta, snr):
        self._rows.append((float(ra), float(dec), float(z_min), float(z_max), float(theta), float(snr)))

    def extend(self, other):
        self._rows.extend(other._rows)

    @property
    def n_entries(self):
        return len(self._rows)

    def __len__(self):
        return len(self._rows)

    def get_entry(self, i):
        return dict(zip(PEAK_COLUMNS, self._rows[i]))

    def to_dataframe(self):
        values = np.array(self._rows, dtype=np.float64).reshape(-1, len(PEAK_COLUMNS))
        return pd.DataFrame(values, columns=PEAK_COLUMNS)


def smooth_bspline(values, step):
    """
    One a trous smoothing of a 2D array with the B3-spline kernel, holes of
    2**step pixels and mirror boundaries.
    """
    gap = 2**step
    kernel = np.zeros(4*gap + 1)
    kernel[::gap] = B3_KERNEL
    out = correlate1d(values, kernel, axis=0, mode='reflect')
    return correlate1d(out, kernel, axis=1, mode='reflect')


def transform_bspline(values, n_scales):
    """
    Starlet decomposition of a 2D array.

    Returns
    -------
    list of np.array
        `n_scales` arrays: the n_scales-1 wavelet bands, finest first, and
        the coarse residual. Their sum is the input.
    """
    bands = [np.asarray(values, dtype=np.float64).copy()]
    for step in range(n_scales - 1):
        smooth = smooth_bspline(bands[step], step)
        bands[step] = bands[step] - smooth
        bands.append(smooth)
    return bands


def transform_bspline_hp(kappa, n_scales):
    """
    Wavelet decomposition of a HEALPix map, each band being the difference
    of two harmonic B-spline smoothings of the input map. The last entry is
    the coarse residual.
    """
    kappa = ensure_map(kappa)
    lmax = get_lmax(kappa.nside)
    bands = [kappa.values.copy()]
    for scale in range(n_scales - 1):
        smooth = kappa.filter(get_b3_filter(lmax, scale)).values
        bands[scale] = bands[scale] - smooth
        bands.append(smooth)
    return bands


def mass_aperture_map(g1, g2, radius):
    """
    Aperture mass map of a shear field with the kernel
    r**2/(4 pi R**4) exp(-r**2/(2 R**2)) truncated at 4R. Pixels closer than
    4R to the border are left at 0.

    Parameters
    ----------
    g1, g2: np.array
        Shear components, indexed [x, y].
    radius: float
        Aperture radius R in pixels.
    """
    g1 = np.asarray(g1)
    g2 = np.asarray(g2)
    out = np.zeros(g1.shape)
    rmax = int(radius*4)
    if rmax == 0:
        return out
    offsets = np.arange(-rmax, rmax)
    a, b = np.meshgrid(offsets, offsets, indexing='ij')
    r = np.hypot(a, b)
    phi = np.arctan2(a, b)
    kernel = np.where(r < rmax, r**2/(4*np.pi*radius**4)*np.exp(-r**2/(2*radius**2)), 0.)
    cos_k = kernel*np.cos(2*phi)
    sin_k = kernel*np.sin(2*phi)
    nx, ny = g1.shape
    for i0 in range(rmax, nx - rmax):
        for j0 in range(rmax, ny - rmax):
            e = g1[i0-rmax:i0+rmax, j0-rmax:j0+rmax]
            b_ = g2[i0-rmax:i0+rmax, j0-rmax:j0+rmax]
            out[i0, j0] = np.sum(e*cos_k - b_*sin_k)
    return out


class CartesianPeakCount:
    """
    Peak finder on the maps of one patch and redshift bin.

    Parameters
    ----------
    patch: PatchDef or CoordinateBound
        Sky window of the maps.
    z_min, z_max: float
        Redshift bin recorded with each peak.
    """

    def __init__(self, patch, z_min, z_max):
        self.patch = patch
        self.z_min = z_min
        self.z_max = z_max
        self.catalog = PeakCatalog()

    def pixel_to_radec(self, i, j, size_x, size_y):
        """Sky position (deg) of the center of pixel (i, j)."""
        ra0 = np.deg2rad(0.5*(self.patch.ra_min + self.patch.ra_max))
        dec0 = np.deg2rad(0.5*(self.patch.dec_min + self.patch.dec_max))
        ra_range = np.deg2rad(self.patch.ra_max - self.patch.ra_min)
        dec_range = np.deg2rad(self.patch.dec_max - self.patch.dec_min)
        x = (i + 0.5)*ra_range/size_x - 0.5*ra_range
        y = (j + 0.5)*dec_range/size_y - 0.5*dec_range
        ra, dec = inverse_gnomonic_projection(x, y, ra0, dec0)
        return np.rad2deg(ra), np.rad2deg(dec)

    def find_peaks_at_theta(self, grid, theta):
        """
        Add every local maximum of a map to the catalog.

        Parameters
        ----------
        grid: Grid2D or np.array
            Map to scan.
        theta: float
            Angular scale recorded with the peaks.
        """
        if not isinstance(grid, Grid2D):
            grid = Grid2D.from_array(grid)
        for i, j in np.argwhere(grid.local_maxima()):
            ra, dec = self.pixel_to_radec(i, j, grid.size_x, grid.size_y)
            self.catalog.add_peak(ra, dec, self.z_min, self.z_max, theta, grid.get(i, j))
        return self.catalog

    def find_peaks_from_convergence(self, convergence_map, n_scales):
        """
        Peaks of the wavelet bands of kappa_E, each band divided by its
        expected noise level. The scale of band s is 2**(s+1) pixels, in arcmin.
        """
        sigma = convergence_map[0].get_sigma()
        bands = transform_bspline(convergence_map.kappa_e, n_scales)
        for scale, band in enumerate(bands[:-1]):
            noise = sigma*NORM[scale]
            if noise == 0:
                continue
            theta = 2**(scale + 1)*convergence_map.pixel_size*60.
            self.find_peaks_at_theta(band/noise, theta)
        return self.catalog

    def find_peaks_from_shear(self, shear_map, noisy_shear_map, radii):
        """
        Peaks of the aperture mass maps of a shear map at several radii
        (pixels), in units of the standard deviation of the aperture mass of
        a noise map.
        """
        for radius in radii:
            signal = mass_aperture_map(shear_map.g1, shear_map.g2, radius)
            noise = np.std(mass_aperture_map(noisy_shear_map.g1, noisy_shear_map.g2, radius))
            if noise == 0:
                continue
            self.find_peaks_at_theta(signal/noise, radius)
        return self.catalog


class SphericalPeakCount:
    """
    Peak finder on a HEALPix convergence map.

    Parameters
    ----------
    kappa_e: SphericalPixelMap or np.array
        E mode convergence.
    n_scales: int
        Number of wavelet scales.
    """

    def __init__(self, kappa_e, n_scales, z_min=0., z_max=0.):
        self.kappa_e = ensure_map(kappa_e)
        self.n_scales = n_scales
        self.z_min = z_min
        self.z_max = z_max
        self.catalog = PeakCatalog()

    def find_peaks_at_theta(self, values, theta):
        """Add the pixels larger than their 8 neighbours to the catalog."""
        values = np.asarray(values)
        ipix = np.arange(len(values))
        neighbours = self.kappa_e.neighbours(ipix)
        neighbour_values = np.where(neighbours >= 0, values[neighbours], -np.inf)
        peaks = np.nonzero(values > neighbour_values.max(axis=0))[0]
        ra, dec = self.kappa_e.pix2radec(peaks)
        for k, p in enumerate(peaks):
            self.catalog.add_peak(ra[k], dec[k], self.z_min, self.z_max, theta, values[p])
        return self.catalog

    def find_peaks(self):
        """Peaks of the SNR of each wavelet band, the scale index recorded as theta."""
        sigma = get_std(self.kappa_e.values)
        bands = transform_bspline_hp(self.kappa_e, self.n_scales)
        for scale, band in enumerate(bands[:-1]):
            noise = sigma*SPHERICAL_NORM[scale]
            if noise == 0:
                continue
            self.find_peaks_at_theta(band/noise, float(scale))
        return self.catalog
