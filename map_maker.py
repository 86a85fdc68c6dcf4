import numpy as np
import healpy as hp
from scipy.ndimage import gaussian_filter

from grid import Grid2D
from sphere import SphericalPixelMap

"""
map_maker.py

Cartesian shear and convergence maps (stacks of Grid2D channels) and the
binning of galaxy catalogs onto a patch grid or a HEALPix map.
"""


class GenericMap:
    """
    Stack of `n_channels` grids of identical size.

    Parameters
    ----------
    size_x, size_y: int
        Number of pixels along RA and Dec.
    n_channels: int
        Number of channels.
    bound: CoordinateBound, optional
        Sky and redshift window covered by the map.
    n_galaxies: int
        Number of galaxies binned into the map.
    pixel_size: float
        Pixel size in degrees.
    """

    channel_names = ()

    def __init__(self, size_x, size_y, n_channels, bound=None, n_galaxies=0, pixel_size=0.):
        self.channels = [Grid2D(size_x, size_y) for _ in range(n_channels)]
        self.bound = bound
        self.n_galaxies = int(n_galaxies)
        self.pixel_size = pixel_size

    @classmethod
    def from_arrays(cls, arrays, **kwargs):
        """Build a map from a sequence of (size_x, size_y) arrays, one per channel."""
        arrays = [np.asarray(a, dtype=np.float64) for a in arrays]
        size_x, size_y = arrays[0].shape
        new = cls.__new__(cls)
        GenericMap.__init__(new, size_x, size_y, len(arrays), **kwargs)
        for grid, a in zip(new.channels, arrays):
            grid.values[:] = a
        return new

    @property
    def size_x(self):
        return self.channels[0].size_x if self.channels else 0

    @property
    def size_y(self):
        return self.channels[0].size_y if self.channels else 0

    @property
    def n_channels(self):
        return len(self.channels)

    def __getitem__(self, k):
        return self.channels[k]

    def array(self, k):
        return self.channels[k].values

    def to_array(self):
        """All channels as a (n_channels, size_x, size_y) array."""
        return np.stack([grid.values for grid in self.channels])

    def _metadata(self):
        return dict(bound=self.bound, n_galaxies=self.n_galaxies, pixel_size=self.pixel_size)

    def copy(self):
        return type(self).from_arrays([grid.values for grid in self.channels], **self._metadata())

    def get_bin_value(self, x, y, k):
        k = min(k, self.n_channels - 1)
        return self.channels[k].get(x, y)

    def set_bin_value(self, x, y, k, value):
        self.channels[k].set(x, y, value)

    def clear(self, k):
        self.channels[k].reset()

    def get_mean_values(self):
        return [grid.values.mean() for grid in self.channels]

    def remove_offset(self, offset):
        for grid, value in zip(self.channels, offset):
            grid.values[:] -= value

    def apply_gaussian_filter(self, sigma, k=0):
        """
        Smooth one channel with a Gaussian kernel.

        Parameters
        ----------
        sigma: float
            Standard deviation of the kernel in pixels.
        k: int
            Channel to smooth.
        """
        self.channels[k].values[:] = gaussian_filter(self.channels[k].values, sigma, mode='wrap')

    def add_borders(self):
        """
        Zero-pad every channel to twice its size, the original map sitting in
        the middle.
        """
        pad = ((self.size_x//2, self.size_x - self.size_x//2), (self.size_y//2, self.size_y - self.size_y//2))
        return type(self).from_arrays([np.pad(grid.values, pad) for grid in self.channels], **self._metadata())

    def remove_borders(self):
        """Inverse of `add_borders`."""
        nx, ny = self.size_x//2, self.size_y//2
        x0, y0 = nx//2, ny//2
        return type(self).from_arrays([grid.values[x0:x0+nx, y0:y0+ny] for grid in self.channels], **self._metadata())

    def pixelate(self, x_binning, y_binning):
        """
        Rebin the map by averaging blocks of 2**x_binning x 2**y_binning pixels.

        Returns
        -------
        GenericMap or None
            The rebinned map, None if the binning is null or larger than the map.
        """
        if x_binning == 0 and y_binning == 0:
            return None
        bx, by = 2**x_binning, 2**y_binning
        if bx >= self.size_x or by >= self.size_y:
            return None
        nx, ny = self.size_x//bx, self.size_y//by
        arrays = [grid.values[:nx*bx, :ny*by].reshape(nx, bx, ny, by).mean(axis=(1, 3)) for grid in self.channels]
        metadata = self._metadata()
        metadata['pixel_size'] = self.pixel_size*bx
        return type(self).from_arrays(arrays, **metadata)

    def __repr__(self):
        return f"{type(self).__name__}({self.size_x}, {self.size_y}, {self.n_channels})"


class ShearMap(GenericMap):
    """Shear map: channels g1, g2 and the number of galaxies per pixel."""

    channel_names = ('GAMMA1', 'GAMMA2', 'NGAL')

    def __init__(self, size_x, size_y, n_channels=3, **kwargs):
        super().__init__(size_x, size_y, n_channels, **kwargs)

    @property
    def g1(self):
        return self.array(0)

    @property
    def g2(self):
        return self.array(1)

    def mask(self):
        """1 where at least one galaxy was binned, 0 elsewhere."""
        if self.n_channels > 2:
            return (self.array(2) > 0).astype(np.float64)
        return ((self.g1 != 0) | (self.g2 != 0)).astype(np.float64)

    def correct_reduced_shear(self, convergence, use_kappa_b=False):
        """
        One reduced shear correction step, gamma = g*(1 - kappa).

        Parameters
        ----------
        convergence: ConvergenceMap
            Convergence used to rescale the shear.
        use_kappa_b: bool
            Use the complex convergence kappa_E + i kappa_B.
        """
        kappa_b = convergence.kappa_b if use_kappa_b else 0.
        factor = (1 - convergence.kappa_e) - 1j*kappa_b
        gamma = (self.g1 + 1j*self.g2)*factor
        self.channels[0].values[:] = gamma.real
        self.channels[1].values[:] = gamma.imag


class ConvergenceMap(GenericMap):
    """Convergence map: channels kappa_E, kappa_B and optionally the SNR."""

    channel_names = ('KAPPA_E', 'KAPPA_B', 'SNR')

    def __init__(self, size_x, size_y, n_channels=2, **kwargs):
        super().__init__(size_x, size_y, n_channels, **kwargs)

    @property
    def kappa_e(self):
        return self.array(0)

    @property
    def kappa_b(self):
        return self.array(1)

    def set_kappa_b_to_zero(self):
        self.clear(1)

    def get_tilde_convergence(self, sigma, threshold):
        """
        Convergence used by the reduced shear correction: kappa_E smoothed
        with a Gaussian of `sigma` pixels (if sigma > 0.001) and thresholded
        at `threshold` times the standard deviation of kappa_B.
        """
        tilde = self.copy()
        if sigma > 0.001:
            tilde.apply_gaussian_filter(sigma, k=0)
        noise = tilde[1].get_sigma()
        tilde[0].apply_threshold(threshold*noise)
        return tilde


def get_pixel_index(ra, dec, bound, bins_x, bins_y):
    """
    Linear mapping of positions onto the pixels of the grid covering `bound`.
    """
    x = np.floor((ra - bound.ra_min)/bound.ra_range*bins_x).astype(int)
    y = np.floor((dec - bound.dec_min)/bound.dec_range*bins_y).astype(int)
    return np.clip(x, 0, bins_x - 1), np.clip(y, 0, bins_y - 1)


def make_shear_map(catalog, bound, bins_x, bins_y, pixel_size=0., weighted=False, verbose=False):
    """
    Bin a catalog onto a regular RA/Dec grid.

    Parameters
    ----------
    catalog: Catalog
        Galaxy catalog.
    bound: CoordinateBound
        Sky and redshift window of the map.
    bins_x, bins_y: int
        Number of pixels along RA and Dec.
    weighted: bool
        Weight the galaxies with their catalog weight.

    Returns
    -------
    ShearMap
        Mean shear per pixel (0 in empty pixels) and galaxy counts. Its
        `n_galaxies` attribute is 0 when no galaxy falls inside `bound`, in
        which case the window should be skipped.
    """
    shear = ShearMap(bins_x, bins_y, bound=bound, pixel_size=pixel_size)
    selected = bound.contains(catalog.ra, catalog.dec, catalog.z)
    n_gal = int(np.count_nonzero(selected))
    shear.n_galaxies = n_gal
    if verbose:
        print(f"[!] {n_gal} galaxies inside the window.")
    if n_gal == 0:
        return shear

    x, y = get_pixel_index(catalog.ra[selected], catalog.dec[selected], bound, bins_x, bins_y)
    w = catalog.w[selected] if weighted else np.ones(n_gal)
    flat = x*bins_y + y
    n_pix = bins_x*bins_y
    weight_sum = np.bincount(flat, weights=w, minlength=n_pix)
    g1_sum = np.bincount(flat, weights=w*catalog.g1[selected], minlength=n_pix)
    g2_sum = np.bincount(flat, weights=w*catalog.g2[selected], minlength=n_pix)
    counts = np.bincount(flat, minlength=n_pix)

    filled = weight_sum != 0
    g1 = np.zeros(n_pix)
    g2 = np.zeros(n_pix)
    g1[filled] = g1_sum[filled]/weight_sum[filled]
    g2[filled] = g2_sum[filled]/weight_sum[filled]

    shear.channels[0].values[:] = g1.reshape(bins_x, bins_y)
    shear.channels[1].values[:] = g2.reshape(bins_x, bins_y)
    shear.channels[2].values[:] = counts.reshape(bins_x, bins_y)
    return shear


def make_convergence_map(catalog, bound, bins_x, bins_y, pixel_size=0.):
    """
    Bin the convergence column of a cluster catalog into a ConvergenceMap
    (kappa_E channel only, kappa_B left at 0).
    """
    assert catalog.kappa is not None, "The catalog has no convergence column."
    proxy = catalog.with_shear(catalog.kappa, np.zeros(len(catalog)))
    binned = make_shear_map(proxy, bound, bins_x, bins_y, pixel_size=pixel_size)
    return ConvergenceMap.from_arrays([binned.g1, np.zeros_like(binned.g1)], bound=bound,
                                      n_galaxies=binned.n_galaxies, pixel_size=pixel_size)


def make_healpix_shear_maps(catalog, nside, bound=None, weighted=False):
    """
    Bin a catalog onto HEALPix maps in RING ordering.

    Parameters
    ----------
    catalog: Catalog
        Galaxy catalog.
    nside: int
        Resolution of the maps.
    bound: CoordinateBound, optional
        Restrict the binning to a sky/redshift window.
    weighted: bool
        Weight the galaxies with their catalog weight.

    Returns
    -------
    SphericalPixelMap
        Mean g1 per pixel, 0 in empty pixels.
    SphericalPixelMap
        Mean g2 per pixel.
    SphericalPixelMap
        Number of galaxies per pixel.
    """
    if bound is not None:
        catalog = catalog.select(bound)
    npix = hp.nside2npix(nside)
    g1_map = np.zeros(npix)
    g2_map = np.zeros(npix)
    n_map = np.zeros(npix)
    if len(catalog) == 0:
        return SphericalPixelMap(g1_map), SphericalPixelMap(g2_map), SphericalPixelMap(n_map)

    theta = (90 - catalog.dec)*np.pi/180
    phi = catalog.ra*np.pi/180
    pix = hp.ang2pix(nside, theta, phi, nest=False)
    w = catalog.w if weighted else np.ones(len(catalog))

    #Get a map between pixels in Healpix and galaxies in the galaxy catalog
    unique_pix, idx_rep = np.unique(pix, return_inverse=True)
    w_sum = np.bincount(idx_rep, weights=w)
    g1_map[unique_pix] = np.bincount(idx_rep, weights=w*catalog.g1)
    g2_map[unique_pix] = np.bincount(idx_rep, weights=w*catalog.g2)
    n_map[unique_pix] = np.bincount(idx_rep)

    filled = np.zeros(npix, dtype=bool)
    filled[unique_pix] = w_sum != 0
    norm = np.zeros(npix)
    norm[unique_pix] = w_sum
    g1_map[filled] /= norm[filled]
    g2_map[filled] /= norm[filled]
    g1_map = np.nan_to_num(g1_map)
    g2_map = np.nan_to_num(g2_map)
    return SphericalPixelMap(g1_map), SphericalPixelMap(g2_map), SphericalPixelMap(n_map)
