import os
import re
from collections import namedtuple

import numpy as np
from astropy.table import Table

from exceptions import CatalogNotFoundError, CatalogFormatError
from utils import apply_random_rotation

"""
catalog.py

Galaxy catalogs: loading from FITS, selection in a sky/redshift window,
splitting into redshift bins and generation of noisy catalogs for the
Monte-Carlo estimation of the noise.
"""

DEFAULT_SHEAR_TYPE = "LENSMC"
SHEAR_COLUMN_TEMPLATE = re.compile(r"SHE_(.*)_G1")

CLUSTER_COLUMNS = {
    'ra': 'RA',
    'dec': 'DEC',
    'z': 'Z',
    'g1': 'G1',
    'g2': 'G2',
    'w': 'WEIGHT',
}


def get_shear_columns(shear_type):
    """Names of the columns of a shear catalog of a given shear type."""
    return {
        'ra': f'SHE_{shear_type}_UPDATED_RA',
        'dec': f'SHE_{shear_type}_UPDATED_DEC',
        'z': 'PHZ_MEDIAN',
        'g1': f'SHE_{shear_type}_G1',
        'g2': f'SHE_{shear_type}_G2',
        'w': f'SHE_{shear_type}_WEIGHT',
    }


class Catalog:
    """
    Columnar galaxy catalog.

    Parameters
    ----------
    ra, dec: np.array
        Position of the galaxies (deg).
    z: np.array
        Redshift of the galaxies.
    g1, g2: np.array
        Shear components.
    w: np.array, optional
        Weights, 1 by default.
    kappa: np.array, optional
        Convergence of each galaxy (cluster catalogs).
    z_corr: np.array, optional
        Photometric redshift correction.
    shear_type: str
        Shear measurement method the columns come from.
    """

    columns = ('ra', 'dec', 'z', 'g1', 'g2', 'w', 'kappa', 'z_corr')

    def __init__(self, ra, dec, z, g1, g2, w=None, kappa=None, z_corr=None, shear_type=DEFAULT_SHEAR_TYPE):
        self.ra = np.asarray(ra, dtype=np.float64)
        self.dec = np.asarray(dec, dtype=np.float64)
        self.z = np.asarray(z, dtype=np.float64)
        self.g1 = np.asarray(g1, dtype=np.float64)
        self.g2 = np.asarray(g2, dtype=np.float64)
        self.w = np.ones(len(self.ra)) if w is None else np.asarray(w, dtype=np.float64)
        self.kappa = None if kappa is None else np.asarray(kappa, dtype=np.float64)
        self.z_corr = None if z_corr is None else np.asarray(z_corr, dtype=np.float64)
        self.shear_type = shear_type
        for name in self.columns:
            col = getattr(self, name)
            if col is not None and len(col) != len(self.ra):
                raise ValueError(f"Column {name} has {len(col)} rows, expected {len(self.ra)}.")

    def __len__(self):
        return len(self.ra)

    def _subset(self, index):
        kwargs = {name: (None if getattr(self, name) is None else getattr(self, name)[index])
                  for name in self.columns}
        return Catalog(shear_type=self.shear_type, **kwargs)

    def select(self, bound):
        """Rows falling inside a CoordinateBound, as a new catalog."""
        return self._subset(bound.contains(self.ra, self.dec, self.z))

    def with_shear(self, g1, g2):
        """Copy of the catalog with new shear columns."""
        kwargs = {name: getattr(self, name) for name in self.columns}
        kwargs['g1'] = g1
        kwargs['g2'] = g2
        return Catalog(shear_type=self.shear_type, **kwargs)

    def sort_by_redshift(self):
        return self._subset(np.argsort(self.z, kind='stable'))

    def z_range(self):
        if len(self) == 0:
            return 0., 0.
        return self.z.min(), self.z.max()


def get_shear_type(colnames):
    """
    Detect the shear type from the column names of a catalog.

    Returns
    -------
    str
        Shear type, "CLUSTER" if no shear column is present. When several
        shear types are present, LENSMC is preferred.
    """
    shear_types = set()
    for name in colnames:
        match = SHEAR_COLUMN_TEMPLATE.fullmatch(name)
        if match:
            shear_types.add(match.group(1))
    if len(shear_types) == 0:
        return "CLUSTER"
    if len(shear_types) == 1:
        return shear_types.pop()
    if DEFAULT_SHEAR_TYPE in shear_types:
        return DEFAULT_SHEAR_TYPE
    return sorted(shear_types)[0]


def load_catalog(path, workdir=None, verbose=False):
    """
    Load a galaxy catalog from a FITS file.

    Parameters
    ----------
    path: str
        Path to the catalog, relative to `workdir` if given.
    workdir: str, optional
        Working directory.
    verbose: bool
        Print information about the catalog.

    Returns
    -------
    Catalog
        The loaded catalog.
    """
    if workdir is not None:
        path = os.path.join(workdir, path)
    if not os.path.exists(path):
        raise CatalogNotFoundError(f"Catalog {path} not found.")

    data = Table.read(path)
    shear_type = get_shear_type(data.colnames)
    if shear_type == "CLUSTER":
        mapping = dict(CLUSTER_COLUMNS)
        optional = {'kappa': 'KAPPA'}
    else:
        mapping = get_shear_columns(shear_type)
        optional = {'z_corr': f'PHZ_{shear_type}_CORRECTION'}

    missing = [col for col in mapping.values() if col not in data.colnames]
    if missing:
        raise CatalogFormatError(f"Catalog {path} is missing the columns {', '.join(missing)}.")

    columns = {key: np.array(data[col], dtype=np.float64) for key, col in mapping.items()}
    for key, col in optional.items():
        if col in data.colnames:
            columns[key] = np.array(data[col], dtype=np.float64)

    if verbose:
        print(f"[!] Loaded {len(data)} galaxies of shear type {shear_type} from {path}.")
    return Catalog(shear_type=shear_type, **columns)


class RedshiftBin(namedtuple('RedshiftBin', ['z_min', 'z_max', 'catalog'])):
    """Redshift slice of a catalog, both bounds included."""

    def bound(self, patch):
        # upper bound nudged so that the half-open window keeps z == z_max
        return patch.bound(self.z_min, np.nextafter(self.z_max, np.inf))


def split_redshift_bins(catalog, z_min, z_max, nbins, balanced=False, verbose=False):
    """
    Split a catalog into redshift bins.

    Parameters
    ----------
    catalog: Catalog
        Catalog to split.
    z_min, z_max: float
        Redshift range, clipped to the range of the catalog.
    nbins: int
        Number of bins.
    balanced: bool
        If True the bins hold the same number of galaxies, otherwise they
        have the same width in redshift.

    Returns
    -------
    list of RedshiftBin
        One entry per bin. Equal-width bins are [z_lo, z_hi) except the last
        one which is closed.
    """
    assert nbins >= 1, "The number of redshift bins must be positive."
    cat_zmin, cat_zmax = catalog.z_range()
    z_min = max(z_min, cat_zmin)
    z_max = min(z_max, cat_zmax)
    if verbose:
        if z_min < 0.:
            print(f"[!] Warning: the minimum redshift {z_min} is negative.")
        if z_max > 10.:
            print(f"[!] Warning: the maximum redshift {z_max} is above 10.")

    bins = []
    if balanced:
        in_range = (catalog.z >= z_min) & (catalog.z <= z_max)
        sorted_cat = catalog._subset(in_range).sort_by_redshift()
        for chunk in np.array_split(np.arange(len(sorted_cat)), nbins):
            sub = sorted_cat._subset(chunk)
            lo, hi = sub.z_range()
            bins.append(RedshiftBin(lo, hi, sub))
    else:
        width = (z_max - z_min)/nbins
        for i in range(nbins):
            lo = z_min + i*width
            hi = z_max if i == nbins - 1 else lo + width
            if i < nbins - 1:
                index = (catalog.z >= lo) & (catalog.z < hi)
            else:
                index = (catalog.z >= lo) & (catalog.z <= hi)
            bins.append(RedshiftBin(lo, hi, catalog._subset(index)))

    if verbose:
        for i, zbin in enumerate(bins):
            print(f"[!] Redshift bin {i+1}: {zbin.z_min:.3f} <= z <= {zbin.z_max:.3f} with {len(zbin.catalog)} galaxies.")
    return bins


def create_noisy_catalog(catalog, rng=None):
    """
    Randomise the orientation of every galaxy to erase the lensing signal
    while keeping the ellipticity modulus.

    Parameters
    ----------
    catalog: Catalog
        Input catalog, left untouched.
    rng: np.random.Generator, optional
        Random generator, use a seeded one for reproducible noise.

    Returns
    -------
    Catalog
        New catalog with rotated shear components.
    """
    g1, g2 = apply_random_rotation(catalog.g1, catalog.g2, rng=rng)
    return catalog.with_shear(g1, g2)
