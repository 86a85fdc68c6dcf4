import os

import numpy as np
import healpy as hp
from astropy.io import fits
from astropy.table import Table

from exceptions import MapIOError
from map_maker import ConvergenceMap
from sphere import SphericalPixelMap
from utils import CoordinateBound

"""
map_io.py

FITS persistence of the products: Cartesian maps as image extensions,
HEALPix maps as binary table columns and peak catalogs as binary tables.
Existing files are extended, never rewritten in place.
"""

BOUND_KEYS = (('RAMIN', 'ra_min'), ('RAMAX', 'ra_max'), ('DECMIN', 'dec_min'), ('DECMAX', 'dec_max'),
              ('ZMIN', 'z_min'), ('ZMAX', 'z_max'))


def _load_hdus(filename):
    """Copy every HDU of a file in memory."""
    hdus = []
    with fits.open(filename, memmap=False) as hdul:
        for hdu in hdul:
            data = None if hdu.data is None else hdu.data.copy()
            if isinstance(hdu, fits.PrimaryHDU):
                hdus.append(fits.PrimaryHDU(data=data, header=hdu.header.copy()))
            elif isinstance(hdu, fits.BinTableHDU):
                hdus.append(fits.BinTableHDU(data=data, header=hdu.header.copy()))
            else:
                hdus.append(fits.ImageHDU(data=data, header=hdu.header.copy()))
    return hdus


def _write_atomic(hdus, filename):
    """Write to a temporary file renamed over the target once complete."""
    tmp = filename + '.tmp'
    try:
        fits.HDUList(hdus).writeto(tmp, overwrite=True)
        os.replace(tmp, filename)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def _primary(header_cards):
    primary = fits.PrimaryHDU()
    for key, value in (header_cards or {}).items():
        primary.header[key] = value
    return primary


def _replace_or_append(hdus, new_hdu):
    name = new_hdu.name
    for i, hdu in enumerate(hdus):
        if i > 0 and hdu.name == name:
            hdus[i] = new_hdu
            return hdus
    hdus.append(new_hdu)
    return hdus


def write_map(filename, generic_map, extname, header_cards=None):
    """
    Write a Cartesian map in an image extension.

    Parameters
    ----------
    filename: str
        Output FITS file, extended if it already exists.
    generic_map: GenericMap
        Map to write.
    extname: str
        Name of the extension, an existing extension of that name is replaced.
    header_cards: dict, optional
        Extra header keywords (parameters of the run).
    """
    # FITS axes run the other way round, NAXIS1 is the RA axis
    data = np.transpose(generic_map.to_array(), (0, 2, 1))
    hdu = fits.ImageHDU(data=data, name=extname)
    if generic_map.bound is not None:
        for key, attr in BOUND_KEYS:
            hdu.header[key] = getattr(generic_map.bound, attr)
    hdu.header['NGAL'] = generic_map.n_galaxies
    hdu.header['PIXSIZE'] = generic_map.pixel_size
    for key, value in (header_cards or {}).items():
        hdu.header[key] = value

    if os.path.exists(filename):
        hdus = _load_hdus(filename)
    else:
        hdus = [_primary(header_cards)]
    _write_atomic(_replace_or_append(hdus, hdu), filename)


def read_map(filename, extname=None, cls=ConvergenceMap):
    """
    Read a Cartesian map written by `write_map`.

    Parameters
    ----------
    filename: str
        FITS file.
    extname: str, optional
        Extension name, the first extension if None.
    cls: type
        Map class to build, ShearMap or ConvergenceMap.
    """
    with fits.open(filename, memmap=False) as hdul:
        if extname is None:
            if len(hdul) < 2:
                raise MapIOError(f"No map extension in {filename}.")
            hdu = hdul[1]
        elif extname in hdul:
            hdu = hdul[extname]
        else:
            raise MapIOError(f"No extension {extname} in {filename}.")
        data = np.transpose(np.array(hdu.data, dtype=np.float64), (0, 2, 1))
        header = hdu.header.copy()

    bound = None
    if all(key in header for key, _ in BOUND_KEYS):
        bound = CoordinateBound(*(header[key] for key, _ in BOUND_KEYS))
    return cls.from_arrays(list(data), bound=bound, n_galaxies=header.get('NGAL', 0),
                           pixel_size=header.get('PIXSIZE', 0.))


def write_healpix_map(filename, values, colname, header_cards=None, extname='HEALPIX_MAP'):
    """
    Write a HEALPix map (RING ordering) as a column of a binary table. The
    column is added to the last extension of an existing file.

    Parameters
    ----------
    filename: str
        Output FITS file.
    values: SphericalPixelMap or np.array
        Map to write.
    colname: str
        Name of the column (e.g. GAMMA1, KAPPA_E).
    header_cards: dict, optional
        Extra header keywords.
    """
    if isinstance(values, SphericalPixelMap):
        values = values.values
    values = np.asarray(values, dtype=np.float64)
    nside = hp.npix2nside(len(values))
    new_col = fits.Column(name=colname, format='D', array=values)

    if os.path.exists(filename):
        hdus = _load_hdus(filename)
        last = hdus[-1]
        if not isinstance(last, fits.BinTableHDU):
            raise MapIOError(f"The last extension of {filename} is not a binary table.")
        if last.header.get('NSIDE', nside) != nside:
            raise MapIOError(f"Cannot add a nside={nside} map to the nside={last.header['NSIDE']} maps of {filename}.")
        columns = [fits.Column(name=c.name, format=c.format, array=last.data[c.name])
                   for c in last.columns if c.name != colname]
        table = fits.BinTableHDU.from_columns(columns + [new_col], header=last.header)
        hdus[-1] = table
    else:
        table = fits.BinTableHDU.from_columns([new_col], name=extname)
        table.header['PIXTYPE'] = 'HEALPIX'
        table.header['ORDERING'] = 'RING'
        table.header['INDXSCHM'] = 'IMPLICIT'
        table.header['OBJECT'] = 'FULLSKY'
        table.header['NSIDE'] = nside
        table.header['FIRSTPIX'] = 0
        table.header['LASTPIX'] = len(values) - 1
        hdus = [_primary(header_cards), table]
    for key, value in (header_cards or {}).items():
        hdus[-1].header[key] = value
    _write_atomic(hdus, filename)


def read_healpix_map(filename, colname):
    """
    Read a column written by `write_healpix_map`.

    Returns
    -------
    SphericalPixelMap
        Map in RING ordering.
    """
    with fits.open(filename, memmap=False) as hdul:
        for hdu in hdul[1:]:
            if isinstance(hdu, fits.BinTableHDU) and colname in hdu.columns.names:
                values = np.array(hdu.data[colname], dtype=np.float64).ravel()
                nest = hdu.header.get('ORDERING', 'RING').upper().startswith('NEST')
                return SphericalPixelMap(values, nest=nest)
    raise MapIOError(f"No column {colname} in {filename}.")


def write_peak_catalog(filename, peak_catalog, header_cards=None):
    """Write a PeakCatalog in a PEAK_CATALOG binary table."""
    table = Table.from_pandas(peak_catalog.to_dataframe())
    hdu = fits.table_to_hdu(table)
    hdu.name = 'PEAK_CATALOG'
    for key, value in (header_cards or {}).items():
        hdu.header[key] = value
    if os.path.exists(filename):
        hdus = _load_hdus(filename)
    else:
        hdus = [_primary(header_cards)]
    _write_atomic(_replace_or_append(hdus, hdu), filename)


def read_peak_catalog(filename):
    """Peaks written by `write_peak_catalog`, as a pandas DataFrame."""
    with fits.open(filename, memmap=False) as hdul:
        if 'PEAK_CATALOG' not in hdul:
            raise MapIOError(f"No PEAK_CATALOG extension in {filename}.")
    return Table.read(filename, hdu='PEAK_CATALOG').to_pandas()
