"""
exceptions.py

Exceptions raised by the mass mapping package.
"""


class MassMappingError(Exception):
    """Base class of every error raised by the mass mapping modules."""


class ConfigError(MassMappingError, ValueError):
    """
    Malformed or incomplete parameter file (unknown parameter type, missing
    redshift bin bounds, ...). Raised before any mapping work starts.
    """


class CatalogNotFoundError(MassMappingError, FileNotFoundError):
    """The referenced galaxy catalog does not exist."""


class CatalogFormatError(MassMappingError, ValueError):
    """The galaxy catalog lacks one of the required columns."""


class MapIOError(MassMappingError, OSError):
    """A named map, column or extension is missing from a product file."""
