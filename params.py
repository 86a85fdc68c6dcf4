import os
from dataclasses import dataclass, field

import yaml

from exceptions import ConfigError
from utils import PatchDef, is_power_of_two

"""
params.py

Parameters of a mass mapping run, read from a YAML configuration file.
"""

PARAM_TYPES = ("Conv_Patch", "Conv_Sphere")


def to_bool(value):
    """Booleans of the configuration files are either YAML booleans or 'T'/'F'."""
    if isinstance(value, bool):
        return value
    if value in ('T', 'True', 'true', 1):
        return True
    if value in ('F', 'False', 'false', 0, None):
        return False
    raise ConfigError(f"Cannot interpret {value!r} as a boolean.")


@dataclass(frozen=True)
class MassMapParams:
    """Immutable bundle of the parameters of a run."""
    param_type: str = "Conv_Patch"
    nbins: int = 1
    balanced_bins: bool = False
    z_min: tuple = (0.0,)
    z_max: tuple = (10.0,)
    n_resamples: int = 0
    rs_correction: bool = False
    n_iter_reduced_shear: int = 0
    rs_threshold: float = 5.0
    rs_gauss_std: float = 0.0
    gauss_std: float = 0.0
    threshold_fdr: float = 0.0
    n_inpaint: int = 100
    n_inp_scales: int = 0
    equal_var_per_scale: bool = False
    force_b_mode: bool = True
    add_borders: bool = False
    pixel_size: float = 0.0
    nside: int = 0
    n_peak_scales: int = 0
    aperture_radii: tuple = ()
    patches: tuple = field(default_factory=tuple)
    seed: int = None
    verbose: bool = False
    validation_plot: bool = False

    @property
    def is_spherical(self):
        return self.param_type == "Conv_Sphere"

    @property
    def n_reduced_shear_iterations(self):
        return self.n_iter_reduced_shear if self.rs_correction else 0

    def redshift_bounds(self):
        """List of the (z_min, z_max) pairs given in the configuration."""
        return list(zip(self.z_min, self.z_max))

    def header_cards(self):
        """Parameters written in the header of every product."""
        return {
            'NITREDSH': self.n_reduced_shear_iterations,
            'RSTHRESH': self.rs_threshold,
            'STDREDSH': self.rs_gauss_std,
            'NITINP': self.n_inpaint,
            'NSCINP': self.n_inp_scales,
            'VARPERSC': self.equal_var_per_scale,
            'FBMODE': self.force_b_mode,
            'GAUSSSTD': self.gauss_std,
            'THRESFDR': self.threshold_fdr,
            'NZBINS': self.nbins,
            'BAL_BINS': self.balanced_bins,
            'NRESAMPL': self.n_resamples,
        }

    def validate(self):
        if self.param_type not in PARAM_TYPES:
            raise ConfigError(f"Unknown parameter type {self.param_type}, expected one of {', '.join(PARAM_TYPES)}.")
        if len(self.z_min) == 0 or len(self.z_min) != len(self.z_max):
            raise ConfigError("The redshift bins need as many z_min as z_max values.")
        if any(lo >= hi for lo, hi in self.redshift_bounds()):
            raise ConfigError("Each z_min must be smaller than its z_max.")
        if self.nbins < 1:
            raise ConfigError("The number of redshift bins must be positive.")
        if self.is_spherical:
            if not is_power_of_two(self.nside):
                raise ConfigError(f"nside must be a positive power of 2, got {self.nside}.")
        else:
            if self.pixel_size <= 0:
                raise ConfigError("A positive pixel_size is required for patches.")
            if len(self.patches) == 0:
                raise ConfigError("At least one patch is required.")
        return self


def _as_tuple(value):
    if isinstance(value, (list, tuple)):
        return tuple(float(v) for v in value)
    return (float(value),)


def params_from_dict(config):
    """
    Build the parameters from the content of a configuration file.

    Raises
    ------
    ConfigError
        On unknown keys, wrong types or inconsistent values.
    """
    if not isinstance(config, dict):
        raise ConfigError("The configuration must be a mapping.")
    config = dict(config)
    known = set(MassMapParams.__dataclass_fields__)
    unknown = set(config) - known
    if unknown:
        raise ConfigError(f"Unknown parameters: {', '.join(sorted(unknown))}.")

    try:
        kwargs = {}
        for key in ('balanced_bins', 'rs_correction', 'equal_var_per_scale', 'force_b_mode', 'add_borders',
                    'verbose', 'validation_plot'):
            if key in config:
                kwargs[key] = to_bool(config[key])
        for key in ('nbins', 'n_resamples', 'n_iter_reduced_shear', 'n_inpaint', 'n_inp_scales', 'nside',
                    'n_peak_scales'):
            if key in config:
                kwargs[key] = int(config[key])
        for key in ('rs_threshold', 'rs_gauss_std', 'gauss_std', 'threshold_fdr', 'pixel_size'):
            if key in config:
                kwargs[key] = float(config[key])
        for key in ('z_min', 'z_max', 'aperture_radii'):
            if key in config:
                kwargs[key] = _as_tuple(config[key])
        if 'param_type' in config:
            kwargs['param_type'] = str(config['param_type'])
        if config.get('seed') is not None:
            kwargs['seed'] = int(config['seed'])
        pixel_size = kwargs.get('pixel_size', 0.)
        if 'patches' in config:
            kwargs['patches'] = tuple(PatchDef(float(p['ra']), float(p['dec']), float(p['width']), pixel_size)
                                      for p in config['patches'])
    except (TypeError, ValueError, KeyError) as e:
        raise ConfigError(f"Malformed parameter: {e}") from e

    return MassMapParams(**kwargs).validate()


def _load_yaml(path):
    if not os.path.exists(path):
        raise ConfigError(f"Parameter file {path} not found.")
    with open(path, 'r') as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e


def read_params(path, section=None):
    """
    Read the parameters of a run from a YAML file.

    Parameters
    ----------
    path: str
        Path to the configuration file.
    section: str, optional
        Read the parameters from this section of the file instead of its top
        level.

    Returns
    -------
    MassMapParams
        Validated parameters.
    """
    config = _load_yaml(path)
    if section is not None:
        if not isinstance(config, dict) or section not in config:
            raise ConfigError(f"No section {section} in {path}.")
        config = config[section]
    return params_from_dict(config)


def read_run_config(path):
    """
    Read the configuration of a run: the `mass_mapping` parameters, the output
    directory and the catalog to load.

    Returns
    -------
    MassMapParams
        Validated parameters.
    str
        Output directory.
    dict
        Catalog section, with at least a `path` entry.
    bool
        Verbosity, from the parameters or the top level of the file.
    """
    config = _load_yaml(path)
    if not isinstance(config, dict):
        raise ConfigError(f"{path} does not hold a mapping.")
    if 'path_output' not in config:
        raise ConfigError(f"No path_output in {path}.")
    catalog = config.get('catalog')
    if not isinstance(catalog, dict) or 'path' not in catalog:
        raise ConfigError(f"No catalog path in {path}.")
    params = read_params(path, section='mass_mapping')
    verbose = params.verbose or to_bool(config.get('verbose', False))
    return params, config['path_output'], catalog, verbose
