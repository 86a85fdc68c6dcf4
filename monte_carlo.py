import numpy as np
from tqdm import tqdm

from catalog import create_noisy_catalog
from map_maker import ShearMap, make_shear_map, make_healpix_shear_maps
from mass_mapping import CartesianMassMapper, SphericalMassMapper, SnrAccumulator
from sphere import SphericalPixelMap

"""
monte_carlo.py

Monte-Carlo propagation of the shape noise: the galaxy orientations are
randomised N times, each noisy shear map is combined with the denoised shear
of the observed catalog and mapped to a convergence, and the realisations are
accumulated into an SNR map.
"""


def add_shear(denoised_g1, denoised_g2, noise_g1, noise_g2):
    """
    Compose a shear with an ellipticity, (e + g)/(1 + conj(g) e).

    Parameters
    ----------
    denoised_g1, denoised_g2: np.array
        Shear g.
    noise_g1, noise_g2: np.array
        Ellipticity e.

    Returns
    -------
    np.array
        First component of the composed ellipticity, 0 where the denominator
        vanishes.
    np.array
        Second component.
    """
    g = np.asarray(denoised_g1) + 1j*np.asarray(denoised_g2)
    e = np.asarray(noise_g1) + 1j*np.asarray(noise_g2)
    num = e + g
    den = 1 + np.conj(g)*e
    num, den = np.broadcast_arrays(num, den)
    valid = den != 0
    out = np.zeros(num.shape, dtype=np.complex128)
    out[valid] = num[valid]/den[valid]
    return out.real, out.imag


def spawn_generators(n, seed=None):
    """One independent random generator per realisation."""
    return [np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(n)]


class MonteCarloMaps:
    """
    Common driver of the Monte-Carlo pipeline. Subclasses implement the
    binning and the mass mapping of one representation of the maps.

    Parameters
    ----------
    catalog: Catalog
        Observed catalog, never modified.
    n_resamples: int
        Number of noise realisations, 1 if not positive.
    gauss_std: float
        Smoothing of the denoised convergence, skipped below 0.001.
    force_b_mode: bool
        Set the second shear component of each realisation to 0.
    seed: int, optional
        Seed of the noise realisations.
    verbose: bool
        Print progress information.
    """

    def __init__(self, catalog, n_resamples=1, gauss_std=0., force_b_mode=True, seed=None, verbose=False):
        self.catalog = catalog
        self.n_resamples = n_resamples if n_resamples > 0 else 1
        self.gauss_std = gauss_std
        self.force_b_mode = force_b_mode
        self.seed = seed
        self.verbose = verbose

    def get_noisy_shear(self, rng):
        """Shear components binned from one randomised catalog."""
        return self._bin(create_noisy_catalog(self.catalog, rng=rng))

    def get_realisation(self, denoised, rng):
        """
        One noisy shear realisation: the noisy shear composed with the
        denoised shear.
        """
        noise_g1, noise_g2 = self.get_noisy_shear(rng)
        g1, g2 = add_shear(denoised[0], denoised[1], noise_g1, noise_g2)
        if self.force_b_mode:
            g2 = np.zeros_like(g2)
        return g1, g2

    def get_noisy_shear_maps(self):
        """The `n_resamples` noisy shear realisations, as (g1, g2) arrays."""
        denoised = self.get_denoised_shear()
        return [self.get_realisation(denoised, rng) for rng in spawn_generators(self.n_resamples, self.seed)]

    def run(self):
        """
        Run the full pipeline.

        Returns
        -------
        np.array
            SNR accumulated from the convergence of every realisation, with
            one leading axis for the E and B modes.
        """
        denoised = self.get_denoised_shear()
        accumulator = None
        rngs = spawn_generators(self.n_resamples, self.seed)
        if self.verbose:
            print(f"[!] Computing {self.n_resamples} noise realisations...")
        pbar = tqdm(rngs) if self.verbose else rngs
        for rng in pbar:
            g1, g2 = self.get_realisation(denoised, rng)
            kappa = self._mass_map(g1, g2)
            if accumulator is None:
                accumulator = SnrAccumulator(kappa.shape, self.n_resamples)
            accumulator.add(kappa)
        return accumulator.result()


class CartesianMCMaps(MonteCarloMaps):
    """
    Monte-Carlo pipeline on a patch.

    Parameters
    ----------
    bound: CoordinateBound
        Window of the patch and of the redshift bin.
    bins_x, bins_y: int
        Size of the maps.
    pixel_size: float
        Pixel size in degrees.
    mapper: CartesianMassMapper, optional
        Mass mapper to use.
    """

    def __init__(self, catalog, bound, bins_x, bins_y, pixel_size=0., mapper=None, **kwargs):
        super().__init__(catalog, **kwargs)
        self.bound = bound
        self.bins_x = bins_x
        self.bins_y = bins_y
        self.pixel_size = pixel_size
        self.mapper = mapper if mapper is not None else CartesianMassMapper()

    def _bin(self, catalog):
        shear = make_shear_map(catalog, self.bound, self.bins_x, self.bins_y, pixel_size=self.pixel_size)
        return shear.g1, shear.g2

    def _mass_map(self, g1, g2):
        shear = ShearMap.from_arrays([g1, g2, np.zeros_like(g1)], bound=self.bound, pixel_size=self.pixel_size)
        return self.mapper.shear_to_convergence(shear).to_array()

    def get_denoised_shear(self):
        """
        Shear of the observed catalog, denoised by smoothing its convergence
        and corrected for the reduced shear.
        """
        shear = make_shear_map(self.catalog, self.bound, self.bins_x, self.bins_y, pixel_size=self.pixel_size)
        convergence = self.mapper.shear_to_convergence(shear)
        if self.gauss_std > 0.001:
            convergence.apply_gaussian_filter(self.gauss_std, k=0)
        denoised = self.mapper.convergence_to_shear(convergence)
        denoised.correct_reduced_shear(convergence)
        return denoised.g1.copy(), denoised.g2.copy()


class SphericalMCMaps(MonteCarloMaps):
    """
    Monte-Carlo pipeline on the sphere.

    Parameters
    ----------
    nside: int
        Resolution of the maps.
    bound: CoordinateBound, optional
        Restrict the catalog to a sky/redshift window.
    mapper: SphericalMassMapper, optional
        Mass mapper to use.
    """

    def __init__(self, catalog, nside, bound=None, mapper=None, **kwargs):
        super().__init__(catalog, **kwargs)
        self.nside = nside
        self.bound = bound
        self.mapper = mapper if mapper is not None else SphericalMassMapper()

    def _bin(self, catalog):
        g1, g2, _ = make_healpix_shear_maps(catalog, self.nside, bound=self.bound)
        return g1.values, g2.values

    def _mass_map(self, g1, g2):
        kappa_e, kappa_b = self.mapper.shear_to_convergence(g1, g2)
        return np.stack([kappa_e.values, kappa_b.values])

    def get_denoised_shear(self):
        """Spherical counterpart of `CartesianMCMaps.get_denoised_shear`, sigma in arcmin."""
        g1, g2 = self._bin(self.catalog)
        kappa_e, kappa_b = self.mapper.shear_to_convergence(g1, g2)
        if self.gauss_std > 0.001:
            kappa_e = kappa_e.smooth(self.gauss_std)
        g1_d, g2_d = self.mapper.convergence_to_shear(kappa_e, kappa_b)
        g1_d, g2_d = self.mapper.correct_reduced_shear(g1_d, g2_d, kappa_e, kappa_b)
        return g1_d.values, g2_d.values

    def to_maps(self, snr):
        """Split the output of `run` into E and B SphericalPixelMap."""
        return SphericalPixelMap(snr[0]), SphericalPixelMap(snr[1])
