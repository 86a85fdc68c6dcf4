"""
mass_mapping.py

Kaiser-Squires mass mapping on Cartesian patches (2D FFT) and on the sphere
(spin-2 spherical harmonics), with the reduced shear correction and the
accumulation of the Monte-Carlo SNR maps.
"""

import threading

import numpy as np
import healpy as hp
from tqdm import tqdm

from map_maker import ShearMap, ConvergenceMap
from sphere import SphericalPixelMap, ensure_map, get_lmax


def ks_kernel(size_x, size_y):
    """
    Fourier kernel mapping the complex shear g1 + i g2 onto the complex
    convergence kappa_E + i kappa_B. It has unit modulus everywhere but on
    the zero frequency where it is set to 0.

    Parameters
    ----------
    size_x, size_y: int
        Size of the map.

    Returns
    -------
    np.array
        Complex kernel of shape (size_x, size_y).
    """
    l1 = np.fft.fftfreq(size_x)*size_x
    l2 = np.fft.fftfreq(size_y)*size_y
    l1, l2 = np.meshgrid(l1, l2, indexing='ij')
    denom = l1**2 + l2**2
    denom[0, 0] = 1.
    psi = ((l1**2 - l2**2) - 2j*l1*l2)/denom
    psi[0, 0] = 0.
    return psi


class CartesianMassMapper:
    """
    Kaiser-Squires inversion on a flat patch.

    Parameters
    ----------
    rs_gauss_std: float
        Width (pixels) of the Gaussian smoothing of the convergence used in
        the reduced shear correction, ignored if below 0.001.
    rs_threshold: float
        Threshold, in units of the kappa_B standard deviation, applied to the
        smoothed kappa_E in the reduced shear correction.
    verbose: bool
        Print progress information.
    """

    def __init__(self, rs_gauss_std=0., rs_threshold=5., verbose=False):
        self.rs_gauss_std = rs_gauss_std
        self.rs_threshold = rs_threshold
        self.verbose = verbose

    def shear_to_convergence(self, shear_map):
        """
        Forward Kaiser-Squires transform.

        Parameters
        ----------
        shear_map: ShearMap
            Input shear map.

        Returns
        -------
        ConvergenceMap
            E and B mode convergence.
        """
        gamma = shear_map.g1 + 1j*shear_map.g2
        kappa = np.fft.ifft2(np.fft.fft2(gamma)*ks_kernel(*gamma.shape))
        return ConvergenceMap.from_arrays([kappa.real, kappa.imag], bound=shear_map.bound,
                                          n_galaxies=shear_map.n_galaxies, pixel_size=shear_map.pixel_size)

    def convergence_to_shear(self, convergence_map):
        """
        Inverse Kaiser-Squires transform.

        Parameters
        ----------
        convergence_map: ConvergenceMap
            Input convergence map.

        Returns
        -------
        ShearMap
            Shear map, its count channel left empty.
        """
        kappa = convergence_map.kappa_e + 1j*convergence_map.kappa_b
        gamma = np.fft.ifft2(np.fft.fft2(kappa)*np.conj(ks_kernel(*kappa.shape)))
        return ShearMap.from_arrays([gamma.real, gamma.imag, np.zeros(gamma.shape)], bound=convergence_map.bound,
                                    n_galaxies=convergence_map.n_galaxies, pixel_size=convergence_map.pixel_size)

    def correct_reduced_shear(self, shear_map, convergence_map, use_kappa_b=False):
        """Single reduced shear step on a copy of `shear_map`."""
        corrected = shear_map.copy()
        corrected.correct_reduced_shear(convergence_map, use_kappa_b=use_kappa_b)
        return corrected

    def reduced_shear_correction(self, shear_map, n_iter):
        """
        Iterative reduced shear correction. Each of the `n_iter` iterations
        computes the convergence of the current shear estimate, derives the
        smoothed and thresholded convergence from it and rescales the shear
        by (1 - kappa). There is no convergence test.

        Parameters
        ----------
        shear_map: ShearMap
            Observed (reduced) shear.
        n_iter: int
            Number of iterations.

        Returns
        -------
        ShearMap
            Corrected shear after the last iteration.
        ConvergenceMap
            Convergence computed during the last iteration (the plain
            Kaiser-Squires convergence if n_iter is 0).
        """
        shear = shear_map.copy()
        convergence = self.shear_to_convergence(shear)
        if self.verbose:
            print(f"[!] Reduced shear correction with {n_iter} iterations...")
        pbar = tqdm(range(n_iter)) if self.verbose else range(n_iter)
        for _ in pbar:
            convergence = self.shear_to_convergence(shear)
            tilde = convergence.get_tilde_convergence(self.rs_gauss_std, self.rs_threshold)
            shear.correct_reduced_shear(tilde)
        return shear, convergence


class SphericalMassMapper:
    """
    Kaiser-Squires inversion on the sphere. Maps are handled in RING
    ordering; NESTED maps given as SphericalPixelMap(values, nest=True) are
    reordered on construction.

    Parameters
    ----------
    n_iter: int
        Number of iterations of the harmonic analysis.
    verbose: bool
        Print progress information.
    """

    def __init__(self, n_iter=3, verbose=False):
        self.n_iter = n_iter
        self.verbose = verbose

    @staticmethod
    def shear_alm_to_convergence_alm(alm_e, alm_b, lmax):
        """
        Rescale spin-2 E/B coefficients into convergence coefficients by
        sqrt((l+1)l/((l+2)(l-1))). The l=0 and l=1 terms are set to 0.
        """
        ell = np.arange(lmax + 1, dtype=np.float64)
        factor = np.zeros(lmax + 1)
        valid = ell >= 2
        factor[valid] = np.sqrt((ell[valid] + 1)*ell[valid]/((ell[valid] + 2)*(ell[valid] - 1)))
        return hp.almxfl(alm_e, factor), hp.almxfl(alm_b, factor)

    @staticmethod
    def convergence_alm_to_shear_alm(alm_e, alm_b, lmax):
        """
        Inverse rescaling, sqrt((l+2)(l-1)/((l+1)l)). The monopole is set to 0
        and the dipole vanishes with the factor.
        """
        ell = np.arange(lmax + 1, dtype=np.float64)
        factor = np.zeros(lmax + 1)
        valid = ell >= 1
        factor[valid] = np.sqrt((ell[valid] + 2)*(ell[valid] - 1)/((ell[valid] + 1)*ell[valid]))
        return hp.almxfl(alm_e, factor), hp.almxfl(alm_b, factor)

    def shear_to_convergence(self, g1, g2):
        """
        Spherical Kaiser-Squires transform.

        Parameters
        ----------
        g1, g2: SphericalPixelMap or np.array
            Shear components.

        Returns
        -------
        SphericalPixelMap
            E mode convergence.
        SphericalPixelMap
            B mode convergence.
        """
        g1 = ensure_map(g1)
        g2 = ensure_map(g2)
        assert g1.nside == g2.nside, "Shear components must have the same resolution."
        nside = g1.nside
        lmax = get_lmax(nside)
        _, alm_e, alm_b = hp.map2alm([np.zeros(g1.npix), g1.values, g2.values], lmax=lmax, pol=True, iter=self.n_iter)
        alm_e, alm_b = self.shear_alm_to_convergence_alm(alm_e, alm_b, lmax)
        kappa_e = SphericalPixelMap.synthesize(alm_e, nside, lmax=lmax)
        kappa_b = SphericalPixelMap.synthesize(alm_b, nside, lmax=lmax)
        return kappa_e, kappa_b

    def convergence_to_shear(self, kappa_e, kappa_b):
        """
        Inverse spherical Kaiser-Squires transform.

        Parameters
        ----------
        kappa_e, kappa_b: SphericalPixelMap or np.array
            E and B mode convergence.

        Returns
        -------
        SphericalPixelMap
            First shear component.
        SphericalPixelMap
            Second shear component.
        """
        kappa_e = ensure_map(kappa_e)
        kappa_b = ensure_map(kappa_b)
        assert kappa_e.nside == kappa_b.nside, "Convergence maps must have the same resolution."
        nside = kappa_e.nside
        lmax = get_lmax(nside)
        alm_e = kappa_e.analyze(lmax=lmax, n_iter=self.n_iter)
        alm_b = kappa_b.analyze(lmax=lmax, n_iter=self.n_iter)
        alm_e, alm_b = self.convergence_alm_to_shear_alm(alm_e, alm_b, lmax)
        _, g1, g2 = hp.alm2map([np.zeros_like(alm_e), alm_e, alm_b], nside, lmax=lmax, pol=True)
        return SphericalPixelMap(g1), SphericalPixelMap(g2)

    def correct_reduced_shear(self, g1, g2, kappa_e, kappa_b):
        """
        One reduced shear correction step, g1*(1 - kappa_E) and
        g2*(1 - kappa_B). Iterating is left to the caller.
        """
        g1 = ensure_map(g1)
        g2 = ensure_map(g2)
        kappa_e = ensure_map(kappa_e)
        kappa_b = ensure_map(kappa_b)
        return (SphericalPixelMap(g1.values*(1 - kappa_e.values)),
                SphericalPixelMap(g2.values*(1 - kappa_b.values)))


def kaiser_squire(gamma_map):
    """
    Perform the Kaiser-Squire mass mapping of a complex healpy shear map.

    Parameters
    ----------
    gamma_map: np.array
        Complex shear map g1 + i g2 in RING ordering.

    Returns
    -------
    np.array
        E-mode convergence map.
    np.array
        B-mode convergence map.
    """
    kappa_e, kappa_b = SphericalMassMapper().shear_to_convergence(gamma_map.real, gamma_map.imag)
    return kappa_e.values, kappa_b.values


def get_mass_mapper(param_type, params=None, verbose=False):
    """
    Mass mapper matching a parameter type, "Conv_Patch" (Cartesian) or
    "Conv_Sphere" (spherical).
    """
    if param_type == "Conv_Patch":
        if params is None:
            return CartesianMassMapper(verbose=verbose)
        return CartesianMassMapper(rs_gauss_std=params.rs_gauss_std, rs_threshold=params.rs_threshold, verbose=verbose)
    if param_type == "Conv_Sphere":
        return SphericalMassMapper(verbose=verbose)
    raise ValueError(f"Unknown parameter type {param_type}.")


def accumulate_snr(sample, snr, n_total, is_last):
    """
    Add the square of a convergence realisation to the running SNR array.
    Nothing is normalised until `is_last`, when the sum is divided by
    `n_total` and square-rooted.

    Parameters
    ----------
    sample: np.array
        Convergence realisation.
    snr: np.array
        Running sum, updated in place.
    n_total: int
        Total number of realisations.
    is_last: bool
        True for the last realisation.

    Returns
    -------
    np.array
        The updated `snr` array.
    """
    snr += np.asarray(sample)**2
    if is_last:
        snr /= n_total
        np.sqrt(snr, out=snr)
    return snr


class SnrAccumulator:
    """
    Thread safe accumulation of `n_total` realisations. The normalisation is
    applied exactly once, when the last expected contribution arrives,
    whatever the order in which the realisations complete.

    Parameters
    ----------
    shape: tuple
        Shape of the accumulated arrays.
    n_total: int
        Number of expected realisations.
    """

    def __init__(self, shape, n_total):
        assert n_total >= 1, "At least one realisation is needed."
        self.snr = np.zeros(shape)
        self.n_total = n_total
        self.count = 0
        self._lock = threading.Lock()

    def add(self, sample):
        with self._lock:
            if self.count >= self.n_total:
                raise RuntimeError(f"Already received the {self.n_total} expected realisations.")
            self.count += 1
            accumulate_snr(sample, self.snr, self.n_total, self.count == self.n_total)

    @property
    def is_complete(self):
        return self.count == self.n_total

    def result(self):
        assert self.is_complete, f"Only {self.count} out of {self.n_total} realisations accumulated."
        return self.snr
