import numpy as np
import healpy as hp
from scipy.fft import dctn, idctn
from scipy.special import erfc
from tqdm import tqdm

from map_maker import ShearMap, ConvergenceMap
from mass_mapping import CartesianMassMapper, SphericalMassMapper
from peak_count import transform_bspline
from sphere import SphericalPixelMap, ensure_map, get_lmax
from utils import get_b3_filter

"""
inpainting.py

Inpainting of the convergence maps in the regions without galaxies, on the
sphere and on flat patches. The algorithm alternates a hard thresholding of
the harmonic (sphere) or DCT (patch) coefficients, with a threshold
decreasing along an erfc schedule, and the reinsertion of the observed shear
outside of the gaps.
"""


def threshold_schedule(iteration, n_iter, max_threshold, min_threshold=0.):
    """Threshold of a given iteration, erfc decay down to the minimum at the last one."""
    if iteration == n_iter - 1:
        return min_threshold
    return min_threshold + (max_threshold - min_threshold)*erfc(2.8*iteration/n_iter)


class SphericalInpainting:
    """
    Parameters
    ----------
    g1, g2: SphericalPixelMap or np.array
        Observed shear. Pixels where both components are exactly 0 are the
        gaps to fill.
    kappa_e, kappa_b: SphericalPixelMap or np.array
        Starting convergence, usually the Kaiser-Squires one.
    n_iter: int
        Number of iterations.
    n_scales: int, optional
        Number of wavelet scales of the variance constraint. log2(nside) is
        used when unset or below 2.
    equal_var_per_scale: bool
        Force the variance inside the gaps to match the variance outside, scale
        by scale.
    force_b_mode: bool
        Set the B mode to 0 inside the gaps.
    verbose: bool
        Print progress information.
    """

    def __init__(self, g1, g2, kappa_e, kappa_b, n_iter=100, n_scales=None, equal_var_per_scale=False,
                 force_b_mode=True, verbose=False):
        self.g1 = ensure_map(g1)
        self.g2 = ensure_map(g2)
        self.kappa_e = ensure_map(kappa_e)
        self.kappa_b = ensure_map(kappa_b)
        self.nside = self.g1.nside
        self.lmax = get_lmax(self.nside)
        self.n_iter = n_iter
        self.equal_var_per_scale = equal_var_per_scale
        self.force_b_mode = force_b_mode
        self.verbose = verbose
        self.mapper = SphericalMassMapper()

        if n_scales is None or n_scales < 2:
            n_scales = int(round(np.log10(self.nside)/np.log10(2.)))
        self.n_scales = n_scales

        gaps = (np.abs(self.g1.values) == 0.) & (np.abs(self.g2.values) == 0.)
        self.mask = np.where(gaps, 0., 1.)
        if verbose:
            print(f"[!] lmax={self.lmax}, {self.n_scales} wavelet scales.")
            print(f"[!] {np.count_nonzero(gaps)} empty pixels over {len(self.mask)}.")

    def has_gaps(self):
        return bool(np.any(self.mask == 0))

    def corrected_shear(self, kappa_e, kappa_b):
        """
        Shear of the current convergence estimate in the gaps and observed
        shear everywhere else. With `force_b_mode` the B mode is first set to
        0 in the gaps.
        """
        kappa_e = ensure_map(kappa_e)
        kappa_b = ensure_map(kappa_b).copy()
        if self.force_b_mode:
            kappa_b.values[self.mask == 0] = 0.
        g1_rec, g2_rec = self.mapper.convergence_to_shear(kappa_e, kappa_b)
        g1 = g1_rec.values*(1 - self.mask) + self.g1.values*self.mask
        g2 = g2_rec.values*(1 - self.mask) + self.g2.values*self.mask
        return SphericalPixelMap(g1), SphericalPixelMap(g2)

    def mask_inversion(self, kappa_e, kappa_b):
        """Convergence of `corrected_shear`."""
        g1, g2 = self.corrected_shear(kappa_e, kappa_b)
        return self.mapper.shear_to_convergence(g1, g2)

    def apply_constraints_on_wavelets(self, band):
        """
        Rescale the values of a wavelet band inside the gaps so that their
        standard deviation does not exceed the one outside. Needs more than 9
        pixels on both sides.
        """
        inside = band[self.mask == 0]
        outside = band[self.mask != 0]
        if len(inside) <= 9 or len(outside) <= 9:
            return band
        mask_sigma = np.std(inside)
        im_sigma = np.std(outside)
        if mask_sigma > im_sigma and mask_sigma > 0:
            band = band.copy()
            band[self.mask == 0] *= im_sigma/mask_sigma
        return band

    def perform_wavelet(self, kappa):
        """
        B-spline wavelet decomposition of a map, variance constraint on each
        band but the coarsest, and reconstruction by summing the bands.
        """
        kappa = ensure_map(kappa)
        alm = kappa.analyze(lmax=self.lmax)
        result = kappa.values.copy()
        output = np.zeros(kappa.npix)
        for b in range(self.n_scales):
            if b == self.n_scales - 1:
                band = result
            else:
                smooth = hp.alm2map(hp.almxfl(alm, get_b3_filter(self.lmax, b)), self.nside, lmax=self.lmax)
                band = self.apply_constraints_on_wavelets(result - smooth)
                result = smooth
            output += band
        return SphericalPixelMap(output)

    def threshold_schedule(self, iteration, max_threshold, min_threshold=0.):
        return threshold_schedule(iteration, self.n_iter, max_threshold, min_threshold)

    def perform_inpainting(self):
        """
        Run the `n_iter` iterations of the inpainting.

        Returns
        -------
        SphericalPixelMap
            Inpainted E mode convergence.
        SphericalPixelMap
            Inpainted B mode convergence.
        """
        kappa_e = self.kappa_e.copy()
        kappa_b = self.kappa_b.copy()
        max_threshold = 0.
        min_threshold = 0.
        pbar = tqdm(range(self.n_iter)) if self.verbose else range(self.n_iter)
        for iteration in pbar:
            alm_e = kappa_e.analyze(lmax=self.lmax)
            alm_b = kappa_b.analyze(lmax=self.lmax)
            if iteration == 0:
                max_threshold = max(np.abs(alm_e.real).max(), np.abs(alm_e.imag).max())
            threshold = self.threshold_schedule(iteration, max_threshold, min_threshold)

            # alm index 0 is (l=0, m=0) in healpy ordering
            monopole_e, monopole_b = alm_e[0], alm_b[0]
            alm_e[np.abs(alm_e) < threshold] = 0.
            alm_b[np.abs(alm_b) < threshold] = 0.
            alm_e[0], alm_b[0] = monopole_e, monopole_b

            kappa_e = SphericalPixelMap.synthesize(alm_e, self.nside, lmax=self.lmax)
            kappa_b = SphericalPixelMap.synthesize(alm_b, self.nside, lmax=self.lmax)

            if self.equal_var_per_scale:
                kappa_e = self.perform_wavelet(kappa_e)

            kappa_e, kappa_b = self.mask_inversion(kappa_e, kappa_b)
        return kappa_e, kappa_b


class CartesianInpainting:
    """
    Inpainting of a flat patch. The sparsity prior is a hard thresholding of
    the orthonormal DCT coefficients of kappa_E and kappa_B.

    Parameters
    ----------
    shear_map: ShearMap
        Observed shear. Pixels where |g1| and |g2| are both below 1e-10 are
        the gaps to fill, the zero padded borders included.
    convergence_map: ConvergenceMap
        Starting convergence, usually the Kaiser-Squires one.
    n_iter: int
        Number of iterations.
    n_scales: int, optional
        Number of starlet scales of the variance constraint, int(log2(size_x)) - 2
        when unset or 0.
    equal_var_per_scale: bool
        Force the variance inside the gaps to match the variance outside, scale
        by scale.
    force_b_mode: bool
        Set the B mode to 0 inside the gaps.
    max_threshold, min_threshold: float
        Bounds of the threshold schedule.
    verbose: bool
        Print progress information.
    """

    def __init__(self, shear_map, convergence_map, n_iter=100, n_scales=None, equal_var_per_scale=False,
                 force_b_mode=True, max_threshold=0.5, min_threshold=0., verbose=False):
        self.shear = shear_map
        self.convergence = convergence_map
        self.n_iter = n_iter
        self.equal_var_per_scale = equal_var_per_scale
        self.force_b_mode = force_b_mode
        self.max_threshold = max_threshold
        self.min_threshold = min_threshold
        self.verbose = verbose
        self.mapper = CartesianMassMapper()

        if not n_scales:
            n_scales = int(np.log2(shear_map.size_x)) - 2
        self.n_scales = n_scales

        gaps = (np.abs(shear_map.g1) < 1e-10) & (np.abs(shear_map.g2) < 1e-10)
        self.mask = np.where(gaps, 0., 1.)
        if verbose:
            print(f"[!] {self.n_scales} starlet scales, {np.count_nonzero(gaps)} empty pixels over {self.mask.size}.")

    def has_gaps(self):
        return bool(np.any(self.mask == 0))

    def threshold_schedule(self, iteration, max_threshold, min_threshold=0.):
        return threshold_schedule(iteration, self.n_iter, max_threshold, min_threshold)

    def apply_constraints_on_wavelets(self, band):
        """
        Rescale a starlet band inside the gaps when its standard deviation
        there is significantly above the one outside. Needs more than 9
        pixels on both sides.
        """
        inside = band[self.mask == 0]
        outside = band[self.mask != 0]
        if len(inside) <= 9 or len(outside) <= 9:
            return band
        mask_sigma = np.std(inside)
        im_sigma = np.std(outside)
        if mask_sigma > 0 and mask_sigma > im_sigma*(1 + np.sqrt(np.sqrt(2./(len(inside) + 1)))):
            band = band.copy()
            band[self.mask == 0] *= im_sigma/mask_sigma
        return band

    def perform_wavelet(self, kappa):
        """Starlet decomposition, constraint on every band but the coarsest and sum of the bands."""
        bands = transform_bspline(kappa, self.n_scales)
        output = bands[-1].copy()
        for band in bands[:-1]:
            output += self.apply_constraints_on_wavelets(band)
        return output

    def dct_threshold(self, kappa, threshold):
        """Hard thresholding of the DCT coefficients, the constant term is kept."""
        coeffs = dctn(kappa, norm='ortho')
        constant = coeffs[0, 0]
        coeffs[np.abs(coeffs) < threshold] = 0.
        coeffs[0, 0] = constant
        return idctn(coeffs, norm='ortho')

    def corrected_shear(self, convergence):
        """
        Shear of `convergence` in the gaps and observed shear everywhere else.
        With `force_b_mode` the B mode is first set to 0 in the gaps.
        """
        convergence = convergence.copy()
        if self.force_b_mode:
            convergence[1].values[self.mask == 0] = 0.
        rec = self.mapper.convergence_to_shear(convergence)
        g1 = rec.g1*(1 - self.mask) + self.shear.g1*self.mask
        g2 = rec.g2*(1 - self.mask) + self.shear.g2*self.mask
        return ShearMap.from_arrays([g1, g2], **self.shear._metadata())

    def mask_inversion(self, convergence):
        """Convergence of `corrected_shear`."""
        return self.mapper.shear_to_convergence(self.corrected_shear(convergence))

    def perform_inpainting(self):
        """
        Run the `n_iter` iterations of the inpainting.

        Returns
        -------
        ConvergenceMap
            Inpainted convergence.
        """
        convergence = self.convergence.copy()
        pbar = tqdm(range(self.n_iter)) if self.verbose else range(self.n_iter)
        for iteration in pbar:
            threshold = self.threshold_schedule(iteration, self.max_threshold, self.min_threshold)
            kappa_e = self.dct_threshold(convergence.kappa_e, threshold)
            kappa_b = self.dct_threshold(convergence.kappa_b, threshold)
            if self.equal_var_per_scale:
                kappa_e = self.perform_wavelet(kappa_e)
            convergence = ConvergenceMap.from_arrays([kappa_e, kappa_b], **convergence._metadata())
            convergence = self.mask_inversion(convergence)
        return convergence
