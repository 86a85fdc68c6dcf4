import os
import argparse
import time
from dataclasses import dataclass

import numpy as np
import healpy as hp
import matplotlib.pyplot as plt

from catalog import load_catalog, split_redshift_bins
from inpainting import CartesianInpainting, SphericalInpainting
from map_io import write_map, write_healpix_map, write_peak_catalog
from map_maker import ShearMap, ConvergenceMap, make_shear_map, make_healpix_shear_maps
from mass_mapping import CartesianMassMapper, SphericalMassMapper
from monte_carlo import CartesianMCMaps, SphericalMCMaps
from params import read_run_config
from peak_count import CartesianPeakCount, SphericalPeakCount, PeakCatalog
from utils import CoordinateBound

"""
run.py

Script to compute the convergence maps, SNR maps and peak catalogs of a galaxy
catalog, on patches of the sky or on the full sphere.
"""


@dataclass(frozen=True)
class MappingContext:
    """One unit of work: a patch (or the full sky) and a redshift bin."""
    patch_index: int
    zbin_index: int
    bound: CoordinateBound
    catalog: object
    patch: object = None

    @property
    def tag(self):
        if self.patch is None:
            return f"zbin{self.zbin_index:02d}"
        return f"patch{self.patch_index:03d}_zbin{self.zbin_index:02d}"


def full_sky_bound(z_min, z_max):
    return CoordinateBound(0., np.nextafter(360., np.inf), -90., np.nextafter(90., np.inf), z_min, z_max)


def get_redshift_windows(catalog, params, verbose=False):
    """
    (z_min, z_max, catalog, closed) for each redshift bin. The configured
    bins are used as they are; a single configured range with nbins > 1 is
    split into nbins bins.
    """
    if params.nbins > 1 and len(params.z_min) == 1:
        bins = split_redshift_bins(catalog, params.z_min[0], params.z_max[0], params.nbins,
                                   balanced=params.balanced_bins, verbose=verbose)
        return [(zbin.z_min, zbin.z_max, zbin.catalog, True) for zbin in bins]
    return [(z_min, z_max, catalog, False) for z_min, z_max in params.redshift_bounds()]


def build_contexts(catalog, params, verbose=False):
    """Every (patch, redshift bin) unit of work of a run."""
    contexts = []
    for j, (z_min, z_max, sub_catalog, closed) in enumerate(get_redshift_windows(catalog, params, verbose)):
        z_upper = np.nextafter(z_max, np.inf) if closed else z_max
        if params.is_spherical:
            contexts.append(MappingContext(0, j, full_sky_bound(z_min, z_upper), sub_catalog))
            continue
        for i, patch in enumerate(params.patches):
            contexts.append(MappingContext(i, j, patch.bound(z_min, z_upper), sub_catalog, patch))
    return contexts


def plot_mollview(map, title, path_output, cmap):
    hp.mollview(map, title=title, cmap=cmap)
    plt.savefig(path_output)
    plt.close()


def plot_patch(values, bound, title, path_output, cmap):
    plt.figure()
    plt.imshow(values.T, origin='lower', cmap=cmap,
               extent=[bound.ra_min, bound.ra_max, bound.dec_min, bound.dec_max])
    plt.xlabel('RA [deg]')
    plt.ylabel('Dec [deg]')
    plt.title(title)
    plt.colorbar()
    plt.savefig(path_output)
    plt.close()


def process_patch(context, params, path_output, verbose=False):
    """
    Mass mapping of one patch and redshift bin.

    Returns
    -------
    dict or None
        Names of the written products, None if no galaxy falls in the window.
    """
    patch = context.patch
    n_bins = patch.n_bins
    cards = params.header_cards()
    shear = make_shear_map(context.catalog, context.bound, n_bins, n_bins, pixel_size=patch.pixel_size)
    if shear.n_galaxies == 0:
        if verbose:
            print(f"[!] No galaxies in {context.tag}, skipping.")
        return None
    if verbose:
        print(f"[!] {shear.n_galaxies} galaxies in {context.tag}.")

    outputs = {}
    mapper = CartesianMassMapper(rs_gauss_std=params.rs_gauss_std, rs_threshold=params.rs_threshold, verbose=verbose)
    #The aperture mass peaks are computed on the unpadded shear
    padded = shear.add_borders() if params.add_borders else shear
    corrected, convergence = mapper.reduced_shear_correction(padded, params.n_reduced_shear_iterations)

    method = "KS"
    if params.n_inpaint > 0:
        method = "KSPlus"
        inpainting = CartesianInpainting(corrected, convergence, n_iter=params.n_inpaint, n_scales=params.n_inp_scales,
                                         equal_var_per_scale=params.equal_var_per_scale,
                                         force_b_mode=params.force_b_mode, verbose=verbose)
        if inpainting.has_gaps():
            if verbose:
                print("[!] Inpainting the empty pixels...")
            convergence = inpainting.perform_inpainting()
    if params.add_borders:
        convergence = convergence.remove_borders()

    outputs['convergence'] = os.path.join(path_output, f"ConvergenceMap{method}_{context.tag}.fits")
    write_map(outputs['convergence'], convergence, 'KAPPA_PATCH', cards)

    if params.gauss_std > 0.001:
        denoised = convergence.copy()
        denoised.apply_gaussian_filter(params.gauss_std, k=0)
        denoised.set_kappa_b_to_zero()
        outputs['denoised'] = os.path.join(path_output, f"DenoisedConvergenceMap{method}_{context.tag}.fits")
        write_map(outputs['denoised'], denoised, 'KAPPA_PATCH', cards)

    if params.n_resamples > 0:
        mc = CartesianMCMaps(context.catalog, context.bound, n_bins, n_bins, pixel_size=patch.pixel_size,
                             mapper=mapper, n_resamples=params.n_resamples, gauss_std=params.gauss_std,
                             force_b_mode=params.force_b_mode, seed=params.seed, verbose=verbose)
        snr = ConvergenceMap.from_arrays(list(mc.run()), bound=context.bound,
                                         n_galaxies=shear.n_galaxies, pixel_size=patch.pixel_size)
        outputs['snr'] = os.path.join(path_output, f"SNRConvergenceMap_{context.tag}.fits")
        write_map(outputs['snr'], snr, 'KAPPA_SNR', cards)

    peak_count = CartesianPeakCount(context.bound, context.bound.z_min, context.bound.z_max)
    if params.n_peak_scales >= 2:
        peak_count.find_peaks_from_convergence(convergence, params.n_peak_scales)
    else:
        peak_count.find_peaks_at_theta(convergence[0], 0.)
    if params.aperture_radii:
        mc = CartesianMCMaps(context.catalog, context.bound, n_bins, n_bins, pixel_size=patch.pixel_size,
                             seed=params.seed)
        noise_g1, noise_g2 = mc.get_noisy_shear(np.random.default_rng(params.seed))
        noisy_shear = ShearMap.from_arrays([noise_g1, noise_g2], bound=context.bound)
        peak_count.find_peaks_from_shear(shear, noisy_shear, params.aperture_radii)
    outputs['peaks'] = os.path.join(path_output, f"PeakCatalog_{context.tag}.fits")
    write_peak_catalog(outputs['peaks'], peak_count.catalog, cards)

    if params.validation_plot:
        plot_patch(convergence.kappa_e, context.bound, r'$\kappa_E$',
                   os.path.join(path_output, 'Plots', f"kappa_E_{context.tag}.png"), 'inferno')
    return outputs


def process_sphere(context, params, path_output, verbose=False):
    """
    Mass mapping of one redshift bin on the full sphere.

    Returns
    -------
    dict or None
        Names of the written products, None if no galaxy falls in the window.
    """
    cards = params.header_cards()
    g1, g2, n_gal = make_healpix_shear_maps(context.catalog, params.nside, bound=context.bound)
    if n_gal.values.sum() == 0:
        if verbose:
            print(f"[!] No galaxies in {context.tag}, skipping.")
        return None

    outputs = {}
    mapper = SphericalMassMapper(verbose=verbose)
    outputs['shear'] = os.path.join(path_output, f"ShearMap_{context.tag}.fits")
    write_healpix_map(outputs['shear'], g1, 'GAMMA1', cards)
    write_healpix_map(outputs['shear'], g2, 'GAMMA2')
    write_healpix_map(outputs['shear'], n_gal, 'NGAL')

    #The correction is applied one step at a time
    for _ in range(params.n_reduced_shear_iterations):
        kappa_e, kappa_b = mapper.shear_to_convergence(g1, g2)
        g1, g2 = mapper.correct_reduced_shear(g1, g2, kappa_e, kappa_b)
    kappa_e, kappa_b = mapper.shear_to_convergence(g1, g2)

    if params.n_inpaint > 0:
        inpainting = SphericalInpainting(g1, g2, kappa_e, kappa_b, n_iter=params.n_inpaint,
                                         n_scales=params.n_inp_scales, equal_var_per_scale=params.equal_var_per_scale,
                                         force_b_mode=params.force_b_mode, verbose=verbose)
        if inpainting.has_gaps():
            if verbose:
                print("[!] Inpainting the empty pixels...")
            kappa_e, kappa_b = inpainting.perform_inpainting()

    outputs['convergence'] = os.path.join(path_output, f"ConvergenceMap_{context.tag}.fits")
    write_healpix_map(outputs['convergence'], kappa_e, 'KAPPA_E', cards)
    write_healpix_map(outputs['convergence'], kappa_b, 'KAPPA_B')

    if params.gauss_std > 0.001:
        outputs['denoised'] = os.path.join(path_output, f"DenoisedConvergenceMap_{context.tag}.fits")
        write_healpix_map(outputs['denoised'], kappa_e.smooth(params.gauss_std), 'KAPPA_E', cards)

    if params.n_resamples > 0:
        mc = SphericalMCMaps(context.catalog, params.nside, bound=context.bound, mapper=mapper,
                             n_resamples=params.n_resamples, gauss_std=params.gauss_std,
                             force_b_mode=params.force_b_mode, seed=params.seed, verbose=verbose)
        snr_e, snr_b = mc.to_maps(mc.run())
        outputs['snr'] = os.path.join(path_output, f"SNRConvergenceMap_{context.tag}.fits")
        write_healpix_map(outputs['snr'], snr_e, 'SNR_E', cards)
        write_healpix_map(outputs['snr'], snr_b, 'SNR_B')

    if params.n_peak_scales >= 2:
        peak_count = SphericalPeakCount(kappa_e, params.n_peak_scales, context.bound.z_min, context.bound.z_max)
        peaks = peak_count.find_peaks()
    else:
        peaks = PeakCatalog()
    outputs['peaks'] = os.path.join(path_output, f"PeakCatalog_{context.tag}.fits")
    write_peak_catalog(outputs['peaks'], peaks, cards)

    if params.validation_plot:
        plot_mollview(kappa_e.values, r'$\kappa_E$', os.path.join(path_output, 'Plots', f"kappa_E_{context.tag}.png"),
                      'inferno')
    return outputs


def run(params, catalog, path_output, verbose=False):
    """
    Process every patch and redshift bin of a run.

    Returns
    -------
    list
        Products of each unit of work, None for the skipped ones.
    """
    if not os.path.exists(path_output):
        if verbose:
            print(f"[!] Creating the output directory {path_output}.")
        os.makedirs(path_output)
    if params.validation_plot and not os.path.exists(os.path.join(path_output, 'Plots')):
        os.makedirs(os.path.join(path_output, 'Plots'))

    process = process_sphere if params.is_spherical else process_patch
    results = []
    for context in build_contexts(catalog, params, verbose):
        start_ = time.time()
        if verbose:
            print(f"[!] Processing {context.tag}...")
        results.append(process(context, params, path_output, verbose))
        if verbose:
            print(f"[!] {context.tag} done in {time.time()-start_:.2f} s.")
    return results


parser = argparse.ArgumentParser()
parser.add_argument("-c", "--config", help="Path to the configuration file.", type=str, default='config.yaml')

if __name__ == '__main__':
    print("[!] Starting the mass mapping...")
    start = time.time()

    args = parser.parse_args()
    params, path_output, catalog_config, verbose = read_run_config(args.config)

    if verbose:
        print("[!] Load the galaxy catalog...")
    catalog = load_catalog(catalog_config['path'], workdir=catalog_config.get('workdir'), verbose=verbose)

    run(params, catalog, path_output, verbose=verbose)
    print(f"[!] Mass mapping finished in {time.time()-start:.2f} s.")
