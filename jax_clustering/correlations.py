"""
FFT-based clustering estimators.

Two-point statistics use the local plane-parallel expansion with the line of
sight at one end of the pair: a Legendre polynomial of ``khat . los`` is
expanded into monomials ``khat^abc los^abc``, each ``los^abc`` multiplies the
particle weights before painting, and each painted mesh is transformed
separately.  Periodic boxes use the global line of sight along ``z``.

Three-point statistics are measured in the tri-polar spherical harmonic basis
``(ell1, ell2, ELL)`` with the line of sight attached to the third point.
Shot-noise contributions to three-point statistics are not subtracted.
"""
import functools
import logging
from collections import namedtuple
from dataclasses import dataclass
from math import comb

import jax
import jax.numpy as jnp
import numpy as np
import pandas as pd
from scipy.special import sph_harm_y
from sympy.physics.wigner import wigner_3j

from .catalogue import ParticleCatalogue
from .config import Form, parse_choice
from .errors import InvalidConfigurationError
from .los import los_distances
from .mas import MeshGeometry, assign_weights_to_mesh, fft, ifft

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

_Source = namedtuple("_Source", ["catalogue", "los", "scale"])


# ----------------------------------------------------------------------------
# Measurement records
# ----------------------------------------------------------------------------

@dataclass
class PowspecMeasurements:
    kbin: np.ndarray
    keff: np.ndarray
    nmodes: np.ndarray
    pk_raw: np.ndarray
    pk_shot: np.ndarray

    def to_table(self):
        return pd.DataFrame({
            "k_cen": self.kbin,
            "k_eff": self.keff,
            "nmodes": self.nmodes,
            "Re{pk_raw}": np.real(self.pk_raw),
            "Im{pk_raw}": np.imag(self.pk_raw),
            "Re{pk_shot}": np.real(self.pk_shot),
            "Im{pk_shot}": np.imag(self.pk_shot),
        })


@dataclass
class CorrfuncMeasurements:
    rbin: np.ndarray
    reff: np.ndarray
    npairs: np.ndarray
    xi: np.ndarray

    def to_table(self):
        return pd.DataFrame({
            "r_cen": self.rbin,
            "r_eff": self.reff,
            "npairs": self.npairs,
            "Re{xi}": np.real(self.xi),
            "Im{xi}": np.imag(self.xi),
        })


@dataclass
class BispecMeasurements:
    k1_bin: np.ndarray
    k1_eff: np.ndarray
    nmodes_1: np.ndarray
    k2_bin: np.ndarray
    k2_eff: np.ndarray
    nmodes_2: np.ndarray
    bk_raw: np.ndarray

    def to_table(self):
        return pd.DataFrame({
            "k1_cen": self.k1_bin,
            "k1_eff": self.k1_eff,
            "nmodes_1": self.nmodes_1,
            "k2_cen": self.k2_bin,
            "k2_eff": self.k2_eff,
            "nmodes_2": self.nmodes_2,
            "Re{bk_raw}": np.real(self.bk_raw),
            "Im{bk_raw}": np.imag(self.bk_raw),
        })


@dataclass
class ThreePCFMeasurements:
    r1_bin: np.ndarray
    r1_eff: np.ndarray
    npairs_1: np.ndarray
    r2_bin: np.ndarray
    r2_eff: np.ndarray
    npairs_2: np.ndarray
    zeta_raw: np.ndarray

    def to_table(self):
        return pd.DataFrame({
            "r1_cen": self.r1_bin,
            "r1_eff": self.r1_eff,
            "npairs_1": self.npairs_1,
            "r2_cen": self.r2_bin,
            "r2_eff": self.r2_eff,
            "npairs_2": self.npairs_2,
            "Re{zeta_raw}": np.real(self.zeta_raw),
            "Im{zeta_raw}": np.imag(self.zeta_raw),
        })


# ----------------------------------------------------------------------------
# Angular functions
# ----------------------------------------------------------------------------

@functools.lru_cache(maxsize=None)
def legendre_monomials(ell):
    """
    Expansion ``L_ell(u . v) = sum_abc coeff u_x^a u_y^b u_z^c v_x^a v_y^b v_z^c``.

    Returns a tuple of ``((a, b, c), coeff)``.
    """
    poly = np.polynomial.legendre.leg2poly([0.] * ell + [1.])
    terms = []
    for n, coeff_n in enumerate(poly):
        if coeff_n == 0.:
            continue
        for a in range(n + 1):
            for b in range(n - a + 1):
                terms.append(((a, b, n - a - b), float(coeff_n) * comb(n, a) * comb(n - a, b)))
    return tuple(terms)


def legendre(ell, mu):
    poly = np.polynomial.legendre.leg2poly([0.] * ell + [1.])
    return sum(float(coeff) * mu**n for n, coeff in enumerate(poly) if coeff != 0.)


def _monomial(vectors, powers):
    a, b, c = powers
    return vectors[0]**a * vectors[1]**b * vectors[2]**c


def _unit_components(components):
    norm = jnp.sqrt(sum(component**2 for component in components))
    norm = jnp.where(norm == 0., 1., norm)
    return [component / norm for component in components]


def reduced_spherical_harmonic(ell, m, x, y, z):
    """``y_lm = sqrt(4 pi / (2 ell + 1)) Y_lm`` in the direction of ``(x, y, z)``."""
    x, y, z = (np.asarray(component, dtype=np.float64) for component in (x, y, z))
    r = np.sqrt(x**2 + y**2 + z**2)
    r = np.where(r == 0., 1., r)
    theta = np.arccos(np.clip(z / r, -1., 1.))
    phi = np.arctan2(y, x)
    return np.sqrt(4. * np.pi / (2 * ell + 1)) * sph_harm_y(ell, m, theta, phi)


@functools.lru_cache(maxsize=None)
def wigner_3j_value(j1, j2, j3, m1, m2, m3):
    return float(wigner_3j(j1, j2, j3, m1, m2, m3))


def sugiyama_coupling(ell1, ell2, ELL):
    """``(2 ell1 + 1)(2 ell2 + 1)(2 ELL + 1) (ell1 ell2 ELL; 0 0 0)``."""
    H = wigner_3j_value(ell1, ell2, ELL, 0, 0, 0)
    if H == 0.:
        raise InvalidConfigurationError(
            f"Specified three-point multipole ({ell1}, {ell2}, {ELL}) vanishes identically."
        )
    return (2 * ell1 + 1) * (2 * ell2 + 1) * (2 * ELL + 1) * H


def bin_pairs(form, num_bins, idx_bin=0):
    """Bin index pairs ``(i, j)`` measured for a three-point ``form``."""
    form = parse_choice(Form, form, "form")
    if form == Form.FULL:
        return [(i, j) for i in range(num_bins) for j in range(num_bins)]
    if form == Form.DIAG:
        return [(i, i) for i in range(num_bins)]
    if form == Form.OFFDIAG:
        pairs = [(i, i + idx_bin) for i in range(num_bins) if 0 <= i + idx_bin < num_bins]
        if not pairs:
            raise InvalidConfigurationError(
                f"Off-diagonal index {idx_bin} leaves no bins out of {num_bins}."
            )
        return pairs
    if form == Form.ROW:
        if not 0 <= idx_bin < num_bins:
            raise InvalidConfigurationError(
                f"Row index {idx_bin} is out of range for {num_bins} bins."
            )
        return [(idx_bin, j) for j in range(num_bins)]
    raise InvalidConfigurationError(f"Invalid three-point form: {form!r}.")


# ----------------------------------------------------------------------------
# Mesh helpers
# ----------------------------------------------------------------------------

def _paint_sources(sources, geometry, assignment, factor=None):
    mesh = None
    for source in sources:
        weights = source.scale * source.catalogue.weights
        if factor is not None:
            weights = weights * factor(source)
        painted = assign_weights_to_mesh(source.catalogue.pos, weights, geometry, assignment)
        mesh = painted if mesh is None else mesh + painted
    return mesh


def _los_components(source):
    return [source.los[:, 0], source.los[:, 1], source.los[:, 2]]


def _bin_average(coord, values, edges):
    """Bin averages of grid ``values`` in ``coord``; the zero mode or lag is excluded."""
    coord = coord.ravel()
    edges = jnp.asarray(edges)
    nonzero = (coord > 0.).astype(jnp.float64)

    counts, _ = jnp.histogram(coord, bins=edges, weights=nonzero)
    coord_sum, _ = jnp.histogram(coord, bins=edges, weights=coord * nonzero)
    counts_safe = jnp.where(counts == 0., jnp.inf, counts)

    averages = []
    for value in values:
        value = value.ravel() * nonzero
        re, _ = jnp.histogram(coord, bins=edges, weights=jnp.real(value))
        im, _ = jnp.histogram(coord, bins=edges, weights=jnp.imag(value))
        averages.append(np.asarray((re + 1j * im) / counts_safe))
    return np.asarray(counts).astype(np.int64), np.asarray(coord_sum / counts_safe), averages


def _effective_coords(coord_eff, counts, centres):
    return np.where(counts > 0, coord_eff, centres)


def _survey_sources(catalogue_data, catalogue_rand, los_data, los_rand, alpha=None):
    if alpha is None:
        alpha = ParticleCatalogue.alpha_ratio(catalogue_data, catalogue_rand)
    return [_Source(catalogue_data, los_data, 1.), _Source(catalogue_rand, los_rand, -alpha)]


def _fluctuation_in_box(catalogue_data, geometry, assignment):
    """Painted density contrast ``n - nbar`` of a periodic box."""
    nz = assign_weights_to_mesh(catalogue_data.pos, catalogue_data.weights, geometry, assignment)
    return nz - catalogue_data.wstotal / geometry.volume


def _local_multipole_field(sources, geometry, assignment, ell, unit_grid, compensation, context):
    """``sum_abc c_abc unit^abc FT[F los^abc]``, with ``unit`` the Fourier or separation direction."""
    field = 0.
    for powers, coeff in legendre_monomials(ell):
        mesh = _paint_sources(
            sources, geometry, assignment,
            factor=lambda source: _monomial(_los_components(source), powers)
        )
        field = field + coeff * _monomial(unit_grid, powers) * fft(mesh, geometry, context) * compensation
    return field


# ----------------------------------------------------------------------------
# Two-point statistics
# ----------------------------------------------------------------------------

def _powspec_local(sources, params, binning, norm_factor, context):
    ell = params.ELL
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)
    khat = _unit_components(geometry.wavevectors())

    field_0 = fft(_paint_sources(sources, geometry, params.assignment), geometry, context) * compensation
    if ell == 0:
        field_ell = field_0
    else:
        field_ell = _local_multipole_field(
            sources, geometry, params.assignment, ell, khat, compensation, context
        )

    shotnoise = 0.
    for powers, coeff in legendre_monomials(ell):
        sum_abc = sum(
            source.scale**2 * float(jnp.sum(
                source.catalogue.weights**2 * _monomial(_los_components(source), powers)
            ))
            for source in sources
        )
        shotnoise = shotnoise + coeff * sum_abc * _monomial(khat, powers)
    shotnoise = jnp.broadcast_to(shotnoise, geometry.ngrid)

    pk3d = (2 * ell + 1) * field_ell * jnp.conj(field_0)
    sn3d = (2 * ell + 1) * shotnoise

    nmodes, keff, (pk, sn) = _bin_average(geometry.wavenumbers(), [pk3d, sn3d], binning.edges)
    return PowspecMeasurements(
        kbin=np.asarray(binning.centres), keff=_effective_coords(keff, nmodes, binning.centres),
        nmodes=nmodes, pk_raw=norm_factor * pk, pk_shot=norm_factor * sn,
    )


def compute_powspec(catalogue_data, catalogue_rand, los_data, los_rand,
                    params, binning, norm_factor, alpha=None, context=None):
    """Power spectrum multipole ``ELL`` of paired survey-like catalogues."""
    sources = _survey_sources(catalogue_data, catalogue_rand, los_data, los_rand, alpha)
    return _powspec_local(sources, params, binning, norm_factor, context)


def compute_powspec_in_gpp_box(catalogue_data, params, binning, norm_factor, context=None):
    """Power spectrum multipole ``ELL`` in a periodic box, line of sight along ``z``."""
    ell = params.ELL
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)

    field = fft(_fluctuation_in_box(catalogue_data, geometry, params.assignment), geometry, context)
    field = field * compensation

    kx, ky, kz = _unit_components(geometry.wavevectors())
    mu_ell = legendre(ell, kz)
    pk3d = (2 * ell + 1) * (field * jnp.conj(field)).real * mu_ell
    sn3d = (2 * ell + 1) * float(jnp.sum(catalogue_data.weights**2)) * mu_ell

    nmodes, keff, (pk, sn) = _bin_average(geometry.wavenumbers(), [pk3d, sn3d], binning.edges)
    return PowspecMeasurements(
        kbin=np.asarray(binning.centres), keff=_effective_coords(keff, nmodes, binning.centres),
        nmodes=nmodes, pk_raw=norm_factor * pk, pk_shot=norm_factor * sn,
    )


def _corrfunc_local(sources, params, binning, norm_factor, context):
    ell = params.ELL
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)
    shat = _unit_components(geometry.separations())

    field_0 = fft(_paint_sources(sources, geometry, params.assignment), geometry, context) * compensation

    xi3d = 0.
    for powers, coeff in legendre_monomials(ell):
        if ell == 0:
            field_abc = field_0
        else:
            mesh = _paint_sources(
                sources, geometry, params.assignment,
                factor=lambda source: _monomial(_los_components(source), powers)
            )
            field_abc = fft(mesh, geometry, context) * compensation
        corr = ifft(jnp.conj(field_abc) * field_0, geometry, context)
        xi3d = xi3d + coeff * _monomial(shat, powers) * corr
    xi3d = (2 * ell + 1) * xi3d

    npairs, reff, (xi,) = _bin_average(geometry.distances(), [xi3d], binning.edges)
    return CorrfuncMeasurements(
        rbin=np.asarray(binning.centres), reff=_effective_coords(reff, npairs, binning.centres),
        npairs=npairs, xi=norm_factor * xi,
    )


def compute_corrfunc(catalogue_data, catalogue_rand, los_data, los_rand,
                     params, binning, norm_factor, alpha=None, context=None):
    """Two-point correlation function multipole ``ELL`` of paired survey-like catalogues."""
    sources = _survey_sources(catalogue_data, catalogue_rand, los_data, los_rand, alpha)
    return _corrfunc_local(sources, params, binning, norm_factor, context)


def compute_corrfunc_in_gpp_box(catalogue_data, params, binning, norm_factor, context=None):
    """Two-point correlation function multipole ``ELL`` in a periodic box."""
    ell = params.ELL
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)

    field = fft(_fluctuation_in_box(catalogue_data, geometry, params.assignment), geometry, context)
    field = field * compensation
    corr = ifft(field * jnp.conj(field), geometry, context)

    sx, sy, sz = _unit_components(geometry.separations())
    xi3d = (2 * ell + 1) * corr * legendre(ell, sz)

    npairs, reff, (xi,) = _bin_average(geometry.distances(), [xi3d], binning.edges)
    return CorrfuncMeasurements(
        rbin=np.asarray(binning.centres), reff=_effective_coords(reff, npairs, binning.centres),
        npairs=npairs, xi=norm_factor * xi,
    )


def compute_corrfunc_window(catalogue_rand, los_rand, params, binning, alpha, norm_factor,
                            context=None):
    """Window-function two-point correlation multipole ``ELL`` from a random catalogue."""
    sources = [_Source(catalogue_rand, los_rand, alpha)]
    return _corrfunc_local(sources, params, binning, norm_factor, context)


# ----------------------------------------------------------------------------
# Three-point statistics
# ----------------------------------------------------------------------------

class _ShellLegs:
    """
    Shell-filtered, spherical-harmonic-weighted legs ``F_lm(x; bin)``.

    In Fourier space a leg is the average of ``y*_lm(khat) F(k) exp(ikx)``
    over the wavevectors in the shell; in configuration space it is the
    average of ``y*_lm(shat) |s|^p F(x + s)`` over the separations in the
    shell.  Legs are computed on demand and cached.
    """

    def __init__(self, field_k, geometry, edges, fourier, power=0, context=None):
        self.field_k = field_k
        self.geometry = geometry
        self.fourier = fourier
        self.power = power
        self.context = context

        if fourier:
            self.vectors = [np.asarray(component) for component in geometry.wavevectors()]
            coord = geometry.wavenumbers()
        else:
            self.vectors = [np.asarray(component) for component in geometry.separations()]
            coord = geometry.distances()
        self.coord = coord

        nbins = len(edges) - 1
        self.masks = []
        for ibin in range(nbins):
            if ibin == nbins - 1:
                upper = coord <= edges[ibin + 1]
            else:
                upper = coord < edges[ibin + 1]
            self.masks.append((coord >= edges[ibin]) & upper & (coord > 0.))
        self.counts = np.array([int(jnp.sum(mask)) for mask in self.masks], dtype=np.int64)
        self.coord_eff = np.array([
            float(jnp.sum(jnp.where(mask, coord, 0.))) / count if count else 0.
            for mask, count in zip(self.masks, self.counts)
        ])

        self._ylm = {}
        self._legs = {}

    def ylm_conj(self, ell, m):
        if (ell, m) not in self._ylm:
            self._ylm[ell, m] = jnp.asarray(np.conj(reduced_spherical_harmonic(ell, m, *self.vectors)))
        return self._ylm[ell, m]

    def __call__(self, ell, m, ibin):
        key = (ell, m, ibin)
        if key in self._legs:
            return self._legs[key]

        geometry = self.geometry
        nmodes = self.counts[ibin]
        if nmodes == 0:
            leg = jnp.zeros(geometry.ngrid, dtype=jnp.complex128)
        elif self.fourier:
            leg = geometry.volume / nmodes * ifft(
                self.masks[ibin] * self.ylm_conj(ell, m) * self.field_k, geometry, self.context
            )
        else:
            kernel = self.masks[ibin] * self.ylm_conj(ell, m) / nmodes
            if self.power:
                kernel = kernel * self.coord**self.power
            kernel_k = geometry.volume * ifft(kernel, geometry, self.context)
            leg = ifft(self.field_k * kernel_k, geometry, self.context)

        self._legs[key] = leg
        return leg


def _threept_raw(legs_1, legs_2, g_meshes, pairs, params, norm_factor):
    ell1, ell2, ELL = params.ell1, params.ell2, params.ELL
    coupling = sugiyama_coupling(ell1, ell2, ELL)
    dV = legs_1.geometry.cell_volume

    values = []
    for ibin, jbin in pairs:
        raw = 0j
        for m1 in range(-ell1, ell1 + 1):
            for m2 in range(-ell2, ell2 + 1):
                M = -m1 - m2
                if M not in g_meshes:
                    continue
                w3j = wigner_3j_value(ell1, ell2, ELL, m1, m2, M)
                if w3j == 0.:
                    continue
                raw += w3j * dV * complex(jnp.sum(
                    legs_1(ell1, m1, ibin) * legs_2(ell2, m2, jbin) * g_meshes[M]
                ))
        values.append(norm_factor * coupling * raw)
    return np.asarray(values, dtype=np.complex128)


def _g_meshes_local(sources, geometry, assignment, ELL):
    meshes = {}
    for M in range(-ELL, ELL + 1):
        meshes[M] = _paint_sources(
            sources, geometry, assignment,
            factor=lambda source: jnp.asarray(np.conj(
                reduced_spherical_harmonic(ELL, M, *_los_components(source))
            ))
        )
    return meshes


def _threept_measure(legs_1, legs_2, g_meshes, params, binning, norm_factor, fourier):
    pairs = bin_pairs(params.form, binning.num_bins, params.idx_bin)
    values = _threept_raw(legs_1, legs_2, g_meshes, pairs, params, norm_factor)

    ibins = np.array([pair[0] for pair in pairs])
    jbins = np.array([pair[1] for pair in pairs])
    centres = np.asarray(binning.centres)
    eff_1 = _effective_coords(legs_1.coord_eff, legs_1.counts, centres)
    eff_2 = _effective_coords(legs_2.coord_eff, legs_2.counts, centres)

    columns = (
        centres[ibins], eff_1[ibins], legs_1.counts[ibins],
        centres[jbins], eff_2[jbins], legs_2.counts[jbins],
        values,
    )
    if fourier:
        return BispecMeasurements(*columns)
    return ThreePCFMeasurements(*columns)


def _threept_local(sources, params, binning, norm_factor, fourier, context):
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)
    field_k = fft(_paint_sources(sources, geometry, params.assignment), geometry, context) * compensation

    legs = _ShellLegs(field_k, geometry, binning.edges, fourier, context=context)
    g_meshes = _g_meshes_local(sources, geometry, params.assignment, params.ELL)
    return _threept_measure(legs, legs, g_meshes, params, binning, norm_factor, fourier)


def _threept_in_gpp_box(catalogue_data, params, binning, norm_factor, fourier, context):
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)
    fluctuation = _fluctuation_in_box(catalogue_data, geometry, params.assignment)
    field_k = fft(fluctuation, geometry, context) * compensation

    legs = _ShellLegs(field_k, geometry, binning.edges, fourier, context=context)
    # y*_LM(z) vanishes unless M = 0, where it is 1.
    g_meshes = {0: fluctuation}
    return _threept_measure(legs, legs, g_meshes, params, binning, norm_factor, fourier)


def compute_bispec(catalogue_data, catalogue_rand, los_data, los_rand,
                   params, binning, norm_factor, alpha=None, context=None):
    """Bispectrum multipole ``(ell1, ell2, ELL)`` of paired survey-like catalogues."""
    sources = _survey_sources(catalogue_data, catalogue_rand, los_data, los_rand, alpha)
    return _threept_local(sources, params, binning, norm_factor, True, context)


def compute_bispec_in_gpp_box(catalogue_data, params, binning, norm_factor, context=None):
    """Bispectrum multipole ``(ell1, ell2, ELL)`` in a periodic box."""
    return _threept_in_gpp_box(catalogue_data, params, binning, norm_factor, True, context)


def compute_3pcf(catalogue_data, catalogue_rand, los_data, los_rand,
                 params, binning, norm_factor, alpha=None, context=None):
    """Three-point correlation multipole ``(ell1, ell2, ELL)`` of paired survey-like catalogues."""
    sources = _survey_sources(catalogue_data, catalogue_rand, los_data, los_rand, alpha)
    return _threept_local(sources, params, binning, norm_factor, False, context)


def compute_3pcf_in_gpp_box(catalogue_data, params, binning, norm_factor, context=None):
    """Three-point correlation multipole ``(ell1, ell2, ELL)`` in a periodic box."""
    return _threept_in_gpp_box(catalogue_data, params, binning, norm_factor, False, context)


def compute_3pcf_window(catalogue_rand, los_rand, params, binning, alpha, norm_factor,
                        wide_angle=False, context=None):
    """
    Window-function three-point correlation multipole from a random catalogue.

    With ``wide_angle``, the ``(i_wa, j_wa)`` wide-angle term is measured: the
    two legs are painted with weights ``|x|^-i_wa`` and ``|x|^-j_wa`` (distance
    from the observer) and their shell kernels carry ``r^i_wa`` and ``r^j_wa``.
    """
    geometry = MeshGeometry(params.boxsize, params.ngrid)
    compensation = geometry.compensation(params.assignment)
    sources = [_Source(catalogue_rand, los_rand, alpha)]

    powers = (params.i_wa, params.j_wa) if wide_angle else (0, 0)
    distances = los_distances(catalogue_rand)

    legs = []
    fields = {}
    for power in powers:
        if power not in fields:
            mesh = _paint_sources(
                sources, geometry, params.assignment,
                factor=lambda source: distances**(-power)
            )
            fields[power] = fft(mesh, geometry, context) * compensation
        legs.append(_ShellLegs(fields[power], geometry, binning.edges, False, power=power, context=context))
    if powers[0] == powers[1]:
        legs[1] = legs[0]

    g_meshes = _g_meshes_local(sources, geometry, params.assignment, params.ELL)
    return _threept_measure(legs[0], legs[1], g_meshes, params, binning, norm_factor, False)
