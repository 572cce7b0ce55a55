"""
Normalization factors for the clustering estimators.

Three estimates are computed for every run, from the particle weight sums,
from the painted mesh of the reference catalogue, and (for paired survey
catalogues measuring two-point statistics) from data and random meshes
painted together on an internal mesh.  The ``norm_convention`` parameter
picks which one the estimators use; the others are still reported.
"""
import logging
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import numpy as np

from .config import Assignment, CatalogueType, NormConvention, parse_choice
from .errors import InvalidConfigurationError
from .mas import MeshGeometry, assign_weights_to_mesh

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

# Internal mesh used by the mixed-mesh normalization.
MIXED_MESH_PADDING = 0.1
MIXED_MESH_CELLSIZE = 10.
MIXED_MESH_ASSIGNMENT = Assignment.CIC


def particle_normalization(catalogue, alpha=1., npoint=2, volume=None, box_size=None):
    """
    Normalization from the weight sum of ``catalogue``.

    ``V / (alpha W)^2`` for two-point statistics and ``V^2 / (alpha W)^3``
    for three-point statistics, with ``V`` the box volume.
    Infinite when the total weight is zero.
    """
    if volume is None:
        volume = float(np.prod(box_size))
    wstotal = alpha * catalogue.wstotal
    if wstotal == 0.:
        return np.inf
    norm_factor = volume / wstotal / wstotal
    if npoint == 3:
        norm_factor *= volume / wstotal
    return norm_factor


def mesh_normalization(catalogue, box_size, ngrid, assignment, alpha=1., npoint=2):
    """
    Normalization from the painted density ``n`` of ``catalogue`` on the run's mesh.

    ``1 / (dV sum_x (alpha n)^2)`` for two-point statistics and
    ``1 / (dV sum_x (alpha n)^3)`` for three-point statistics.
    """
    geometry = MeshGeometry(box_size, ngrid)
    nz = alpha * assign_weights_to_mesh(
        catalogue.pos, catalogue.weights, geometry, assignment, wrap=True
    )
    integral = float(geometry.cell_volume * jnp.sum(nz**npoint))
    if integral == 0.:
        return np.inf
    return 1. / integral


def mixed_mesh_attributes(*catalogues, cellsize=MIXED_MESH_CELLSIZE, padding=MIXED_MESH_PADDING):
    """Cubic mesh enclosing all ``catalogues`` with margin ``padding`` and about ``cellsize`` cells."""
    pos_min = np.min([catalogue.pos_min for catalogue in catalogues], axis=0)
    pos_max = np.max([catalogue.pos_max for catalogue in catalogues], axis=0)
    boxsize = max((1. + padding) * float(np.max(pos_max - pos_min)), cellsize)
    ngrid = int(np.ceil(boxsize / cellsize))
    boxcentre = (pos_min + pos_max) / 2.
    origin = boxcentre - boxsize / 2.
    return MeshGeometry(boxsize, ngrid), origin


def mixed_mesh_normalization(catalogue_data, catalogue_rand, alpha,
                             cellsize=MIXED_MESH_CELLSIZE, padding=MIXED_MESH_PADDING,
                             assignment=MIXED_MESH_ASSIGNMENT):
    """
    Normalization from data and ``alpha``-scaled random meshes painted together.

    ``1 / (dV sum_x n_d(x) alpha n_r(x))`` on an internal mesh independent of
    the run's box, so the current catalogue alignment does not matter.
    """
    geometry, origin = mixed_mesh_attributes(
        catalogue_data, catalogue_rand, cellsize=cellsize, padding=padding
    )
    nz_data = assign_weights_to_mesh(
        catalogue_data.pos, catalogue_data.weights, geometry, assignment, origin=origin, wrap=False
    )
    nz_rand = alpha * assign_weights_to_mesh(
        catalogue_rand.pos, catalogue_rand.weights, geometry, assignment, origin=origin, wrap=False
    )
    integral = float(geometry.cell_volume * jnp.sum(nz_data * nz_rand))
    logger.debug(
        "Mixed-mesh normalization on %s with origin %s: integral %.6e.",
        geometry, origin, integral
    )
    if integral == 0.:
        return np.inf
    return 1. / integral


@dataclass(frozen=True)
class NormalizationFactors:
    particle: float
    mesh: float
    mixed_mesh: float
    selected: float
    convention: NormConvention

    @property
    def mixed_mesh_available(self):
        return self.mixed_mesh != 0.

    def summary(self):
        labels = {
            NormConvention.PARTICLE: "particle",
            NormConvention.MESH: "mesh",
            NormConvention.MESH_MIXED: "mesh-mixed",
        }
        parts = []
        for convention, value in (
            (NormConvention.PARTICLE, self.particle),
            (NormConvention.MESH, self.mesh),
            (NormConvention.MESH_MIXED, self.mixed_mesh),
        ):
            used = "; used" if convention == self.convention else ""
            parts.append(f"{value:.6e} ({labels[convention]}{used})")
        text = ", ".join(parts)
        if self.convention == NormConvention.NONE:
            text += " (none used)"
        return text


def resolve(convention, particle, mesh, mixed_mesh=0.):
    """Pick the normalization factor the estimators should use under ``convention``."""
    convention = parse_choice(NormConvention, convention, "norm_convention")
    if convention == NormConvention.NONE:
        selected = 1.
    elif convention == NormConvention.PARTICLE:
        selected = particle
    elif convention == NormConvention.MESH:
        selected = mesh
    elif convention == NormConvention.MESH_MIXED:
        if mixed_mesh == 0.:
            raise InvalidConfigurationError(
                "Mixed-mesh normalization is only available for paired survey "
                "catalogues measuring two-point statistics."
            )
        selected = mixed_mesh
    else:
        raise InvalidConfigurationError(f"Invalid normalization convention: {convention!r}.")
    if not np.isfinite(selected):
        raise InvalidConfigurationError(
            f"Selected {convention.value} normalization is undefined (zero total weight or empty mesh)."
        )
    return NormalizationFactors(
        particle=particle, mesh=mesh, mixed_mesh=mixed_mesh,
        selected=selected, convention=convention,
    )


def select(params, catalogue_data=None, catalogue_rand=None, alpha=1.):
    """
    Compute all normalization factors for a run and resolve the selected one.

    The random catalogue, when present, is the reference for the particle and
    mesh estimates (scaled by ``alpha``); otherwise the data catalogue is used
    unscaled.
    """
    if catalogue_rand is not None:
        catalogue_for_norm, alpha_for_norm = catalogue_rand, alpha
    elif catalogue_data is not None:
        catalogue_for_norm, alpha_for_norm = catalogue_data, 1.
    else:
        raise InvalidConfigurationError("No catalogue available for normalization.")

    npoint = params.npoint
    particle = particle_normalization(
        catalogue_for_norm, alpha_for_norm, npoint=npoint, volume=params.volume
    )
    mesh = mesh_normalization(
        catalogue_for_norm, params.boxsize, params.ngrid, params.assignment,
        alpha=alpha_for_norm, npoint=npoint
    )
    mixed_mesh = 0.
    if (npoint == 2 and params.catalogue_type == CatalogueType.SURVEY
            and catalogue_data is not None and catalogue_rand is not None):
        mixed_mesh = mixed_mesh_normalization(catalogue_data, catalogue_rand, alpha)

    factors = resolve(params.norm_convention, particle, mesh, mixed_mesh)
    logger.info("Normalization factors: %s.", factors.summary())
    return factors

