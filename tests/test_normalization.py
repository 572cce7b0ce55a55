"""
Tests for normalization factors and convention resolution.
"""

import numpy as np
import pytest

from conftest import lattice_positions
from jax_clustering.catalogue import ParticleCatalogue
from jax_clustering.config import NormConvention, ParameterSet
from jax_clustering.errors import InvalidConfigurationError
from jax_clustering.normalization import (
    MIXED_MESH_CELLSIZE, mesh_normalization, mixed_mesh_attributes,
    mixed_mesh_normalization, particle_normalization, resolve, select,
)


class TestParticleNormalization:

    def test_two_point(self):
        catalogue = ParticleCatalogue(np.ones((4, 3)), weights=[1., 2., 3., 4.])
        norm = particle_normalization(catalogue, alpha=0.5, npoint=2, volume=1000.)
        assert norm == pytest.approx(1000. / 5. / 5.)

    def test_three_point(self):
        catalogue = ParticleCatalogue(np.ones((4, 3)), weights=[1., 2., 3., 4.])
        norm = particle_normalization(catalogue, alpha=0.5, npoint=3, box_size=(10., 10., 10.))
        assert norm == pytest.approx(1000.**2 / 5.**3)


class TestMeshNormalization:

    @pytest.mark.parametrize("npoint", [2, 3])
    def test_agrees_with_particle_for_lattice(self, npoint):
        catalogue = ParticleCatalogue(lattice_positions(100., 8))
        norm_mesh = mesh_normalization(catalogue, (100.,) * 3, (8,) * 3, "cic", npoint=npoint)
        norm_part = particle_normalization(catalogue, npoint=npoint, volume=100.**3)
        assert norm_mesh == pytest.approx(norm_part, rel=1e-10)

    def test_alpha_scaling(self):
        catalogue = ParticleCatalogue(lattice_positions(100., 8))
        norm = mesh_normalization(catalogue, (100.,) * 3, (8,) * 3, "tsc")
        scaled = mesh_normalization(catalogue, (100.,) * 3, (8,) * 3, "tsc", alpha=0.5)
        assert scaled == pytest.approx(4. * norm)


class TestMixedMeshNormalization:

    def test_attributes_enclose_catalogues(self, uniform_positions):
        data = ParticleCatalogue(uniform_positions(50, 0., 100.))
        rand = ParticleCatalogue(uniform_positions(50, 0., 100.) + 20.)
        geometry, origin = mixed_mesh_attributes(data, rand)
        upper = origin + geometry.box_size
        assert np.all(origin <= np.minimum(data.pos_min, rand.pos_min))
        assert np.all(upper >= np.maximum(data.pos_max, rand.pos_max))
        assert geometry.cell_size[0] <= MIXED_MESH_CELLSIZE

    def test_identical_lattices(self):
        positions = lattice_positions(100., 10) + 5.
        data = ParticleCatalogue(positions)
        rand = ParticleCatalogue(positions, weights=np.full(len(positions), 2.))
        alpha = ParticleCatalogue.alpha_ratio(data, rand)
        norm = mixed_mesh_normalization(data, rand, alpha)
        assert np.isfinite(norm) and norm > 0.


class TestResolve:

    def test_none_is_one(self):
        factors = resolve("none", 2., 3., 4.)
        assert factors.selected == 1.
        assert factors.convention == NormConvention.NONE
        assert "(none used)" in factors.summary()

    @pytest.mark.parametrize("convention, expected", [("particle", 2.), ("mesh", 3.), ("mesh-mixed", 4.)])
    def test_selected(self, convention, expected):
        factors = resolve(convention, 2., 3., 4.)
        assert factors.selected == expected
        assert "used" in factors.summary()

    def test_mixed_unavailable(self):
        with pytest.raises(InvalidConfigurationError):
            resolve("mesh-mixed", 2., 3., 0.)

    def test_unknown_convention(self):
        with pytest.raises(InvalidConfigurationError):
            resolve("fkp", 2., 3., 4.)


class TestSelect:

    def test_sim_with_no_normalization(self, uniform_positions):
        params = ParameterSet(
            catalogue_type="sim", statistic_type="powspec", norm_convention="none",
            boxsize=100., ngrid=8,
        )
        data = ParticleCatalogue(uniform_positions(100, 0., 100.))
        factors = select(params, catalogue_data=data)
        assert factors.selected == 1.
        assert factors.particle == pytest.approx(100.**3 / 100.**2)
        assert factors.mixed_mesh == 0.

    def test_survey_two_point_has_mixed(self, uniform_positions):
        params = ParameterSet(
            catalogue_type="survey", statistic_type="powspec", norm_convention="mesh-mixed",
            boxsize=200., ngrid=8,
        )
        data = ParticleCatalogue(uniform_positions(100, 50., 150.))
        rand = ParticleCatalogue(uniform_positions(400, 50., 150.))
        alpha = ParticleCatalogue.alpha_ratio(data, rand)
        factors = select(params, data, rand, alpha)
        assert factors.mixed_mesh > 0.
        assert factors.selected == factors.mixed_mesh
        assert factors.particle == pytest.approx(200.**3 / (alpha * 400.)**2)

    def test_three_point_mixed_unavailable(self, uniform_positions):
        params = ParameterSet(
            catalogue_type="survey", statistic_type="bispec", norm_convention="mesh-mixed",
            boxsize=200., ngrid=8, bin_min=0.01, bin_max=0.1,
        )
        data = ParticleCatalogue(uniform_positions(100, 50., 150.))
        rand = ParticleCatalogue(uniform_positions(400, 50., 150.))
        with pytest.raises(InvalidConfigurationError):
            select(params, data, rand, ParticleCatalogue.alpha_ratio(data, rand))


class TestUndefinedFactors:

    @pytest.fixture
    def zero_weight_params(self):
        return ParameterSet(
            catalogue_type="sim", statistic_type="powspec", norm_convention="none",
            boxsize=100., ngrid=8,
        )

    def test_zero_weight_factors_are_infinite(self):
        catalogue = ParticleCatalogue(np.full((3, 3), 10.), weights=[0., 0., 0.])
        assert particle_normalization(catalogue, volume=1000.) == np.inf
        assert mesh_normalization(catalogue, (100.,) * 3, (8,) * 3, "cic") == np.inf

    def test_unused_factors_do_not_abort(self, zero_weight_params):
        catalogue = ParticleCatalogue(np.full((3, 3), 10.), weights=[0., 0., 0.])
        factors = select(zero_weight_params, catalogue_data=catalogue)
        assert factors.selected == 1.
        assert factors.particle == np.inf
        assert factors.mesh == np.inf
        assert "inf (particle)" in factors.summary()

    @pytest.mark.parametrize("convention", ["particle", "mesh"])
    def test_selected_undefined_factor_raises(self, zero_weight_params, convention):
        zero_weight_params.norm_convention = NormConvention(convention)
        catalogue = ParticleCatalogue(np.full((3, 3), 10.), weights=[0., 0., 0.])
        with pytest.raises(InvalidConfigurationError):
            select(zero_weight_params, catalogue_data=catalogue)
