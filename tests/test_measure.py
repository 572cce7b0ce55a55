"""
End-to-end measurement runs on small meshes.
"""

import logging
import os

import numpy as np
import pytest

from conftest import write_catalogue
from jax_clustering.__main__ import main
from jax_clustering.catalogue import ParticleCatalogue
from jax_clustering.config import NormConvention, ParameterSet
from jax_clustering.context import RunContext
from jax_clustering.errors import InvalidConfigurationError
from jax_clustering.measure import align_catalogues, run_measurement, validate_combination


@pytest.fixture
def catalogue_files(tmp_path, uniform_positions, rng):
    data = uniform_positions(300, 130., 190.)
    rand = uniform_positions(1200, 130., 190.)
    return (
        write_catalogue(tmp_path / "data.txt", data, rng.uniform(0.5, 1.5, len(data))),
        write_catalogue(tmp_path / "rand.txt", rand, np.ones(len(rand))),
    )


def _params(tmp_path, **kwargs):
    kwargs.setdefault("boxsize", 100.)
    kwargs.setdefault("ngrid", 8)
    kwargs.setdefault("measurement_dir", str(tmp_path / "out"))
    return ParameterSet(**kwargs)


class TestValidation:

    @pytest.mark.parametrize("catalogue_type, statistic_type", [
        ("sim", "2pcf-win"), ("random", "powspec"), ("survey", "3pcf-win"), ("none", "bispec"),
    ])
    def test_unsupported_combinations(self, tmp_path, catalogue_type, statistic_type):
        params = _params(tmp_path, catalogue_type=catalogue_type, statistic_type=statistic_type)
        with pytest.raises(InvalidConfigurationError):
            validate_combination(params)

    def test_rejected_before_loading(self, tmp_path):
        params = _params(
            tmp_path, catalogue_type="sim", statistic_type="3pcf-win",
            data_catalogue_file=str(tmp_path / "missing.txt"),
        )
        with pytest.raises(InvalidConfigurationError):
            run_measurement(params)

    def test_missing_catalogue_name(self, tmp_path):
        params = _params(tmp_path, catalogue_type="sim", statistic_type="powspec")
        with pytest.raises(InvalidConfigurationError):
            run_measurement(params)


class TestAlignment:

    def test_sim_positions_wrapped_into_box(self, tmp_path, catalogue_files):
        params = _params(tmp_path, catalogue_type="sim", data_catalogue_file=catalogue_files[0])
        data = ParticleCatalogue.load(catalogue_files[0])
        assert np.all(data.pos_max < 2. * 100.)
        align_catalogues(params, data)
        pos = np.asarray(data.pos)
        assert np.all(pos >= 0.) and np.all(pos < 100.)
        np.testing.assert_allclose(data.observer, 0.)

    def test_survey_padding_by_cells(self, tmp_path, catalogue_files):
        params = _params(
            tmp_path, alignment="pad", padscale="grid", padfactor=2.,
            data_catalogue_file=catalogue_files[0], rand_catalogue_file=catalogue_files[1],
        )
        data = ParticleCatalogue.load(catalogue_files[0])
        rand = ParticleCatalogue.load(catalogue_files[1])
        pos_min = rand.pos_min.copy()
        align_catalogues(params, data, rand)
        np.testing.assert_allclose(rand.pos_min, 25.)
        np.testing.assert_allclose(np.asarray(data.observer), 25. - pos_min)


class TestRunMeasurement:

    def test_sim_powspec(self, tmp_path, catalogue_files, caplog):
        params = _params(
            tmp_path, catalogue_type="sim", statistic_type="powspec",
            data_catalogue_file=catalogue_files[0], norm_convention="none",
            bin_min=0.01, bin_max=0.25, num_bins=4,
        )
        context = RunContext()
        with caplog.at_level(logging.INFO, logger="jax_clustering"):
            result = run_measurement(params, context)

        assert result.norm_factors.selected == 1.
        assert result.norm_factors.convention == NormConvention.NONE
        assert result.alpha == 1.
        assert result.output_path == os.path.join(str(tmp_path / "out"), "pk0")
        assert os.path.isfile(result.parameters_path)
        table = np.loadtxt(result.output_path)
        assert table.shape == (4, 7)
        assert context.allocations == {}
        assert context.warnings == []
        for stage in ("[A]", "[B.1]", "[B.2]", "[B.4]", "[B.5]", "[C]"):
            assert stage in caplog.text
        assert "[B.3]" not in caplog.text

    @pytest.mark.parametrize("norm_convention", ["particle", "mesh", "mesh-mixed"])
    def test_survey_powspec_with_padding(self, tmp_path, catalogue_files, norm_convention):
        params = _params(
            tmp_path, catalogue_type="survey", statistic_type="powspec", ELL=2,
            data_catalogue_file=catalogue_files[0], rand_catalogue_file=catalogue_files[1],
            alignment="pad", padscale="grid", padfactor=1., norm_convention=norm_convention,
            bin_min=0.01, bin_max=0.25, num_bins=4, output_tag="_survey",
        )
        result = run_measurement(params)
        assert result.output_path.endswith("pk2_survey")
        assert result.alpha == pytest.approx(
            float(np.sum(np.loadtxt(catalogue_files[0])[:, 3])) / 1200.
        )
        assert result.norm_factors.mixed_mesh_available
        assert np.all(np.isfinite(result.measurements.pk_raw))

        with open(result.output_path, encoding="utf-8") as fin:
            header = [line for line in fin if line.startswith("#")]
        assert any("Alpha contrast" in line for line in header)
        assert any("Box alignment: pad" in line for line in header)
        assert any(f"({norm_convention}; used)" in line for line in header)

    def test_random_corrfunc_window(self, tmp_path, catalogue_files):
        params = _params(
            tmp_path, catalogue_type="random", statistic_type="2pcf-win",
            rand_catalogue_file=catalogue_files[1], norm_convention="mesh",
            bin_min=6., bin_max=46., num_bins=2,
        )
        result = run_measurement(params)
        assert result.output_path.endswith("xiw0")
        assert result.alpha == 1.
        assert np.all(np.isfinite(result.measurements.xi))

    def test_sim_3pcf(self, tmp_path, catalogue_files):
        params = _params(
            tmp_path, catalogue_type="sim", statistic_type="3pcf", form="diag",
            data_catalogue_file=catalogue_files[0], bin_min=6., bin_max=46., num_bins=2,
        )
        result = run_measurement(params)
        assert result.output_path.endswith("zeta000_diag")
        assert np.loadtxt(result.output_path).shape == (2, 8)

    def test_three_point_mixed_mesh_rejected(self, tmp_path, catalogue_files):
        params = _params(
            tmp_path, catalogue_type="survey", statistic_type="bispec",
            data_catalogue_file=catalogue_files[0], rand_catalogue_file=catalogue_files[1],
            norm_convention="mesh-mixed", bin_min=0.05, bin_max=0.25, num_bins=2,
        )
        with pytest.raises(InvalidConfigurationError):
            run_measurement(params)


class TestCommandLine:

    def test_successful_run(self, tmp_path, catalogue_files):
        paramfile = tmp_path / "params.ini"
        paramfile.write_text(
            "catalogue_type = sim\n"
            "statistic_type = 2pcf\n"
            f"data_catalogue_file = {catalogue_files[0]}\n"
            f"measurement_dir = {tmp_path / 'cli'}\n"
            "boxsize = 100\n"
            "ngrid = 8\n"
            "bin_min = 6\n"
            "bin_max = 46\n"
            "num_bins = 2\n"
        )
        assert main([str(paramfile), "--verbose", str(logging.WARNING)]) == 0
        assert os.path.isfile(tmp_path / "cli" / "xi0")
        assert os.path.isfile(tmp_path / "cli" / "parameters_used")

    def test_invalid_configuration(self, tmp_path):
        paramfile = tmp_path / "params.ini"
        paramfile.write_text("statistic_type = quadspec\n")
        assert main([str(paramfile)]) == 1

    def test_missing_parameter_file(self, tmp_path):
        assert main([str(tmp_path / "missing.ini"), "--log-file", str(tmp_path / "run.log")]) == 1
        assert "ParameterIOError" in (tmp_path / "run.log").read_text()
