"""
Tests for the binning engine.
"""

import dataclasses

import numpy as np
import pytest

from jax_clustering.binning import Binning, padding_widths
from jax_clustering.config import BinScheme, BinSpace, ParameterSet
from jax_clustering.errors import InvalidConfigurationError, UnimplementedError


class TestLinearBinning:

    def test_edges_centres_widths(self):
        binning = Binning.construct("lin", "config", 0., 100., 10)
        assert binning.scheme == BinScheme.LIN
        assert binning.space == BinSpace.CONFIG
        assert len(binning) == 10
        assert binning.edges.shape == (11,)
        assert binning.edges[0] == 0.
        assert binning.edges[-1] == 100.
        np.testing.assert_allclose(binning.widths, 10.)
        np.testing.assert_allclose(binning.centres, np.arange(5., 100., 10.))

    def test_centres_lie_inside_bins(self):
        binning = Binning.construct("lin", "fourier", 0.005, 0.205, 20)
        assert np.all(np.diff(binning.edges) > 0.)
        assert np.all(binning.edges[:-1] < binning.centres)
        assert np.all(binning.centres < binning.edges[1:])
        np.testing.assert_allclose(binning.widths, np.diff(binning.edges))
        assert binning.edges[-1] == 0.205

    def test_arrays_are_read_only(self):
        binning = Binning.construct("lin", "config", 0., 100., 10)
        with pytest.raises(ValueError):
            binning.edges[0] = 1.
        with pytest.raises(dataclasses.FrozenInstanceError):
            binning.num_bins = 3


class TestLogBinning:

    def test_edges_and_arithmetic_centres(self):
        binning = Binning.construct("log", "fourier", 0.01, 1., 2)
        assert binning.edges[0] == 0.01
        assert binning.edges[-1] == 1.
        assert binning.edges[1] == pytest.approx(0.1)
        np.testing.assert_allclose(binning.centres, [0.055, 0.55])

    def test_zero_lower_edge_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            Binning.construct("log", "config", 0., 100., 10)


class TestPaddedBinning:

    def test_linpad_starts_at_zero(self):
        binning = Binning.construct(
            "linpad", "config", 0., 150., 10, pad_bins=5,
            box_size=(1000., 1000., 1000.), ngrid=(100, 100, 100)
        )
        assert binning.pad_width_config == pytest.approx(10.05)
        assert binning.edges[0] == 0.
        assert binning.edges[-1] == 150.
        np.testing.assert_allclose(binning.widths[:5], 10.05)
        assert binning.edges[5] == pytest.approx(50.25)
        np.testing.assert_allclose(binning.widths[5:], (150. - 50.25) / 5)

    def test_logpad_in_fourier_space(self):
        binning = Binning.construct(
            "logpad", "fourier", 0., 0.5, 10, pad_bins=3,
            box_size=(1000., 1000., 1000.), ngrid=(64, 64, 64)
        )
        dk = 1.005 * 2. * np.pi / 1000.
        assert binning.edges[0] == 0.
        assert binning.edges[-1] == 0.5
        assert binning.edges[3] == pytest.approx(3 * dk)
        assert np.all(np.diff(binning.edges) > 0.)
        assert len(binning.centres) == 10

    def test_padding_widths(self):
        dr, dk = padding_widths((1000., 500., 500.), (64, 128, 128))
        assert dr == pytest.approx(1.005 * 1000. / 64)
        assert dk == pytest.approx(1.005 * 2. * np.pi / 1000.)

    def test_too_few_bins(self):
        with pytest.raises(InvalidConfigurationError):
            Binning.construct(
                "linpad", "config", 0., 150., 5, pad_bins=5,
                box_size=(1000.,) * 3, ngrid=(100,) * 3
            )

    def test_padding_beyond_range(self):
        with pytest.raises(InvalidConfigurationError):
            Binning.construct(
                "linpad", "config", 0., 40., 10, pad_bins=5,
                box_size=(1000.,) * 3, ngrid=(100,) * 3
            )

    def test_missing_mesh(self):
        with pytest.raises(InvalidConfigurationError):
            Binning.construct("linpad", "config", 0., 150., 10)


class TestBinningErrors:

    def test_custom_unimplemented(self):
        with pytest.raises(UnimplementedError):
            Binning.construct("custom", "config", 0., 100., 10)

    @pytest.mark.parametrize("scheme, space", [("cubic", "config"), ("lin", "momentum")])
    def test_unrecognised_choices(self, scheme, space):
        with pytest.raises(InvalidConfigurationError):
            Binning.construct(scheme, space, 0., 100., 10)

    @pytest.mark.parametrize("bin_min, bin_max, num_bins", [(-1., 100., 10), (50., 50., 10), (0., 100., 0)])
    def test_invalid_range(self, bin_min, bin_max, num_bins):
        with pytest.raises(InvalidConfigurationError):
            Binning.construct("lin", "config", bin_min, bin_max, num_bins)


class TestFromParameters:

    def test_space_follows_statistic(self):
        params = ParameterSet(statistic_type="2pcf", bin_min=0., bin_max=100., num_bins=5)
        binning = Binning.from_parameters(params)
        assert binning.space == BinSpace.CONFIG
        assert binning.edges[-1] == 100.

        params = ParameterSet(statistic_type="bispec", bin_min=0.01, bin_max=0.1, num_bins=3)
        assert Binning.from_parameters(params).space == BinSpace.FOURIER
