import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import BinScheme, BinSpace, parse_choice
from .errors import InvalidConfigurationError, UnimplementedError

logger = logging.getLogger(__name__)

NBIN_PAD = 5
# Widens the padding bins slightly past the grid scale so that separations
# or wavenumbers sitting exactly on the grid spacing fall inside them.
PAD_EPSILON = 5.e-3


def padding_widths(box_size, ngrid):
    """Return the (configuration-space, Fourier-space) padding bin widths for a mesh."""
    dbin_pad_config = (1. + PAD_EPSILON) * max(box_size) / min(ngrid)
    dbin_pad_fourier = (1. + PAD_EPSILON) * (2. * np.pi) / max(box_size)
    return dbin_pad_config, dbin_pad_fourier


def _linear_bins(bin_min, bin_max, num_bins):
    dbin = (bin_max - bin_min) / num_bins
    edges = bin_min + dbin * np.arange(num_bins + 1)
    edges[-1] = bin_max
    centres = edges[:-1] + dbin / 2.
    return edges, centres


def _log_bins(bin_min, bin_max, num_bins):
    dlnbin = (np.log(bin_max) - np.log(bin_min)) / num_bins
    edges = bin_min * np.exp(dlnbin * np.arange(num_bins + 1))
    edges[0] = bin_min
    edges[-1] = bin_max
    centres = (edges[:-1] + edges[1:]) / 2.
    return edges, centres


def _padded_bins(dbin_pad, pad_bins, bin_max, num_bins, residual):
    if num_bins <= pad_bins:
        raise InvalidConfigurationError(
            f"Padded binning needs more bins ({num_bins}) than padding bins ({pad_bins})."
        )
    pad_edges = dbin_pad * np.arange(pad_bins + 1)
    pad_centres = pad_edges[:-1] + dbin_pad / 2.
    bin_min = pad_edges[-1]
    if bin_min >= bin_max:
        raise InvalidConfigurationError(
            f"Padding bins extend to {bin_min:.6e}, beyond the binning range maximum {bin_max:.6e}."
        )
    if bin_min == 0. and residual is _log_bins:
        raise InvalidConfigurationError(
            "Cannot use logarithmic binning when the lowest edge is zero."
        )
    edges, centres = residual(bin_min, bin_max, num_bins - pad_bins)
    return np.concatenate([pad_edges[:-1], edges]), np.concatenate([pad_centres, centres])


@dataclass(frozen=True, eq=False)
class Binning:
    """
    Ordered bins in configuration or Fourier space.

    ``edges`` has ``num_bins + 1`` entries, strictly increasing, ending at
    ``bin_max``.  Non-padded schemes start at ``bin_min``; padded schemes start
    at zero with ``pad_bins`` grid-scale bins before switching to the linear
    or logarithmic scheme.
    """
    scheme: BinScheme
    space: BinSpace
    bin_min: float
    bin_max: float
    num_bins: int
    pad_bins: int
    pad_width_config: Optional[float]
    pad_width_fourier: Optional[float]
    edges: np.ndarray
    centres: np.ndarray
    widths: np.ndarray

    @classmethod
    def construct(cls, scheme, space, bin_min, bin_max, num_bins, pad_bins=NBIN_PAD,
                  box_size=None, ngrid=None):
        scheme = parse_choice(BinScheme, scheme, "binning")
        space = parse_choice(BinSpace, space, "space")
        bin_min, bin_max, num_bins, pad_bins = float(bin_min), float(bin_max), int(num_bins), int(pad_bins)

        if bin_min < 0.:
            raise InvalidConfigurationError("Binning range must be non-negative.")
        if num_bins < 1:
            raise InvalidConfigurationError(f"Number of bins must be positive: {num_bins}.")
        if bin_max <= bin_min:
            raise InvalidConfigurationError(
                f"Binning range is empty: [{bin_min:.6e}, {bin_max:.6e}]."
            )

        pad_width_config = pad_width_fourier = None
        if box_size is not None and ngrid is not None:
            pad_width_config, pad_width_fourier = padding_widths(box_size, ngrid)

        if scheme == BinScheme.CUSTOM:
            raise UnimplementedError(
                "Custom binning is not implemented; add your own scheme to `Binning.construct`."
            )
        elif scheme == BinScheme.LIN:
            edges, centres = _linear_bins(bin_min, bin_max, num_bins)
        elif scheme == BinScheme.LOG:
            if bin_min == 0.:
                raise InvalidConfigurationError(
                    "Cannot use logarithmic binning when the lowest edge is zero."
                )
            edges, centres = _log_bins(bin_min, bin_max, num_bins)
        elif scheme in (BinScheme.LINPAD, BinScheme.LOGPAD):
            if pad_width_config is None:
                raise InvalidConfigurationError(
                    f"Padded binning {scheme.value!r} needs the box size and grid numbers."
                )
            dbin_pad = pad_width_fourier if space == BinSpace.FOURIER else pad_width_config
            residual = _linear_bins if scheme == BinScheme.LINPAD else _log_bins
            edges, centres = _padded_bins(dbin_pad, pad_bins, bin_max, num_bins, residual)
        else:
            raise InvalidConfigurationError(f"Invalid binning `scheme`: {scheme!r}.")

        if not np.all(np.diff(edges) > 0.):
            raise InvalidConfigurationError(
                "Bin edges are not strictly increasing; the binning range is too narrow "
                "for the number of bins."
            )

        widths = np.diff(edges)
        for array in (edges, centres, widths):
            array.flags.writeable = False

        logger.debug(
            "Set up %d %s bins in %s space over [%.6e, %.6e].",
            num_bins, scheme.value, space.value, edges[0], edges[-1]
        )
        return cls(
            scheme=scheme, space=space, bin_min=bin_min, bin_max=bin_max,
            num_bins=num_bins, pad_bins=pad_bins,
            pad_width_config=pad_width_config, pad_width_fourier=pad_width_fourier,
            edges=edges, centres=centres, widths=widths,
        )

    @classmethod
    def from_parameters(cls, params):
        return cls.construct(
            params.binning, params.space, params.bin_min, params.bin_max,
            params.num_bins, pad_bins=params.pad_bins,
            box_size=params.boxsize, ngrid=params.ngrid,
        )

    def __len__(self):
        return self.num_bins
