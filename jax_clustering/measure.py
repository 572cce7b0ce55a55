"""
Measurement orchestrator.

Runs the stages of a measurement in a fixed order: catalogue loading [A],
binning [B.1], box alignment [B.2], lines of sight [B.3], constants and
normalization [B.4], the clustering estimator [B.5], and output [C].
"""
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from . import correlations, normalization
from .binning import Binning
from .catalogue import ParticleCatalogue
from .config import Alignment, CatalogueType, PadScale, StatisticType
from .context import RunContext
from .errors import InvalidConfigurationError
from .io import build_header, build_output_path, write_measurements
from .los import compute_los

logger = logging.getLogger(__name__)

SUPPORTED_COMBINATIONS = {
    StatisticType.POWSPEC: (CatalogueType.SURVEY, CatalogueType.SIM),
    StatisticType.CORRFUNC: (CatalogueType.SURVEY, CatalogueType.SIM),
    StatisticType.CORRFUNC_WINDOW: (CatalogueType.RANDOM,),
    StatisticType.BISPEC: (CatalogueType.SURVEY, CatalogueType.SIM),
    StatisticType.THREEPCF: (CatalogueType.SURVEY, CatalogueType.SIM),
    StatisticType.THREEPCF_WINDOW: (CatalogueType.RANDOM,),
    StatisticType.THREEPCF_WINDOW_WA: (CatalogueType.RANDOM,),
}


@dataclass
class MeasurementResult:
    output_path: str
    measurements: Any
    norm_factors: normalization.NormalizationFactors
    alpha: float
    binning: Binning
    parameters_path: Optional[str] = None


def validate_combination(params):
    supported = SUPPORTED_COMBINATIONS.get(params.statistic_type, ())
    if params.catalogue_type not in supported:
        raise InvalidConfigurationError(
            f"Unsupported catalogue type {params.catalogue_type.value!r} "
            f"for statistic {params.statistic_type.value!r}."
        )


def load_catalogues(params, context):
    catalogue_data = catalogue_rand = None
    if params.catalogue_type in (CatalogueType.SURVEY, CatalogueType.SIM):
        if not params.data_catalogue_file:
            raise InvalidConfigurationError("`data_catalogue_file` is required.")
        catalogue_data = ParticleCatalogue.load(params.data_catalogue_file, columns=params.columns)
        context.allocate("catalogue_data", catalogue_data.nbytes)
    if params.catalogue_type in (CatalogueType.SURVEY, CatalogueType.RANDOM):
        if not params.rand_catalogue_file:
            raise InvalidConfigurationError("`rand_catalogue_file` is required.")
        catalogue_rand = ParticleCatalogue.load(params.rand_catalogue_file, columns=params.columns)
        context.allocate("catalogue_rand", catalogue_rand.nbytes)
    return catalogue_data, catalogue_rand


def align_catalogues(params, catalogue_data=None, catalogue_rand=None):
    """
    Place the catalogues in the measurement box.

    Periodic boxes are wrapped.  Otherwise the random catalogue is the
    reference and the data catalogue (if any) receives the same shift.
    """
    if params.catalogue_type == CatalogueType.SIM:
        catalogue_data.wrap_periodic(params.boxsize)
        return

    companions = (catalogue_data,) if catalogue_data is not None else ()
    if params.alignment == Alignment.PAD:
        if params.padscale == PadScale.GRID:
            catalogue_rand.pad_grids(params.boxsize, params.ngrid, params.padfactor, companions)
        else:
            pad = [params.padfactor * length for length in params.boxsize]
            catalogue_rand.pad_in_box(params.boxsize, pad, companions)
    else:
        catalogue_rand.centre_in_box(params.boxsize, companions)


def compute_statistic(params, binning, norm_factor, alpha, catalogue_data=None, catalogue_rand=None,
                      los_data=None, los_rand=None, context=None):
    statistic = params.statistic_type
    survey = params.catalogue_type == CatalogueType.SURVEY

    if statistic == StatisticType.POWSPEC:
        if survey:
            return correlations.compute_powspec(
                catalogue_data, catalogue_rand, los_data, los_rand,
                params, binning, norm_factor, alpha=alpha, context=context
            )
        return correlations.compute_powspec_in_gpp_box(
            catalogue_data, params, binning, norm_factor, context=context
        )
    if statistic == StatisticType.CORRFUNC:
        if survey:
            return correlations.compute_corrfunc(
                catalogue_data, catalogue_rand, los_data, los_rand,
                params, binning, norm_factor, alpha=alpha, context=context
            )
        return correlations.compute_corrfunc_in_gpp_box(
            catalogue_data, params, binning, norm_factor, context=context
        )
    if statistic == StatisticType.CORRFUNC_WINDOW:
        return correlations.compute_corrfunc_window(
            catalogue_rand, los_rand, params, binning, alpha, norm_factor, context=context
        )
    if statistic == StatisticType.BISPEC:
        if survey:
            return correlations.compute_bispec(
                catalogue_data, catalogue_rand, los_data, los_rand,
                params, binning, norm_factor, alpha=alpha, context=context
            )
        return correlations.compute_bispec_in_gpp_box(
            catalogue_data, params, binning, norm_factor, context=context
        )
    if statistic == StatisticType.THREEPCF:
        if survey:
            return correlations.compute_3pcf(
                catalogue_data, catalogue_rand, los_data, los_rand,
                params, binning, norm_factor, alpha=alpha, context=context
            )
        return correlations.compute_3pcf_in_gpp_box(
            catalogue_data, params, binning, norm_factor, context=context
        )
    if statistic in (StatisticType.THREEPCF_WINDOW, StatisticType.THREEPCF_WINDOW_WA):
        return correlations.compute_3pcf_window(
            catalogue_rand, los_rand, params, binning, alpha, norm_factor,
            wide_angle=statistic == StatisticType.THREEPCF_WINDOW_WA, context=context
        )
    raise InvalidConfigurationError(f"Unsupported statistic: {statistic!r}.")


def run_measurement(params, context=None):
    """Run a full measurement described by ``params`` and write its output file."""
    context = RunContext() if context is None else context
    validate_combination(params)
    os.makedirs(params.measurement_dir, exist_ok=True)

    logger.info("[A] Reading catalogues...")
    catalogue_data, catalogue_rand = load_catalogues(params, context)
    logger.info("[A] ... read catalogues.")

    logger.info("[B.1] Setting up binning...")
    binning = Binning.from_parameters(params)
    logger.info("[B.1] ... set up binning.")

    logger.info("[B.2] Aligning catalogues inside measurement box...")
    align_catalogues(params, catalogue_data, catalogue_rand)
    logger.info("[B.2] ... aligned catalogues inside measurement box.")

    los_data = los_rand = None
    if params.catalogue_type != CatalogueType.SIM:
        logger.info("[B.3] Computing lines of sight...")
        if catalogue_data is not None:
            los_data = compute_los(catalogue_data, context, name="data")
        if catalogue_rand is not None:
            los_rand = compute_los(catalogue_rand, context, name="random")
        logger.info("[B.3] ... computed lines of sight.")

    logger.info("[B.4] Computing constants...")
    if catalogue_data is not None and catalogue_rand is not None:
        alpha = ParticleCatalogue.alpha_ratio(catalogue_data, catalogue_rand)
    else:
        alpha = 1.
    logger.info("Alpha contrast: %.6e.", alpha)

    norm_factors = normalization.select(params, catalogue_data, catalogue_rand, alpha)
    logger.info("[B.4] ... computed constants.")

    logger.info("[B.5] Measuring %s...", params.statistic_type.value)
    measurements = compute_statistic(
        params, binning, norm_factors.selected, alpha,
        catalogue_data=catalogue_data, catalogue_rand=catalogue_rand,
        los_data=los_data, los_rand=los_rand, context=context
    )
    logger.info("[B.5] ... measured %s.", params.statistic_type.value)

    logger.info("[C] Saving measurements...")
    output_path = build_output_path(params)
    header = build_header(
        params, norm_factors, catalogue_data, catalogue_rand,
        alpha=alpha if catalogue_data is not None and catalogue_rand is not None else None
    )
    write_measurements(output_path, measurements, header)
    parameters_path = params.print_to_file()
    logger.info("[C] ... saved measurements.")

    for label in ("los_data", "los_random", "catalogue_data", "catalogue_rand"):
        context.release(label)
    context.finalise()

    return MeasurementResult(
        output_path=output_path, measurements=measurements, norm_factors=norm_factors,
        alpha=alpha, binning=binning, parameters_path=parameters_path,
    )
