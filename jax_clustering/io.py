import logging
import os

import numpy as np

from .config import Form, StatisticType

logger = logging.getLogger(__name__)

FLOAT_FORMAT = "%.9e"
INT_FORMAT = "%10d"

_OUTPUT_PREFIX = {
    StatisticType.POWSPEC: "pk",
    StatisticType.CORRFUNC: "xi",
    StatisticType.CORRFUNC_WINDOW: "xiw",
    StatisticType.BISPEC: "bk",
    StatisticType.THREEPCF: "zeta",
    StatisticType.THREEPCF_WINDOW: "zetaw",
    StatisticType.THREEPCF_WINDOW_WA: "zetaw",
}


def form_label(form, idx_bin=0):
    if form == Form.OFFDIAG:
        return f"offdiag{idx_bin}"
    if form == Form.ROW:
        return f"row{idx_bin}"
    return form.value


def build_output_path(params):
    """Measurement file path for the statistic, multipoles and form in ``params``."""
    statistic = params.statistic_type
    prefix = _OUTPUT_PREFIX[statistic]
    if statistic.npoint == 2:
        name = f"{prefix}{params.ELL}"
    else:
        name = f"{prefix}{params.ell1}{params.ell2}{params.ELL}"
        if statistic == StatisticType.THREEPCF_WINDOW_WA:
            name += f"_wa{params.i_wa}{params.j_wa}"
        name += "_" + form_label(params.form, params.idx_bin)
    return os.path.join(params.measurement_dir, name + params.output_tag)


def catalogue_summary(name, catalogue):
    return (
        f"{name} catalogue: {catalogue.ntotal} particles of total weight {catalogue.wstotal:.3f}, "
        f"extents ([{catalogue.pos_min[0]:.3f}, {catalogue.pos_max[0]:.3f}], "
        f"[{catalogue.pos_min[1]:.3f}, {catalogue.pos_max[1]:.3f}], "
        f"[{catalogue.pos_min[2]:.3f}, {catalogue.pos_max[2]:.3f}]); source: {catalogue.source}"
    )


def build_header(params, norm_factors, catalogue_data=None, catalogue_rand=None, alpha=None):
    lines = []
    if catalogue_data is not None:
        lines.append(catalogue_summary("Data", catalogue_data))
    if catalogue_rand is not None:
        lines.append(catalogue_summary("Random", catalogue_rand))
    if alpha is not None:
        lines.append(f"Alpha contrast: {alpha:.6e}")
    lines.append(
        "Box size: [{:.3f}, {:.3f}, {:.3f}]".format(*params.boxsize)
    )
    lines.append(f"Box alignment: {params.alignment.value}")
    lines.append("Mesh number: [{:d}, {:d}, {:d}]".format(*params.ngrid))
    lines.append(f"Mesh assignment scheme: {params.assignment.value}")
    lines.append(f"Normalization factors: {norm_factors.summary()}")
    return lines


def write_measurements(path, measurements, header_lines=()):
    """Write the measurement table with a ``#``-prefixed header."""
    table = measurements.to_table()
    fmt = [
        INT_FORMAT if np.issubdtype(dtype, np.integer) else FLOAT_FORMAT
        for dtype in table.dtypes
    ]
    columns = ", ".join(f"[{icol}] {name}" for icol, name in enumerate(table.columns))
    header = "\n".join(list(header_lines) + [columns])

    np.savetxt(path, table.to_numpy(dtype=np.float64), fmt=fmt, header=header, comments="# ")
    logger.info("Measurements saved to %s.", path)
    return path
