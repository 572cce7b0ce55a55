import argparse
import logging
import sys

from .config import ParameterSet
from .errors import (
    CatalogueIOError, InvalidConfigurationError, ParameterIOError, UnimplementedError,
)
from .logging_config import setup_logging
from .measure import run_measurement

logger = logging.getLogger("jax_clustering")


def main(argv=None):
    ap = argparse.ArgumentParser(
        prog="jax-clustering",
        description="Measure two- and three-point clustering statistics from particle catalogues.",
    )
    ap.add_argument("paramfile", help="Parameter file (.json, or 'key = value' lines)")
    ap.add_argument("--log-file", default=None, help="Also write the log to this file")
    ap.add_argument("--verbose", type=int, default=None,
                    help="Logging level, overriding the parameter file (e.g. 10 for debug)")
    args = ap.parse_args(argv)

    setup_logging(logging.INFO if args.verbose is None else args.verbose, log_file=args.log_file)
    try:
        params = ParameterSet.from_file(args.paramfile)
        if args.verbose is None:
            setup_logging(params.verbose, log_file=args.log_file)
        result = run_measurement(params)
    except (ParameterIOError, CatalogueIOError, InvalidConfigurationError, UnimplementedError) as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1

    logger.info("Measurement completed: %s.", result.output_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
