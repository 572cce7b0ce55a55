"""
Run configuration: closed choice types and the validated parameter set.

A ``ParameterSet`` is built either from a mapping or from a parameter file
(``.json``, or plain ``key = value`` lines with ``#`` comments).  Every
string-valued choice is converted to its ``Enum`` on construction, so an
unrecognised value fails immediately with ``InvalidConfigurationError``
instead of falling through somewhere downstream.
"""
import json
import logging
import os
import re
from dataclasses import dataclass, fields, asdict
from enum import Enum
from typing import Optional

from .errors import InvalidConfigurationError, ParameterIOError

logger = logging.getLogger(__name__)


class CatalogueType(str, Enum):
    SURVEY = "survey"
    SIM = "sim"
    RANDOM = "random"
    NONE = "none"


class StatisticType(str, Enum):
    POWSPEC = "powspec"
    CORRFUNC = "2pcf"
    CORRFUNC_WINDOW = "2pcf-win"
    BISPEC = "bispec"
    THREEPCF = "3pcf"
    THREEPCF_WINDOW = "3pcf-win"
    THREEPCF_WINDOW_WA = "3pcf-win-wa"

    @property
    def npoint(self):
        if self in (StatisticType.POWSPEC, StatisticType.CORRFUNC, StatisticType.CORRFUNC_WINDOW):
            return 2
        return 3

    @property
    def space(self):
        if self in (StatisticType.POWSPEC, StatisticType.BISPEC):
            return BinSpace.FOURIER
        return BinSpace.CONFIG


class BinScheme(str, Enum):
    LIN = "lin"
    LOG = "log"
    LINPAD = "linpad"
    LOGPAD = "logpad"
    CUSTOM = "custom"


class BinSpace(str, Enum):
    CONFIG = "config"
    FOURIER = "fourier"


class Alignment(str, Enum):
    PAD = "pad"
    CENTRE = "centre"


class PadScale(str, Enum):
    GRID = "grid"
    BOX = "box"


class Assignment(str, Enum):
    NGP = "ngp"
    CIC = "cic"
    TSC = "tsc"
    PCS = "pcs"

    @property
    def order(self):
        return {"ngp": 1, "cic": 2, "tsc": 3, "pcs": 4}[self.value]


class NormConvention(str, Enum):
    NONE = "none"
    PARTICLE = "particle"
    MESH = "mesh"
    MESH_MIXED = "mesh-mixed"


class Form(str, Enum):
    FULL = "full"
    DIAG = "diag"
    OFFDIAG = "off-diag"
    ROW = "row"


def parse_choice(enum_cls, value, name):
    """Convert ``value`` to a member of ``enum_cls`` or fail with a clear message."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip())
    except ValueError:
        choices = ", ".join(repr(member.value) for member in enum_cls)
        raise InvalidConfigurationError(
            f"Invalid `{name}`: {value!r} (expected one of {choices})."
        ) from None


def _as_vector(value, name, cast):
    if isinstance(value, str):
        value = [item for item in re.split(r"[\s,]+", value.strip().strip("[]()")) if item]
        if len(value) == 1:
            value = value * 3
    if isinstance(value, (int, float)):
        value = [value] * 3
    try:
        vector = tuple(cast(item) for item in value)
    except (TypeError, ValueError):
        raise InvalidConfigurationError(f"Invalid `{name}`: {value!r}.") from None
    if len(vector) != 3:
        raise InvalidConfigurationError(f"`{name}` must have 3 components, got {len(vector)}.")
    return vector


def _as_scalar(value, name, cast):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise InvalidConfigurationError(f"Invalid `{name}`: {value!r}.") from None


@dataclass
class ParameterSet:
    catalogue_type: CatalogueType = CatalogueType.SURVEY
    statistic_type: StatisticType = StatisticType.POWSPEC
    data_catalogue_file: str = ""
    rand_catalogue_file: str = ""
    catalogue_columns: str = ""
    measurement_dir: str = "."
    output_tag: str = ""

    boxsize: tuple = (1000., 1000., 1000.)
    ngrid: tuple = (64, 64, 64)
    alignment: Alignment = Alignment.CENTRE
    padscale: PadScale = PadScale.BOX
    padfactor: float = 0.
    assignment: Assignment = Assignment.CIC
    norm_convention: NormConvention = NormConvention.PARTICLE

    binning: BinScheme = BinScheme.LIN
    space: Optional[BinSpace] = None
    bin_min: float = 0.
    bin_max: float = 0.1
    num_bins: int = 10
    pad_bins: int = 5

    ell1: int = 0
    ell2: int = 0
    ELL: int = 0
    i_wa: int = 0
    j_wa: int = 0
    form: Form = Form.DIAG
    idx_bin: int = 0

    verbose: int = logging.INFO

    def __post_init__(self):
        self.catalogue_type = parse_choice(CatalogueType, self.catalogue_type, "catalogue_type")
        self.statistic_type = parse_choice(StatisticType, self.statistic_type, "statistic_type")
        self.alignment = parse_choice(Alignment, self.alignment, "alignment")
        self.padscale = parse_choice(PadScale, self.padscale, "padscale")
        self.assignment = parse_choice(Assignment, self.assignment, "assignment")
        self.norm_convention = parse_choice(NormConvention, self.norm_convention, "norm_convention")
        self.binning = parse_choice(BinScheme, self.binning, "binning")
        self.form = parse_choice(Form, self.form, "form")

        if self.space in (None, ""):
            self.space = self.statistic_type.space
        else:
            self.space = parse_choice(BinSpace, self.space, "space")
            if self.space != self.statistic_type.space:
                raise InvalidConfigurationError(
                    f"Binning space {self.space.value!r} is inconsistent with "
                    f"statistic {self.statistic_type.value!r}."
                )

        self.boxsize = _as_vector(self.boxsize, "boxsize", float)
        self.ngrid = _as_vector(self.ngrid, "ngrid", int)
        if min(self.boxsize) <= 0.:
            raise InvalidConfigurationError(f"`boxsize` must be positive: {self.boxsize}.")
        if min(self.ngrid) < 1:
            raise InvalidConfigurationError(f"`ngrid` must be positive: {self.ngrid}.")

        for name in ("padfactor", "bin_min", "bin_max"):
            setattr(self, name, _as_scalar(getattr(self, name), name, float))
        for name in ("num_bins", "pad_bins", "ell1", "ell2", "ELL", "i_wa", "j_wa", "idx_bin", "verbose"):
            setattr(self, name, _as_scalar(getattr(self, name), name, int))
        for name in ("data_catalogue_file", "rand_catalogue_file", "catalogue_columns",
                     "measurement_dir", "output_tag"):
            setattr(self, name, "" if getattr(self, name) is None else str(getattr(self, name)).strip())

        if self.padfactor < 0.:
            raise InvalidConfigurationError("`padfactor` must be non-negative.")
        if self.pad_bins < 0:
            raise InvalidConfigurationError("`pad_bins` must be non-negative.")
        for name in ("ell1", "ell2", "ELL", "i_wa", "j_wa"):
            if getattr(self, name) < 0:
                raise InvalidConfigurationError(f"`{name}` must be non-negative.")

    @property
    def npoint(self):
        return self.statistic_type.npoint

    @property
    def volume(self):
        return self.boxsize[0] * self.boxsize[1] * self.boxsize[2]

    @property
    def columns(self):
        if not self.catalogue_columns:
            return None
        return tuple(name for name in re.split(r"[\s,]+", self.catalogue_columns) if name)

    @classmethod
    def from_dict(cls, mapping):
        known = {f.name for f in fields(cls)}
        mapping = dict(mapping)
        # Per-axis keys, e.g. ``boxsize_x``, as an alternative to a 3-vector.
        for name in ("boxsize", "ngrid"):
            axis_keys = [f"{name}_{axis}" for axis in "xyz"]
            present = [key for key in axis_keys if key in mapping]
            if not present:
                continue
            if name in mapping or len(present) != 3:
                raise InvalidConfigurationError(
                    f"Give either `{name}` or all of {', '.join(axis_keys)}."
                )
            mapping[name] = [mapping.pop(key) for key in axis_keys]
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise InvalidConfigurationError(f"Unknown parameters: {', '.join(unknown)}.")
        return cls(**mapping)

    @classmethod
    def from_file(cls, path):
        try:
            with open(path, "r", encoding="utf-8") as fin:
                text = fin.read()
        except OSError as exc:
            raise ParameterIOError(f"Cannot read parameter file '{path}'.") from exc

        if str(path).endswith(".json"):
            try:
                mapping = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ParameterIOError(f"Malformed JSON parameter file '{path}': {exc}.") from exc
        else:
            mapping = {}
            for lineno, line in enumerate(text.splitlines(), start=1):
                line = line.split("#", 1)[0].strip()
                if not line:
                    continue
                if "=" not in line:
                    raise ParameterIOError(f"Malformed line {lineno} in '{path}': {line!r}.")
                key, value = (part.strip() for part in line.split("=", 1))
                mapping[key] = value
            mapping = {key: value for key, value in mapping.items() if value != ""}

        logger.debug("Read %d parameters from %s.", len(mapping), path)
        return cls.from_dict(mapping)

    def to_dict(self):
        params = asdict(self)
        for key, value in params.items():
            if isinstance(value, Enum):
                params[key] = value.value
            elif isinstance(value, tuple):
                params[key] = list(value)
        return params

    def print_to_file(self, path=None):
        """Write the parameters in use (as ``key = value`` lines) and return the file path."""
        if path is None:
            path = os.path.join(self.measurement_dir, "parameters_used")
        with open(path, "w", encoding="utf-8") as fout:
            for key, value in self.to_dict().items():
                if isinstance(value, list):
                    value = ", ".join(str(item) for item in value)
                fout.write(f"{key} = {value}\n")
        return path
