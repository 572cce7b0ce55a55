import logging

import jax
import jax.numpy as jnp
import numpy as np
import pandas as pd

from .errors import CatalogueIOError, InvalidConfigurationError

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = ("x", "y", "z", "w")
WEIGHT_COLUMNS = ("w", "ws", "wc")


def _read_rows(path, ncols):
    """Return the rows of ``path`` made of exactly ``ncols`` numeric fields."""
    try:
        with open(path, "r", encoding="utf-8") as fin:
            lines = fin.read().splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        raise CatalogueIOError(f"Cannot open file '{path}'.") from exc

    if not lines:
        return np.empty((0, ncols))

    tokens = pd.Series(lines, dtype=object).str.split(expand=True)
    if tokens.shape[1] < ncols:
        return np.empty((0, ncols))

    ntokens = tokens.notna().sum(axis=1)
    values = tokens.iloc[:, :ncols].apply(pd.to_numeric, errors="coerce")
    valid = (ntokens == ncols) & values.notna().all(axis=1) & np.isfinite(values).all(axis=1)
    nskipped = int((~valid).sum())
    if nskipped:
        logger.debug("Skipped %d non-conforming lines in %s.", nskipped, path)
    return values[valid].to_numpy(dtype=np.float64)


@jax.jit
def _offset_positions(pos, dpos):
    return pos - dpos[None, :]


@jax.jit
def _wrap_positions(pos, box_size):
    # A tiny negative coordinate can round to exactly the box size once shifted.
    shifted_up = pos + box_size[None, :]
    shifted_up = jnp.where(shifted_up < box_size[None, :], shifted_up, 0.)
    return jnp.where(
        pos >= box_size[None, :],
        pos - box_size[None, :],
        jnp.where(pos < 0., shifted_up, pos)
    )


def _as_vec3(value, name):
    vec = np.broadcast_to(np.asarray(value, dtype=np.float64), (3,)).copy()
    if not np.all(np.isfinite(vec)):
        raise InvalidConfigurationError(f"`{name}` must be finite: {value}.")
    return vec


class ParticleCatalogue:
    """
    Particle positions and weights with a cached bounding box.

    Positions are held as an ``(N, 3)`` float64 array and weights as an
    ``(N,)`` array.  Geometric transforms replace the position array and
    recompute ``pos_min``/``pos_max`` before returning.  ``observer`` follows
    the coordinate origin of the input frame through every offset, so lines of
    sight stay anchored to it after the catalogue is moved into a box.
    """

    def __init__(self, positions, weights=None, source=None):
        positions = jnp.asarray(positions, dtype=jnp.float64)
        if positions.ndim != 2 or positions.shape[-1] != 3:
            raise InvalidConfigurationError(
                f"Particle positions must have shape (N, 3), got {positions.shape}."
            )
        if positions.shape[0] == 0:
            raise InvalidConfigurationError("Non-positive number of particles in catalogue.")

        if weights is None:
            weights = jnp.ones(positions.shape[0], dtype=jnp.float64)
        else:
            weights = jnp.asarray(weights, dtype=jnp.float64)
        if weights.shape != (positions.shape[0],):
            raise InvalidConfigurationError(
                f"Particle weights must have shape ({positions.shape[0]},), got {weights.shape}."
            )
        if bool(jnp.any(weights < 0.)):
            raise InvalidConfigurationError("Particle weights must be non-negative.")

        self.pos = positions
        self.weights = weights
        self.source = source
        self.observer = jnp.zeros(3, dtype=jnp.float64)
        self.pos_min = None
        self.pos_max = None
        self.compute_bounds()

    def __len__(self):
        return self.ntotal

    def __getitem__(self, pid):
        return self.pos[pid], self.weights[pid]

    def __repr__(self):
        return f"ParticleCatalogue(ntotal={self.ntotal}, wstotal={self.wstotal:.6e}, source={self.source!r})"

    @property
    def ntotal(self):
        return int(self.pos.shape[0])

    @property
    def wstotal(self):
        return float(jnp.sum(self.weights))

    @property
    def nbytes(self):
        return int(self.pos.nbytes + self.weights.nbytes)

    @classmethod
    def load(cls, path, columns=None):
        """
        Load a whitespace-separated catalogue file.

        Parameters
        ----------
        path : str
            Catalogue file path.
        columns : sequence of str, default=None
            Column names, in file order.  Must contain ``x``, ``y``, ``z``;
            any of ``w``, ``ws``, ``wc`` present are multiplied into the
            particle weight (weight 1 if none).  Other names are read and
            ignored.  Defaults to ``("x", "y", "z", "w")``.

        Lines that do not consist of exactly ``len(columns)`` numeric fields
        are skipped.
        """
        columns = DEFAULT_COLUMNS if columns is None else tuple(columns)
        if len(set(columns)) != len(columns) or not {"x", "y", "z"} <= set(columns):
            raise InvalidConfigurationError(
                f"Catalogue columns must be unique and include x, y, z: {columns}."
            )

        rows = _read_rows(path, len(columns))
        if rows.shape[0] == 0:
            raise CatalogueIOError(f"No valid particle rows in file '{path}'.")

        index = {name: icol for icol, name in enumerate(columns)}
        positions = rows[:, [index["x"], index["y"], index["z"]]]
        weights = np.ones(rows.shape[0])
        for name in WEIGHT_COLUMNS:
            if name in index:
                weights = weights * rows[:, index[name]]

        catalogue = cls(positions, weights, source=str(path))
        logger.info(
            "Loaded %d particles (total weight %.6e) from %s.",
            catalogue.ntotal, catalogue.wstotal, path
        )
        return catalogue

    def compute_bounds(self):
        self.pos_min = np.asarray(jnp.min(self.pos, axis=0))
        self.pos_max = np.asarray(jnp.max(self.pos, axis=0))
        return self.pos_min, self.pos_max

    def offset(self, delta):
        """Subtract ``delta`` from every position (and from the observer)."""
        delta = jnp.asarray(_as_vec3(delta, "delta"))
        self.pos = _offset_positions(self.pos, delta)
        self.observer = self.observer - delta
        self.compute_bounds()

    def wrap_periodic(self, box_size):
        """
        Wrap positions into ``[0, box_size)`` with a single shift per axis.

        Positions are assumed to lie within one box length of the box; a
        particle displaced further is shifted once and stays outside.
        """
        box_size = _as_vec3(box_size, "box_size")
        self.pos = _wrap_positions(self.pos, jnp.asarray(box_size))
        self.compute_bounds()

    def _shift_with(self, delta, companions):
        self.offset(delta)
        for companion in companions:
            companion.offset(delta)

    def centre_in_box(self, box_size, companions=()):
        """Move the bounding-box midpoint to the box centre; companions move alongside."""
        box_size = _as_vec3(box_size, "box_size")
        midpoint = self.pos_min + (self.pos_max - self.pos_min) / 2.
        delta = midpoint - box_size / 2.
        self._shift_with(delta, companions)
        self.check_in_box(box_size, companions)
        return delta

    def pad_in_box(self, box_size, pad_amount, companions=()):
        """Move the catalogue so its lower bounding corner sits at ``pad_amount``."""
        box_size = _as_vec3(box_size, "box_size")
        pad = _as_vec3(pad_amount, "pad_amount")
        if np.any(pad < 0.):
            raise InvalidConfigurationError(f"Padding must be non-negative: {pad_amount}.")
        delta = self.pos_min - pad
        self._shift_with(delta, companions)
        self.check_in_box(box_size, companions)
        return delta

    def pad_grids(self, box_size, ngrid, pad_cells, companions=()):
        """As :meth:`pad_in_box`, with the margin given in grid cells."""
        box_size = _as_vec3(box_size, "box_size")
        ngrid = _as_vec3(ngrid, "ngrid")
        pad = _as_vec3(pad_cells, "pad_cells") * box_size / ngrid
        return self.pad_in_box(box_size, pad, companions)

    def check_in_box(self, box_size, companions=()):
        for catalogue in (self, *companions):
            if np.any(catalogue.pos_min < 0.) or np.any(catalogue.pos_max > box_size):
                logger.warning(
                    "Catalogue %s extends outside the box: extents [%s, %s] vs box size %s.",
                    catalogue.source, catalogue.pos_min, catalogue.pos_max, box_size
                )

    @staticmethod
    def alpha_ratio(catalogue_data, catalogue_rand):
        """Ratio of the total data weight to the total random weight."""
        wstotal_rand = catalogue_rand.wstotal
        if wstotal_rand == 0.:
            raise InvalidConfigurationError(
                "Random catalogue has zero total weight; alpha ratio is undefined."
            )
        return catalogue_data.wstotal / wstotal_rand
