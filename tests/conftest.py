import numpy as np
import pytest


def lattice_positions(box_size, ngrid):
    """One particle on every mesh node of a cubic ``ngrid``-per-side mesh."""
    cell = box_size / ngrid
    nodes = np.arange(ngrid) * cell
    grid = np.stack(np.meshgrid(nodes, nodes, nodes, indexing="ij"), axis=-1)
    return grid.reshape(-1, 3)


def write_catalogue(path, positions, weights=None):
    positions = np.asarray(positions, dtype=float)
    if weights is None:
        table = positions
    else:
        table = np.column_stack([positions, weights])
    np.savetxt(path, table, fmt="%.10f")
    return str(path)


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def uniform_positions(rng):
    def make(n, low, high):
        return rng.uniform(low, high, size=(n, 3))
    return make
