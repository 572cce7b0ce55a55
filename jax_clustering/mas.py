import functools
import logging

import jax
import jax.numpy as jnp
import numpy as np

from .config import Assignment, parse_choice

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)


class MeshGeometry:
    """Regular mesh over ``[0, box_size)`` with ``ngrid`` nodes per axis, node 0 at the origin."""

    def __init__(self, box_size, ngrid):
        self.box_size = np.broadcast_to(np.asarray(box_size, dtype=np.float64), (3,)).copy()
        self.ngrid = tuple(int(n) for n in np.broadcast_to(np.asarray(ngrid), (3,)))
        self.cell_size = self.box_size / np.asarray(self.ngrid)
        self.cell_volume = float(np.prod(self.cell_size))
        self.volume = float(np.prod(self.box_size))
        self.size = int(np.prod(self.ngrid))

    def __repr__(self):
        return f"MeshGeometry(box_size={tuple(self.box_size)}, ngrid={self.ngrid})"

    def _signed_indices(self):
        dims = []
        for axis, n in enumerate(self.ngrid):
            shape = [1, 1, 1]
            shape[axis] = n
            dims.append(jnp.reshape(jnp.fft.fftfreq(n, 1. / n), shape))
        return dims

    def wavevectors(self):
        kF = 2. * np.pi / self.box_size
        return [jnp.broadcast_to(ki * kf, self.ngrid) for ki, kf in zip(self._signed_indices(), kF)]

    def wavenumbers(self):
        kx, ky, kz = self.wavevectors()
        return jnp.sqrt(kx**2 + ky**2 + kz**2)

    def separations(self):
        return [jnp.broadcast_to(ri * dr, self.ngrid) for ri, dr in zip(self._signed_indices(), self.cell_size)]

    def distances(self):
        rx, ry, rz = self.separations()
        return jnp.sqrt(rx**2 + ry**2 + rz**2)

    def compensation(self, assignment):
        """Inverse of the assignment window on the Fourier mesh."""
        order = parse_choice(Assignment, assignment, "assignment").order

        def window_correction(x, index):
            return (1. / jnp.sinc(x / jnp.pi))**index

        correction = 1.
        for ki, n in zip(self._signed_indices(), self.ngrid):
            correction = correction * window_correction(jnp.pi * ki / n, order)
        return jnp.broadcast_to(correction, self.ngrid)


def _kernel_weights(dist, order):
    dist = jnp.abs(dist)
    if order == 1:
        return jnp.ones_like(dist)
    if order == 2:
        return 1. - dist
    if order == 3:
        return jnp.where(dist < 0.5, 0.75 - dist**2, 0.5 * (1.5 - dist)**2)
    return jnp.where(dist < 1., (4. - 6. * dist**2 + 3. * dist**3) / 6., (2. - dist)**3 / 6.)


@functools.partial(jax.jit, static_argnames=("ngrid", "order", "wrap"))
def _paint(pos, weights, origin, cell_size, ngrid, order, wrap):

    xpos = (pos - origin[None, :]) / cell_size[None, :]

    # Odd orders are centred on the nearest node, even orders on the cell.
    if order % 2:
        start = jnp.floor(xpos + 0.5)
    else:
        start = jnp.floor(xpos)
    start = start.astype(jnp.int32) - (order - 1) // 2

    idx = start[:, :, None] + jnp.arange(order)[None, None, :]
    wgt = _kernel_weights(xpos[:, :, None] - idx, order)

    n_bins = jnp.asarray(ngrid)[None, :, None]
    if wrap:
        idx = (idx + n_bins) % n_bins
    else:
        inside = (idx >= 0) & (idx < n_bins)
        wgt = jnp.where(inside, wgt, 0.)
        idx = jnp.clip(idx, 0, n_bins - 1)

    values = (
        weights[:, None, None, None]
        * wgt[:, 0, :, None, None] * wgt[:, 1, None, :, None] * wgt[:, 2, None, None, :]
    )
    ix = idx[:, 0, :, None, None]
    iy = idx[:, 1, None, :, None]
    iz = idx[:, 2, None, None, :]

    delta = jnp.zeros(ngrid, dtype=values.dtype)
    delta = delta.at[ix, iy, iz].add(values)
    return delta


def assign_weights_to_mesh(positions, weights, geometry, assignment, origin=None, wrap=True):
    """
    Paint weighted number density (weight per cell volume) on the mesh.

    ``weights`` may be complex.  With ``wrap`` the mesh is periodic; otherwise
    contributions falling beyond the mesh edges are dropped.
    """
    order = parse_choice(Assignment, assignment, "assignment").order
    positions = jnp.asarray(positions, dtype=jnp.float64)
    weights = jnp.asarray(weights)
    if not jnp.issubdtype(weights.dtype, jnp.complexfloating):
        weights = weights.astype(jnp.float64)
    origin = jnp.zeros(3) if origin is None else jnp.asarray(origin, dtype=jnp.float64)
    delta = _paint(
        positions, weights, origin, jnp.asarray(geometry.cell_size),
        geometry.ngrid, order, bool(wrap)
    )
    return delta / geometry.cell_volume


def fft(mesh, geometry, context=None):
    """Forward transform, ``F(k) = dV sum_x f(x) exp(-ikx)``."""
    if context is not None:
        context.record_fft()
    return geometry.cell_volume * jnp.fft.fftn(mesh)


def ifft(mesh_k, geometry, context=None):
    """Backward transform, inverse of :func:`fft`."""
    if context is not None:
        context.record_ifft()
    return jnp.fft.ifftn(mesh_k) / geometry.cell_volume
