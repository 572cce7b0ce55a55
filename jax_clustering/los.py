import logging

import jax
import jax.numpy as jnp
import numpy as np

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)


@jax.jit
def _los_kernel(pos, observer):
    rel = pos - observer[None, :]
    dist = jnp.sqrt(jnp.sum(rel**2, axis=-1))
    degenerate = dist == 0.
    dist = jnp.where(degenerate, 1., dist)
    return rel / dist[:, None], dist, degenerate


def compute_los(catalogue, context=None, name="data"):
    """
    Unit line-of-sight vectors from the observer to every particle.

    A particle sitting on the observer gets the zero vector; each one is
    reported as a warning (and recorded in ``context``) without stopping.
    """
    los, _, degenerate = _los_kernel(catalogue.pos, catalogue.observer)
    for pid in np.flatnonzero(np.asarray(degenerate)):
        message = (
            f"Particle {pid} in the {name} catalogue coincides with the observer; "
            "its line of sight is set to zero."
        )
        if context is not None:
            context.warn(message)
        else:
            logger.warning(message)
    if context is not None:
        context.allocate(f"los_{name}", los.nbytes)
    return los


def los_distances(catalogue):
    """Comoving distances ``|pos - observer|``, with 1 in place of zero."""
    _, dist, _ = _los_kernel(catalogue.pos, catalogue.observer)
    return dist
