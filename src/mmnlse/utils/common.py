"""Common helpers shared across mmnlse modules."""

from typing import Union

import jax.numpy as jnp
import numpy as np
from jax import core as jax_core

FloatLike = Union[float, jnp.ndarray]


def _return_float_if_possible(value: FloatLike) -> FloatLike:
    """Return Python float unless the value is a JAX tracer.

    Args:
        value: A scalar value that may be a Python float or a JAX tracer.

    Returns:
        The tracer unchanged, otherwise ``float(value)``.
    """
    if isinstance(value, jax_core.Tracer):
        return value
    return float(value)


def field_has_nan(array) -> bool:
    """True if any element of ``array`` is NaN. Forces a host sync."""
    return bool(np.isnan(np.asarray(array)).any())


def broadcast_last_axis(vector: jnp.ndarray, ndim: int) -> jnp.ndarray:
    """Reshape a (n_points,) vector so it broadcasts against (..., n_points)."""
    return vector.reshape((1,) * (ndim - 1) + (vector.shape[0],))
