# jaxbij/distributions.py
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import jax
import jax.numpy as jnp

from .exceptions import ShapeError
from .transforms import Array

PRNGKey = jax.Array  # JAX random key alias

_LOG_2PI = math.log(2.0 * math.pi)


def _event_shape(dim: Optional[int]) -> Tuple[int, ...]:
    return () if dim is None else (dim,)


def _check_event(name: str, x: Array, event_shape: Tuple[int, ...]) -> Array:
    x = jnp.asarray(x)
    n = len(event_shape)
    if x.ndim < n or x.shape[x.ndim - n:] != event_shape:
        raise ShapeError(
            f"{name}: expected trailing shape {event_shape}, got {x.shape}."
        )
    return x


def _sum_event(x: Array, event_shape: Tuple[int, ...]) -> Array:
    if not event_shape:
        return x
    return jnp.sum(x, axis=tuple(range(-len(event_shape), 0)))


# ----------------------------------------------------------------------
# Standard Normal
# ----------------------------------------------------------------------
@dataclass
class StandardNormal:
    """
    Standard Gaussian N(0, I) on R^dim, or on the real line when dim is None.

    log_prob accepts a single item or leading batch axes, x of shape
    (..., *event_shape), and returns shape (...,).
    """
    dim: Optional[int] = None

    @property
    def event_shape(self) -> Tuple[int, ...]:
        return _event_shape(self.dim)

    def log_prob(self, x: Array) -> Array:
        x = _check_event("StandardNormal", x, self.event_shape)
        return _sum_event(-0.5 * x * x - 0.5 * _LOG_2PI, self.event_shape)

    def sample(self, key: PRNGKey, shape: Tuple[int, ...] = ()) -> Array:
        return jax.random.normal(key, shape=tuple(shape) + self.event_shape)


# ----------------------------------------------------------------------
# Diagonal Gaussian
# ----------------------------------------------------------------------
@dataclass
class DiagNormal:
    """
    Diagonal-covariance Gaussian N(loc, diag(exp(log_scale)^2)).

    loc and log_scale share one shape: () for a scalar law, (dim,) for a
    vector law.
    """
    loc: Array
    log_scale: Array

    def __post_init__(self):
        if jnp.shape(self.loc) != jnp.shape(self.log_scale):
            raise ShapeError(
                f"DiagNormal: loc has shape {jnp.shape(self.loc)} but log_scale "
                f"has shape {jnp.shape(self.log_scale)}."
            )
        if jnp.ndim(self.loc) > 1:
            raise ShapeError(
                f"DiagNormal: loc must be a scalar or a vector, got shape {jnp.shape(self.loc)}."
            )

    @property
    def event_shape(self) -> Tuple[int, ...]:
        return tuple(jnp.shape(self.loc))

    def log_prob(self, x: Array) -> Array:
        x = _check_event("DiagNormal", x, self.event_shape)
        z = (x - self.loc) * jnp.exp(-self.log_scale)
        return _sum_event(
            -0.5 * z * z - 0.5 * _LOG_2PI - self.log_scale, self.event_shape
        )

    def sample(self, key: PRNGKey, shape: Tuple[int, ...] = ()) -> Array:
        eps = jax.random.normal(key, shape=tuple(shape) + self.event_shape)
        return self.loc + eps * jnp.exp(self.log_scale)
