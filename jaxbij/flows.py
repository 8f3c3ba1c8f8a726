# jaxbij/flows.py
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import jax
import jax.numpy as jnp

from .transforms import (
    Array,
    ForwardResult,
    Identity,
    Transform,
    inverse,
    isclosedform,
)

PRNGKey = jax.Array  # JAX random key alias


@dataclass
class TransformedDistribution:
    """
    Law of B(X) for X ~ dist and a transform B.

    The base distribution must provide:
      - event_shape: shape of a single draw;
      - sample(key, shape) -> array of shape (*shape, *event_shape);
      - log_prob(x) -> log-density, broadcasting over leading batch axes.

    Density evaluation uses the change-of-variables formula:

      x, ladj = forward(inverse(B), y)
      log q(y) = log p(x) + ladj            with ladj = log |det dx/dy|

    which needs B to be invertible. When x is already known (e.g. it was
    sampled by this object), log_prob_forward avoids the inverse entirely:

      log q(B(x)) = log p(x) - log |det dB/dx|

    Construction fails with ShapeError when the transform declares a fixed
    input length (e.g. Stacked) that disagrees with the base event shape.
    """
    dist: Any
    transform: Transform

    def __post_init__(self):
        base = self.base_event_shape
        if base:
            # Raises ShapeError on a length mismatch.
            self.transform.output_size(base[0])

    @property
    def base_event_shape(self) -> Tuple[int, ...]:
        return tuple(getattr(self.dist, "event_shape", ()))

    @property
    def event_shape(self) -> Tuple[int, ...]:
        base = self.base_event_shape
        if not base:
            return base
        return (self.transform.output_size(base[0]),) + base[1:]

    # --------------------------------------------------------------
    # Helpers for arbitrary sample shapes
    # --------------------------------------------------------------
    def _flatten(self, x: Array, shape: Tuple[int, ...]) -> Array:
        return jnp.reshape(x, (-1,) + tuple(x.shape[len(shape):]))

    def _unflatten(self, y: Array, shape: Tuple[int, ...]) -> Array:
        return jnp.reshape(y, tuple(shape) + tuple(y.shape[1:]))

    def _push_forward(self, x: Array, shape: Tuple[int, ...]) -> ForwardResult:
        if not shape:
            return self.transform.forward(x)
        ys, ladj = self.transform.forward_batch(self._flatten(x, shape))
        return ForwardResult(self._unflatten(ys, shape), self._unflatten(ladj, shape))

    # --------------------------------------------------------------
    # Sampling
    # --------------------------------------------------------------
    def sample(self, key: PRNGKey, shape: Tuple[int, ...] = ()) -> Array:
        """
        Draw samples: x ~ dist, then y = B(x).

        Arguments:
          key: JAX PRNGKey.
          shape: sample shape, excluding the event shape.

        Returns:
          y: samples of shape (*shape, *event_shape).
        """
        shape = tuple(shape)
        x = self.dist.sample(key, shape)
        if not shape:
            return self.transform.transform(x)
        ys = self.transform.transform_batch(self._flatten(x, shape))
        return self._unflatten(ys, shape)

    def sample_and_log_prob(
        self, key: PRNGKey, shape: Tuple[int, ...] = ()
    ) -> Tuple[Array, Array]:
        """
        Draw samples and their log-density in one forward pass.

        Equivalent to y = sample(key, shape); log_prob(y), but never evaluates
        the inverse transform, so it also works for non-invertible transforms
        and for layers whose inverse needs an iterative solve.
        """
        shape = tuple(shape)
        x = self.dist.sample(key, shape)
        y, ladj = self._push_forward(x, shape)
        return y, self.dist.log_prob(x) - ladj

    # --------------------------------------------------------------
    # Densities
    # --------------------------------------------------------------
    def _inverse_transform(self) -> Transform:
        binv = inverse(self.transform)
        if not isclosedform(binv):
            warnings.warn(
                f"log_prob evaluates the inverse of {type(self.transform).__name__} "
                "by an iterative solve; use log_prob_forward when the "
                "untransformed sample is available.",
                stacklevel=3,
            )
        return binv

    def log_prob(self, y: Array) -> Array:
        """
        Log-density at a single observation y.

        Raises NotInvertibleError if the transform is not invertible.
        """
        x, ladj = self._inverse_transform().forward(y)
        return self.dist.log_prob(x) + ladj

    def log_prob_batch(self, ys: Array) -> Array:
        """Log-density of a batch of observations stacked along axis 0."""
        xs, ladj = self._inverse_transform().forward_batch(ys)
        return self.dist.log_prob(xs) + ladj

    def log_prob_forward(self, x: Array) -> Array:
        """
        Log-density at y = B(x), given the untransformed point x.

        Agrees with log_prob(B(x)) up to numerical error.
        """
        return self.dist.log_prob(x) - self.transform.logabsdetjac(x)

    def log_prob_forward_batch(self, xs: Array) -> Array:
        return self.dist.log_prob(xs) - self.transform.logabsdetjac_batch(xs)


def transformed(dist: Any, transform: Optional[Transform] = None) -> TransformedDistribution:
    """Wrap dist with transform (default: Identity)."""
    return TransformedDistribution(dist, Identity() if transform is None else transform)
