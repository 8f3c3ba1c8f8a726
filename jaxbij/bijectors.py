# jaxbij/bijectors.py
from __future__ import annotations

from typing import Callable, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from flax import struct

from .config import ADConfig
from .exceptions import ShapeError
from .transforms import (
    Array,
    Bijector,
    ForwardResult,
    Transform,
    check_domain,
    check_length,
)


# ===================================================================
# Elementwise maps
# ===================================================================
class Exp(Bijector):
    """
    y = exp(x), elementwise, mapping the reals onto the positive reals.

    log |det J| = sum(x). The inverse is Log.
    """

    def inv(self) -> Transform:
        return Log()

    def transform(self, x: Array) -> Array:
        return jnp.exp(x)

    def _inverse(self, y: Array) -> Array:
        return Log().transform(y)

    def logabsdetjac(self, x: Array) -> Array:
        return jnp.sum(jnp.asarray(x, dtype=jnp.result_type(float, x)))

    def forward(self, x: Array) -> ForwardResult:
        return ForwardResult(jnp.exp(x), self.logabsdetjac(x))

    def _check_codomain(self, y: Array) -> None:
        check_domain(jnp.asarray(y) > 0, "Exp: inverse requires positive input.")


class Log(Bijector):
    """
    y = log(x), elementwise, mapping the positive reals onto the reals.

    log |det J| = -sum(log x). The inverse is Exp.
    """

    def inv(self) -> Transform:
        return Exp()

    def _check_domain(self, x: Array) -> None:
        check_domain(jnp.asarray(x) > 0, "Log: input must be positive.")

    def transform(self, x: Array) -> Array:
        self._check_domain(x)
        return jnp.log(x)

    def _inverse(self, y: Array) -> Array:
        return jnp.exp(y)

    def logabsdetjac(self, x: Array) -> Array:
        self._check_domain(x)
        return -jnp.sum(jnp.log(x))

    def forward(self, x: Array) -> ForwardResult:
        self._check_domain(x)
        y = jnp.log(x)
        return ForwardResult(y, -jnp.sum(y))


class Scale(Bijector):
    """
    y = scale * x, elementwise (scale broadcasts against x).

    log |det J| = sum over x of log|scale|. A zero scale has a singular
    Jacobian and no inverse; both raise DomainError.
    """
    scale: Array

    def _check_scale(self) -> None:
        check_domain(jnp.asarray(self.scale) != 0, "Scale: scale must be non-zero.")

    def transform(self, x: Array) -> Array:
        return self.scale * x

    def _inverse(self, y: Array) -> Array:
        self._check_scale()
        return y / self.scale

    def logabsdetjac(self, x: Array) -> Array:
        self._check_scale()
        log_scale = jnp.log(jnp.abs(self.scale))
        shape = jnp.broadcast_shapes(jnp.shape(log_scale), jnp.shape(x))
        return jnp.sum(jnp.broadcast_to(log_scale, shape))


class Shift(Bijector):
    """y = x + shift, elementwise; volume preserving."""
    shift: Array

    def transform(self, x: Array) -> Array:
        return x + self.shift

    def _inverse(self, y: Array) -> Array:
        return y - self.shift

    def logabsdetjac(self, x: Array) -> Array:
        return jnp.zeros((), dtype=jnp.result_type(float, x, self.shift))


class Logit(Bijector):
    """
    Maps the open interval (a, b) onto the reals, elementwise:

      y = logit((x - a) / (b - a))
      log |dy/dx| = log(b - a) - log(x - a) - log(b - x)

    Inverse: x = a + (b - a) * sigmoid(y).
    """
    a: Array = 0.0
    b: Array = 1.0

    def _check_domain(self, x: Array) -> None:
        x = jnp.asarray(x)
        check_domain(
            (x > self.a) & (x < self.b),
            "Logit: input must lie strictly inside (a, b).",
        )

    def transform(self, x: Array) -> Array:
        self._check_domain(x)
        z = (x - self.a) / (self.b - self.a)
        return jnp.log(z) - jnp.log1p(-z)

    def _inverse(self, y: Array) -> Array:
        return self.a + (self.b - self.a) * jax.nn.sigmoid(y)

    def logabsdetjac(self, x: Array) -> Array:
        self._check_domain(x)
        return jnp.sum(
            jnp.log(self.b - self.a) - jnp.log(x - self.a) - jnp.log(self.b - x)
        )


# ===================================================================
# Vector maps
# ===================================================================
class Permute(Bijector):
    """
    Fixed permutation of the leading axis: y[i] = x[perm[i]].

    The Jacobian is a permutation matrix, so log |det J| = 0. perm must be a
    permutation of 0..n-1; it is stored as static metadata.
    """
    perm: Tuple[int, ...] = struct.field(pytree_node=False)

    def __post_init__(self):
        perm = np.asarray(self.perm)
        if perm.ndim != 1:
            raise ValueError(f"Permute: perm must be 1D, got shape {perm.shape}.")
        if perm.size and not np.issubdtype(perm.dtype, np.integer):
            raise TypeError(f"Permute: perm must be integer dtype, got {perm.dtype}.")
        if sorted(perm.tolist()) != list(range(perm.size)):
            raise ValueError(
                f"Permute: perm must be a permutation of 0..{perm.size - 1}, "
                f"got {perm.tolist()}."
            )
        object.__setattr__(self, "perm", tuple(int(i) for i in perm))

    @property
    def dim(self) -> int:
        return len(self.perm)

    def output_size(self, input_size: int) -> int:
        return check_length("Permute", "input", self.dim, input_size)

    def input_size(self, output_size: int) -> int:
        return check_length("Permute", "output", self.dim, output_size)

    def _check_length(self, x: Array) -> None:
        if jnp.ndim(x) < 1 or jnp.shape(x)[0] != self.dim:
            raise ShapeError(
                f"Permute: expected input with leading dimension {self.dim}, "
                f"got shape {jnp.shape(x)}."
            )

    def transform(self, x: Array) -> Array:
        self._check_length(x)
        return jnp.asarray(x)[np.asarray(self.perm)]

    def _inverse(self, y: Array) -> Array:
        self._check_length(y)
        return jnp.asarray(y)[np.argsort(self.perm)]

    def logabsdetjac(self, x: Array) -> Array:
        self._check_length(x)
        return jnp.zeros((), dtype=jnp.result_type(float, x))


class StickBreaking(Bijector):
    """
    Stick-breaking map from R^(K-1) onto the open simplex in R^K.

      z_k = sigmoid(x_k - log(K - 1 - k))        k = 0..K-2
      y_k = z_k * prod_{j<k} (1 - z_j)
      y_{K-1} = prod_{j<K-1} (1 - z_j)

    The offset sends x = 0 to the uniform point of the simplex. The Jacobian
    of the first K-1 outputs is triangular with

      log |det J| = sum_k log(y_k) + log(1 - z_k)

    The output is one element longer than the input.
    """

    def output_size(self, input_size: int) -> int:
        return input_size + 1

    def input_size(self, output_size: int) -> int:
        return output_size - 1

    def _offset_input(self, x: Array) -> Array:
        x = jnp.asarray(x, dtype=jnp.result_type(float, x))
        if x.ndim != 1:
            raise ShapeError(f"StickBreaking: expected a vector, got shape {x.shape}.")
        return x - jnp.log(x.shape[0] - jnp.arange(x.shape[0]))

    def transform(self, x: Array) -> Array:
        return self.forward(x).result

    def logabsdetjac(self, x: Array) -> Array:
        return self.forward(x).logabsdetjac

    def forward(self, x: Array) -> ForwardResult:
        x = self._offset_input(x)
        z = jax.nn.sigmoid(x)
        # log(1 - z) = log(z) - x
        log_1mz = jax.nn.log_sigmoid(x) - x
        log_rest = jnp.concatenate([jnp.zeros(1, x.dtype), jnp.cumsum(log_1mz)])
        y = jnp.concatenate([z, jnp.ones(1, x.dtype)]) * jnp.exp(log_rest)
        log_det = jnp.sum(jax.nn.log_sigmoid(x) + log_rest[:-1] + log_1mz)
        return ForwardResult(y, log_det)

    def _check_codomain(self, y: Array) -> None:
        y = jnp.asarray(y)
        check_domain(y > 0, "StickBreaking: simplex entries must be positive.")
        eps = jnp.sqrt(jnp.finfo(jnp.result_type(float, y)).eps)
        check_domain(
            jnp.abs(jnp.sum(y, axis=-1) - 1.0) < eps,
            "StickBreaking: simplex entries must sum to one.",
        )

    def _inverse(self, y: Array) -> Array:
        y = jnp.asarray(y, dtype=jnp.result_type(float, y))
        if y.ndim != 1 or y.shape[0] < 2:
            raise ShapeError(
                f"StickBreaking: expected a simplex vector of length >= 2, got shape {y.shape}."
            )
        self._check_codomain(y)
        y_crop = y[:-1]
        remaining = jnp.clip(1.0 - jnp.cumsum(y_crop), jnp.finfo(y.dtype).tiny)
        x = jnp.log(y_crop) - jnp.log(remaining)
        return x + jnp.log(x.shape[0] - jnp.arange(x.shape[0]))


# ===================================================================
# Jacobians by automatic differentiation
# ===================================================================
def _ad_logabsdetjac(fn: Callable, x: Array, config: ADConfig, name: str) -> Array:
    x = jnp.asarray(x, dtype=jnp.result_type(float, x))
    J = config.jacobian(fn)(x)
    if x.ndim == 0:
        J = jnp.reshape(J, (1, 1))
    else:
        J = jnp.reshape(J, (x.size, -1))
    if J.shape[0] != J.shape[1]:
        raise ShapeError(
            f"{name}: Jacobian has shape {J.shape}; log-det needs a square Jacobian."
        )
    sign, log_det = jnp.linalg.slogdet(J)
    check_domain(sign != 0, f"{name}: Jacobian is singular at the input.")
    return log_det


class ADTransform(Transform):
    """
    Non-invertible transform given by a function, with its log-det computed
    from the Jacobian by automatic differentiation.

    fn must map a single item to an output of the same size. The
    differentiation engine comes from `config`.
    """
    fn: Callable = struct.field(pytree_node=False)
    config: ADConfig = struct.field(pytree_node=False, default=ADConfig())

    def transform(self, x: Array) -> Array:
        return self.fn(x)

    def logabsdetjac(self, x: Array) -> Array:
        return _ad_logabsdetjac(self.fn, x, self.config, type(self).__name__)


class ADBijector(Bijector):
    """
    Bijector given by a forward function and its inverse function, with the
    log-det computed by automatic differentiation of the forward function.
    """
    fn: Callable = struct.field(pytree_node=False)
    inverse_fn: Callable = struct.field(pytree_node=False)
    config: ADConfig = struct.field(pytree_node=False, default=ADConfig())

    def transform(self, x: Array) -> Array:
        return self.fn(x)

    def _inverse(self, y: Array) -> Array:
        return self.inverse_fn(y)

    def logabsdetjac(self, x: Array) -> Array:
        return _ad_logabsdetjac(self.fn, x, self.config, type(self).__name__)
