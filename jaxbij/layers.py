# jaxbij/layers.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from flax import struct

from .config import DEFAULT_MAX_ITERS
from .exceptions import ConvergenceError, ShapeError
from .nets import Conditioner
from .transforms import Array, Bijector, ForwardResult, check_length, not_jax_tracer

logger = logging.getLogger(__name__)


# ===================================================================
# Planar layer
# ===================================================================
class PlanarLayer(Bijector):
    """
    Planar flow layer (Rezende & Mohamed, 2015):

      y = x + u_hat * tanh(w . x + b)

    with u reparameterized into u_hat so that w . u_hat >= -1, which keeps
    the map invertible:

      u_hat = u + (softplus(w . u) - 1 - w . u) * w / |w|^2

    Forward Jacobian determinant:

      log |det J| = log |1 + (1 - tanh^2(w . x + b)) * (w . u_hat)|

    The inverse has no closed form. Writing alpha = w . x, it solves the
    scalar equation

      alpha + (w . u_hat) * tanh(alpha + b) = w . y

    by safeguarded Newton iteration inside the bracket
    [w . y - |w . u_hat|, w . y + |w . u_hat|], then recovers
    x = y - u_hat * tanh(alpha + b).

    Solver settings (static):
      atol: absolute residual tolerance; default 64 * eps * max(1, |w . y|)
        for the input dtype.
      max_iters: iteration budget; default config.DEFAULT_MAX_ITERS.

    A concrete solve that misses the tolerance raises ConvergenceError.

    References:
      - Rezende, Mohamed (2015). "Variational Inference with Normalizing Flows"
    """
    w: Array
    u: Array
    b: Array
    atol: Optional[float] = struct.field(pytree_node=False, default=None)
    max_iters: int = struct.field(pytree_node=False, default=DEFAULT_MAX_ITERS)

    closed_form_inverse = False

    @property
    def dim(self) -> int:
        return int(jnp.shape(self.w)[0])

    def output_size(self, input_size: int) -> int:
        return check_length("PlanarLayer", "input", self.dim, input_size)

    def input_size(self, output_size: int) -> int:
        return check_length("PlanarLayer", "output", self.dim, output_size)

    def _check_x(self, x: Array) -> Array:
        x = jnp.asarray(x)
        if x.shape != (self.dim,):
            raise ShapeError(
                f"PlanarLayer: expected input of shape ({self.dim},), got {x.shape}."
            )
        return x

    def _u_hat_and_wu(self) -> Tuple[Array, Array]:
        wu = jnp.dot(self.w, self.u)
        u_hat = self.u + (jax.nn.softplus(wu) - 1.0 - wu) * self.w / jnp.sum(self.w ** 2)
        return u_hat, jnp.dot(self.w, u_hat)

    def _bias(self) -> Array:
        return jnp.reshape(self.b, ())

    def forward(self, x: Array) -> ForwardResult:
        x = self._check_x(x)
        u_hat, wu_hat = self._u_hat_and_wu()
        h = jnp.tanh(jnp.dot(self.w, x) + self._bias())
        y = x + u_hat * h
        log_det = jnp.log(jnp.abs(1.0 + (1.0 - h ** 2) * wu_hat))
        return ForwardResult(y, log_det)

    def transform(self, x: Array) -> Array:
        return self.forward(x).result

    def logabsdetjac(self, x: Array) -> Array:
        return self.forward(x).logabsdetjac

    def _solve_alpha(self, wy: Array, wu_hat: Array) -> Tuple[Array, Array, Array, Array]:
        b = self._bias()
        dtype = jnp.result_type(float, wy)
        wy = jnp.asarray(wy, dtype)
        if self.atol is None:
            tol = 64 * jnp.finfo(dtype).eps * jnp.maximum(1.0, jnp.abs(wy))
        else:
            tol = jnp.asarray(self.atol, dtype)

        def residual(alpha):
            return alpha + wu_hat * jnp.tanh(alpha + b) - wy

        def cond(state):
            i, _, _, _, res = state
            return (i < self.max_iters) & (jnp.abs(res) > tol)

        def body(state):
            i, lo, hi, alpha, res = state
            lo = jnp.where(res < 0, alpha, lo)
            hi = jnp.where(res > 0, alpha, hi)
            slope = 1.0 + wu_hat * (1.0 - jnp.tanh(alpha + b) ** 2)
            newton = alpha - res / slope
            inside = (newton > lo) & (newton < hi)
            alpha = jnp.where(inside, newton, 0.5 * (lo + hi))
            return i + 1, lo, hi, alpha, residual(alpha)

        spread = jnp.abs(wu_hat)
        alpha0 = wy - wu_hat * jnp.tanh(wy + b)
        state = (0, wy - spread, wy + spread, alpha0, residual(alpha0))
        iters, _, _, alpha, res = jax.lax.while_loop(cond, body, state)
        return alpha, jnp.abs(res), iters, tol

    def _solve(self, y: Array) -> Tuple[Array, Array, Array, Array]:
        y = self._check_x(y)
        u_hat, wu_hat = self._u_hat_and_wu()
        alpha, res, iters, tol = self._solve_alpha(jnp.dot(self.w, y), wu_hat)
        return y - u_hat * jnp.tanh(alpha + self._bias()), res, iters, tol

    def _check_converged(self, res: Array, iters: Array, tol: Array) -> None:
        """Raise ConvergenceError if any concrete residual misses its tolerance."""
        if not not_jax_tracer(res) or jnp.size(res) == 0:
            return
        failed = jnp.asarray(res > tol)
        worst = float(jnp.max(res))
        if jnp.any(failed):
            where = ""
            if failed.ndim:
                where = f" for {int(jnp.sum(failed))} of {failed.size} items"
            raise ConvergenceError(
                f"PlanarLayer: inverse did not converge within {self.max_iters} "
                f"iterations{where} (residual {worst:.3e}).",
                residual=worst,
                iterations=int(jnp.max(iters)),
            )
        logger.debug(
            "PlanarLayer inverse converged in %d iterations (residual %.3e)",
            int(jnp.max(iters)),
            worst,
        )

    def _inverse(self, y: Array) -> Array:
        x, res, iters, tol = self._solve(y)
        self._check_converged(res, iters, tol)
        return x

    def _inverse_batch(self, ys: Array) -> Array:
        xs, res, iters, tol = jax.vmap(self._solve)(jnp.asarray(ys))
        self._check_converged(res, iters, tol)
        return xs


# ===================================================================
# Affine coupling layer
# ===================================================================
class AffineCoupling(Bijector):
    """
    RealNVP-style affine coupling layer.

    mask[i] == 1: dimension i passes through and conditions the others.
    mask[i] == 0: dimension i is transformed.

    Forward transformation y = T(x):
      (shift, log_scale) = conditioner(x * mask)
      y = x * mask + (x * exp(log_scale) + shift) * (1 - mask)
    with log_scale = max_log_scale * tanh(raw / max_log_scale), zeroed on the
    masked dimensions, and log |det J| = sum(log_scale).

    Inverse transformation x = T^{-1}(y): since y * mask == x * mask, the
    conditioner sees the same input and
      x = y * mask + (y - shift) * exp(-log_scale) * (1 - mask)

    The conditioner maps a (dim,) vector to 2 * dim outputs, split into shift
    and raw log-scale (see nets.init_conditioner). The mask is static.

    References:
      - Dinh, Sohl-Dickstein, Bengio (2017). "Density estimation using Real NVP"
    """
    mask: Tuple[float, ...] = struct.field(pytree_node=False)
    conditioner: Conditioner
    max_log_scale: float = struct.field(pytree_node=False, default=1.0)

    def __post_init__(self):
        mask = np.asarray(self.mask, dtype=float)
        if mask.ndim != 1:
            raise ValueError(f"AffineCoupling: mask must be 1D, got shape {mask.shape}.")
        if not np.all((mask == 0) | (mask == 1)):
            raise ValueError("AffineCoupling: mask entries must be 0 or 1.")
        object.__setattr__(self, "mask", tuple(float(m) for m in mask))

    @property
    def dim(self) -> int:
        return len(self.mask)

    def output_size(self, input_size: int) -> int:
        return check_length("AffineCoupling", "input", self.dim, input_size)

    def input_size(self, output_size: int) -> int:
        return check_length("AffineCoupling", "output", self.dim, output_size)

    def _condition(self, x: Array) -> Tuple[Array, Array, Array]:
        x = jnp.asarray(x)
        if x.shape != (self.dim,):
            raise ShapeError(
                f"AffineCoupling: expected input of shape ({self.dim},), got {x.shape}."
            )
        mask = jnp.asarray(self.mask, dtype=x.dtype)
        out = self.conditioner(x * mask)
        if out.shape != (2 * self.dim,):
            raise ShapeError(
                f"AffineCoupling: conditioner output should have shape "
                f"({2 * self.dim},), got {out.shape}."
            )
        shift, raw = jnp.split(out, 2)
        log_scale = jnp.tanh(raw / self.max_log_scale) * self.max_log_scale
        return mask, shift * (1.0 - mask), log_scale * (1.0 - mask)

    def forward(self, x: Array) -> ForwardResult:
        mask, shift, log_scale = self._condition(x)
        y = x * mask + (x * jnp.exp(log_scale) + shift) * (1.0 - mask)
        return ForwardResult(y, jnp.sum(log_scale))

    def transform(self, x: Array) -> Array:
        return self.forward(x).result

    def logabsdetjac(self, x: Array) -> Array:
        return self.forward(x).logabsdetjac

    def _inverse(self, y: Array) -> Array:
        mask, shift, log_scale = self._condition(y)
        return y * mask + (y - shift) * jnp.exp(-log_scale) * (1.0 - mask)
