# jaxbij/nets.py
from __future__ import annotations

from typing import Any, Callable, Sequence

import jax
import jax.numpy as jnp
from flax import linen as nn
from flax import struct

from .transforms import Array

PRNGKey = jax.Array  # type alias for JAX random keys


class MLP(nn.Module):
    """
    Feedforward network mapping (..., in_dim) -> (..., out_dim).

    Used as the conditioner of coupling layers. No dropout or batch
    statistics, so applying it is a pure function of (params, x).
    """
    in_dim: int
    hidden_sizes: Sequence[int]
    out_dim: int
    activation: Callable[[Array], Array] = nn.tanh

    @nn.compact
    def __call__(self, x: Array) -> Array:
        if x.shape[-1] != self.in_dim:
            raise ValueError(
                f"MLP expected last dimension {self.in_dim}, got {x.shape[-1]}."
            )
        h = x
        for i, size in enumerate(self.hidden_sizes):
            h = self.activation(nn.Dense(size, name=f"hidden_{i}")(h))
        return nn.Dense(self.out_dim, name="out")(h)


class Conditioner(struct.PyTreeNode):
    """
    A Flax module bound to its parameters.

    The module definition is static metadata; the parameters are pytree
    leaves, so gradients with respect to a transform that holds a Conditioner
    reach the network weights.
    """
    module: nn.Module = struct.field(pytree_node=False)
    params: Any

    def __call__(self, x: Array) -> Array:
        return self.module.apply({"params": self.params}, x)


def init_conditioner(
    key: PRNGKey,
    dim: int,
    hidden_sizes: Sequence[int],
    activation: Callable[[Array], Array] = nn.tanh,
    zero_init: bool = True,
) -> Conditioner:
    """
    Build an MLP conditioner producing 2 * dim outputs (shift, log_scale).

    Arguments:
      key: PRNGKey for parameter initialization.
      dim: feature dimension of the coupling layer.
      hidden_sizes: sizes of the hidden layers.
      activation: activation after each hidden layer.
      zero_init: zero the output layer so the coupling starts as the identity.
    """
    module = MLP(
        in_dim=dim,
        hidden_sizes=tuple(hidden_sizes),
        out_dim=2 * dim,
        activation=activation,
    )
    params = dict(module.init(key, jnp.zeros((dim,)))["params"])
    if zero_init:
        params["out"] = jax.tree_util.tree_map(jnp.zeros_like, params["out"])
    return Conditioner(module=module, params=params)
