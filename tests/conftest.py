# tests/conftest.py
"""Shared pytest fixtures for jaxbij tests."""
from __future__ import annotations

import pytest
import jax

# Double precision, so density checks can use tight relative tolerances.
jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp  # noqa: E402


@pytest.fixture
def key():
    """Default JAX PRNG key."""
    return jax.random.PRNGKey(42)


@pytest.fixture
def dim():
    """Default feature dimension."""
    return 4


@pytest.fixture
def batch_size():
    """Default batch size."""
    return 16


def check_invertibility(transform, inverse_transform, x):
    """
    Push x through transform and back through inverse_transform.

    Returns dict with the reconstruction error and the log-det mismatch
    |logabsdetjac(b, x) + logabsdetjac(inverse(b), b(x))|.
    """
    y, ld_fwd = transform.forward(x)
    x_rec, ld_inv = inverse_transform.forward(y)

    return {
        "reconstruction_error": float(jnp.abs(x - x_rec).max()),
        "logdet_error": float(jnp.abs(ld_fwd + ld_inv)),
        "y": y,
        "x_rec": x_rec,
    }


def autodiff_logdet(transform, x):
    """log |det J| of transform at a single item x, from jax.jacfwd."""
    J = jax.jacfwd(transform.transform)(x)
    if jnp.ndim(x) == 0:
        return jnp.log(jnp.abs(J))
    J = J.reshape(x.size, -1)
    return jnp.linalg.slogdet(J)[1]


def check_logdet_vs_autodiff(transform, x):
    """Compare logabsdetjac against an autodiff Jacobian at a single item."""
    ld = transform.logabsdetjac(x)
    ld_autodiff = autodiff_logdet(transform, x)
    error = float(jnp.abs(ld - ld_autodiff))
    return {
        "error": error,
        "ld": float(ld),
        "ld_autodiff": float(ld_autodiff),
    }
