# jaxbij/config.py
"""
Configuration for the parts of jaxbij that differentiate.

Transforms never consult global state. Components that need a Jacobian
(ADTransform, ADBijector) hold an ADConfig value and ask it for the
differentiation operator to use.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Union

import jax

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ADBackend(enum.Enum):
    """Recognized differentiation engines."""

    FORWARD = "forward"  # jax.jacfwd
    REVERSE = "reverse"  # jax.jacrev


DEFAULT_AD_BACKEND = ADBackend.FORWARD

# Iteration budget for inverses that are evaluated by a numerical solve.
DEFAULT_MAX_ITERS = 100


def parse_backend(backend: Union[str, ADBackend]) -> ADBackend:
    """
    Map a backend name (or member) onto ADBackend.

    Raises ConfigurationError for anything that is not a recognized engine.
    """
    if isinstance(backend, ADBackend):
        return backend
    try:
        return ADBackend(str(backend).lower())
    except ValueError:
        known = ", ".join(repr(b.value) for b in ADBackend)
        raise ConfigurationError(
            f"Unknown AD backend {backend!r}; expected one of {known}."
        ) from None


@dataclass(frozen=True)
class ADConfig:
    """
    Explicit choice of differentiation engine.

    Pass an instance to the transforms that compute Jacobians by automatic
    differentiation. String names are accepted and normalized on construction.
    """
    backend: ADBackend = DEFAULT_AD_BACKEND

    def __post_init__(self):
        backend = parse_backend(self.backend)
        object.__setattr__(self, "backend", backend)
        logger.debug("ADConfig using %s-mode differentiation", backend.value)

    def jacobian(self, fn: Callable) -> Callable:
        """Return a function computing the Jacobian of fn with this engine."""
        if self.backend is ADBackend.FORWARD:
            return jax.jacfwd(fn)
        return jax.jacrev(fn)


def jacobian(fn: Callable, x, config: ADConfig | None = None):
    """Jacobian of fn at x, using config (default: forward mode)."""
    config = ADConfig() if config is None else config
    return config.jacobian(fn)(x)
