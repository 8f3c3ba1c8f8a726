# jaxbij/exceptions.py
"""
Exception hierarchy for jaxbij.

All package errors derive from BijectorError, so callers can catch every
failure raised by a transform or a transformed distribution with one clause.
Errors that describe bad input values also derive from ValueError, which keeps
them compatible with code written against plain NumPy/JAX validation.
"""
from __future__ import annotations


class BijectorError(Exception):
    """Base class for all jaxbij errors."""


class NotInvertibleError(BijectorError):
    """An inverse was requested from a transform marked NotInvertible."""


class DomainError(BijectorError, ValueError):
    """
    Input lies outside a transform's domain, or the Jacobian is singular or
    undefined at the input.
    """


class ShapeError(BijectorError, ValueError):
    """
    Index ranges do not partition an input, or an input length disagrees with
    the length a transform declares.
    """


class ConvergenceError(BijectorError, ArithmeticError):
    """
    An iterative inverse did not reach its tolerance within its iteration budget.

    Attributes:
      residual: absolute residual of the last iterate.
      iterations: number of iterations performed.
    """

    def __init__(self, message: str, residual: float, iterations: int):
        super().__init__(message)
        self.residual = residual
        self.iterations = iterations


class ConfigurationError(BijectorError, ValueError):
    """An unrecognized configuration value was requested."""
