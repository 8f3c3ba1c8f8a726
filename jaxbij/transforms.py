# jaxbij/transforms.py
from __future__ import annotations

import collections
import enum
import functools
import logging
import operator
from typing import Any, NamedTuple, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from flax import struct
from jax.core import Tracer

from .exceptions import DomainError, NotInvertibleError, ShapeError

logger = logging.getLogger(__name__)

Array = jnp.ndarray


# ===================================================================
# Invertibility marker
# ===================================================================
class Invertibility(enum.Enum):
    """
    Two-valued capability marker attached to every transform type.

    Markers combine with `&`: the result is INVERTIBLE only when both operands
    are. Composed and Stacked derive their own marker as the `&`-reduction of
    their elements' markers.
    """
    NOT_INVERTIBLE = "not_invertible"
    INVERTIBLE = "invertible"

    def __and__(self, other):
        if not isinstance(other, Invertibility):
            return NotImplemented
        if self is Invertibility.INVERTIBLE and other is Invertibility.INVERTIBLE:
            return Invertibility.INVERTIBLE
        return Invertibility.NOT_INVERTIBLE


Invertible = Invertibility.INVERTIBLE
NotInvertible = Invertibility.NOT_INVERTIBLE


class ForwardResult(NamedTuple):
    """Output of `forward`: the transformed value and its log-abs-det-Jacobian."""
    result: Array
    logabsdetjac: Array


def not_jax_tracer(x) -> bool:
    """True if x is a concrete value rather than a JAX tracer."""
    return not isinstance(x, Tracer)


def check_domain(condition, message: str) -> None:
    """
    Raise DomainError if a concrete boolean condition is not everywhere true.

    Under `jit`, `vmap` or `grad` the condition is a tracer with no data to
    inspect, and the check is skipped.
    """
    if not_jax_tracer(condition) and not bool(jnp.all(condition)):
        raise DomainError(message)


def check_length(owner: str, what: str, expected: int, length: int) -> int:
    """Return `length`, raising ShapeError unless it equals `expected`."""
    if length != expected:
        raise ShapeError(f"{owner}: expected {what} length {expected}, got {length}.")
    return length


def _leaves_equal(a, b) -> bool:
    if a is b:
        return True
    if jnp.shape(a) != jnp.shape(b):
        return False
    return bool(jnp.all(jnp.asarray(a) == jnp.asarray(b)))


def _write(out, value) -> None:
    if not isinstance(out, np.ndarray):
        raise TypeError(
            f"Output buffer must be a writable numpy.ndarray, got {type(out).__name__}; "
            "JAX arrays are immutable."
        )
    value = np.asarray(value)
    if out.shape != value.shape:
        raise ShapeError(
            f"Output buffer has shape {out.shape}, expected {value.shape}."
        )
    np.copyto(out, value)


def _accumulate(logjac, value):
    if isinstance(logjac, np.ndarray):
        logjac += np.asarray(value)
        return logjac
    return logjac + value


# ===================================================================
# Transform protocol
# ===================================================================
class Transform(struct.PyTreeNode, eq=False):
    """
    Abstract transformation x -> y.

    Concrete transforms are immutable Flax dataclasses: numeric parameters are
    pytree leaves, structural metadata is declared with
    `struct.field(pytree_node=False)`. A transform can therefore be closed
    over or passed through `jax.jit`, `jax.grad` and `jax.vmap`.

    Implementing a transform:
      - Required: `transform(x)` and `logabsdetjac(x)` for a single item
        (scalar, vector or matrix); `logabsdetjac` reduces over all axes.
      - Invertible transforms subclass `Bijector` and provide either
        `_inverse(y)` or an `inv()` returning an existing transform.
      - Optional: `forward(x)` sharing work between the two required methods;
        `_check_domain(x)` / `_check_codomain(y)` raising DomainError;
        `output_size(n)` / `input_size(m)` when the length along the leading
        axis changes or is fixed; `_inverse_batch(ys)` when the inverse solves
        for a whole batch at once; batched methods with a vectorized closed form.

    `_check_domain` and `_check_codomain` receive either a single item or a
    batch stacked along the leading axis, so they must reduce over trailing
    axes only.

    Class attributes:
      invertibility: Invertible or NotInvertible.
      closed_form: whether `transform` is a direct formula.
      closed_form_inverse: whether the inverse is a direct formula.
    """
    invertibility = NotInvertible
    closed_form = True
    closed_form_inverse = True

    def __init_subclass__(cls, **kwargs):
        kwargs.setdefault("eq", False)
        super().__init_subclass__(**kwargs)

    # --------------------------------------------------------------
    # Single item
    # --------------------------------------------------------------
    def transform(self, x: Array) -> Array:
        raise NotImplementedError(
            f"{type(self).__name__} does not implement transform."
        )

    def __call__(self, x: Array) -> Array:
        return self.transform(x)

    def logabsdetjac(self, x: Array) -> Array:
        raise NotImplementedError(
            f"{type(self).__name__} does not implement logabsdetjac."
        )

    def forward(self, x: Array) -> ForwardResult:
        """
        Transform x and compute log |det J| at x.

        Returns the same values as separate `transform` and `logabsdetjac`
        calls; subclasses override it when the two share work.
        """
        return ForwardResult(self.transform(x), self.logabsdetjac(x))

    def transform_into(self, x: Array, out: np.ndarray) -> np.ndarray:
        """Write transform(x) into the numpy buffer `out` and return it."""
        _write(out, self.transform(x))
        return out

    def logabsdetjac_into(self, x: Array, logjac):
        """Accumulate logabsdetjac(x) into `logjac` (in place for numpy arrays)."""
        return _accumulate(logjac, self.logabsdetjac(x))

    def forward_into(self, x: Array, out: ForwardResult) -> ForwardResult:
        """
        Write the forward result into `out.result` and accumulate the
        log-det into `out.logabsdetjac`.
        """
        res = self.forward(x)
        _write(out.result, res.result)
        logjac = _accumulate(out.logabsdetjac, res.logabsdetjac)
        return ForwardResult(out.result, logjac)

    # --------------------------------------------------------------
    # Batched: independent items stacked along axis 0
    # --------------------------------------------------------------
    def transform_batch(self, xs: Array) -> Array:
        xs = jnp.asarray(xs)
        self._check_domain(xs)
        return jax.vmap(self.transform)(xs)

    def logabsdetjac_batch(self, xs: Array) -> Array:
        xs = jnp.asarray(xs)
        self._check_domain(xs)
        return jax.vmap(self.logabsdetjac)(xs)

    def forward_batch(self, xs: Array) -> ForwardResult:
        xs = jnp.asarray(xs)
        self._check_domain(xs)
        return jax.vmap(self.forward)(xs)

    # --------------------------------------------------------------
    # Capabilities
    # --------------------------------------------------------------
    def inv(self) -> "Transform":
        raise NotInvertibleError(f"{type(self).__name__} is not invertible.")

    def isclosedform(self) -> bool:
        return self.closed_form

    def output_size(self, input_size: int) -> int:
        """Length of the output's leading axis for an input of this length."""
        return input_size

    def input_size(self, output_size: int) -> int:
        """Length of the input's leading axis for an output of this length."""
        return output_size

    def _check_domain(self, x: Array) -> None:
        pass

    def _check_codomain(self, y: Array) -> None:
        pass

    def __eq__(self, other):
        if not isinstance(other, Transform):
            return NotImplemented
        if type(self) is not type(other):
            return False
        lhs, lhs_def = jax.tree_util.tree_flatten(self)
        rhs, rhs_def = jax.tree_util.tree_flatten(other)
        if lhs_def != rhs_def:
            return False
        return all(_leaves_equal(a, b) for a, b in zip(lhs, rhs))


class Bijector(Transform):
    """Differentiable bijection with a differentiable inverse."""
    invertibility = Invertible

    def inv(self) -> Transform:
        return Inverse(self)

    def _inverse(self, y: Array) -> Array:
        raise NotImplementedError(
            f"{type(self).__name__} does not implement its inverse."
        )

    def _inverse_batch(self, ys: Array) -> Array:
        return jax.vmap(self._inverse)(ys)


# ===================================================================
# Inverse wrapper
# ===================================================================
class Inverse(Bijector):
    """
    The inverse of a bijector.

    Forward evaluation calls the wrapped transform's `_inverse`. The
    log-det at y is evaluated at the point mapped back through the
    inverse:

      logabsdetjac(Inverse(b), y) = -logabsdetjac(b, Inverse(b)(y))

    Two Inverse values are equal exactly when their wrapped transforms are.
    """
    orig: Transform

    @property
    def invertibility(self):
        return self.orig.invertibility

    def inv(self) -> Transform:
        return self.orig

    def transform(self, y: Array) -> Array:
        return self.orig._inverse(y)

    def logabsdetjac(self, y: Array) -> Array:
        return -self.orig.logabsdetjac(self.transform(y))

    def forward(self, y: Array) -> ForwardResult:
        x = self.transform(y)
        return ForwardResult(x, -self.orig.logabsdetjac(x))

    def transform_batch(self, ys: Array) -> Array:
        ys = jnp.asarray(ys)
        self._check_domain(ys)
        return self.orig._inverse_batch(ys)

    def logabsdetjac_batch(self, ys: Array) -> Array:
        return self.forward_batch(ys).logabsdetjac

    def forward_batch(self, ys: Array) -> ForwardResult:
        xs = self.transform_batch(ys)
        return ForwardResult(xs, -jax.vmap(self.orig.logabsdetjac)(xs))

    def isclosedform(self) -> bool:
        return self.orig.closed_form_inverse

    @property
    def closed_form_inverse(self):
        return self.orig.isclosedform()

    def output_size(self, input_size: int) -> int:
        return self.orig.input_size(input_size)

    def input_size(self, output_size: int) -> int:
        return self.orig.output_size(output_size)

    def _check_domain(self, y: Array) -> None:
        self.orig._check_codomain(y)

    def _check_codomain(self, x: Array) -> None:
        self.orig._check_domain(x)


# ===================================================================
# Identity
# ===================================================================
class Identity(Bijector):
    """Identity map; its own inverse, with zero log-det."""

    def inv(self) -> Transform:
        return self

    def transform(self, x: Array) -> Array:
        return jnp.array(x)

    def _inverse(self, y: Array) -> Array:
        return jnp.array(y)

    def logabsdetjac(self, x: Array) -> Array:
        return jnp.zeros((), dtype=jnp.result_type(float, x))

    def transform_into(self, x: Array, out: np.ndarray) -> np.ndarray:
        _write(out, x)
        return out

    def logabsdetjac_into(self, x: Array, logjac):
        return logjac

    def transform_batch(self, xs: Array) -> Array:
        return jnp.array(xs)

    def logabsdetjac_batch(self, xs: Array) -> Array:
        xs = jnp.asarray(xs)
        return jnp.zeros(xs.shape[:1], dtype=jnp.result_type(float, xs))


# ===================================================================
# Composed: sequential application
# ===================================================================
class Composed(Transform):
    """
    Ordered chain of transforms, applied left to right.

    For transforms (b_1, ..., b_n):

      y = b_n(... b_2(b_1(x)) ...)
      logabsdetjac(x) = sum_i logabsdetjac(b_i, x_{i-1})

    where x_0 = x and x_i = b_i(x_{i-1}); every step's log-det is evaluated at
    that step's input. The chain is invertible iff every element is, and its
    inverse is the chain of element-wise inverses in reverse order.
    """
    transforms: Tuple[Transform, ...]

    def __post_init__(self):
        if len(self.transforms) == 0:
            raise ValueError("Composed requires at least one transform.")
        object.__setattr__(self, "transforms", tuple(self.transforms))

    @property
    def invertibility(self):
        return functools.reduce(
            operator.and_, (invertible(t) for t in self.transforms), Invertible
        )

    def inv(self) -> Transform:
        return Composed(tuple(inverse(t) for t in reversed(self.transforms)))

    def isclosedform(self) -> bool:
        return all(isclosedform(t) for t in self.transforms)

    def output_size(self, input_size: int) -> int:
        for t in self.transforms:
            input_size = t.output_size(input_size)
        return input_size

    def input_size(self, output_size: int) -> int:
        for t in reversed(self.transforms):
            output_size = t.input_size(output_size)
        return output_size

    def transform(self, x: Array) -> Array:
        for t in self.transforms:
            x = t.transform(x)
        return x

    def logabsdetjac(self, x: Array) -> Array:
        return self.forward(x).logabsdetjac

    def forward(self, x: Array) -> ForwardResult:
        y, logjac = self.transforms[0].forward(x)
        for t in self.transforms[1:]:
            y, step_logjac = t.forward(y)
            logjac = logjac + step_logjac
        return ForwardResult(y, logjac)

    def transform_batch(self, xs: Array) -> Array:
        for t in self.transforms:
            xs = t.transform_batch(xs)
        return xs

    def logabsdetjac_batch(self, xs: Array) -> Array:
        return self.forward_batch(xs).logabsdetjac

    def forward_batch(self, xs: Array) -> ForwardResult:
        ys, logjac = self.transforms[0].forward_batch(xs)
        for t in self.transforms[1:]:
            ys, step_logjac = t.forward_batch(ys)
            logjac = logjac + step_logjac
        return ForwardResult(ys, logjac)


# ===================================================================
# Stacked: block-diagonal transform
# ===================================================================
def _normalize_range(r) -> Tuple[int, ...]:
    if isinstance(r, slice):
        if r.stop is None:
            raise ShapeError("Stacked: slice ranges need an explicit stop.")
        r = range(r.start or 0, r.stop, r.step or 1)
    if isinstance(r, (int, np.integer)):
        r = (r,)
    idx = tuple(int(i) for i in np.ravel(np.asarray(r)))
    if len(idx) == 0:
        raise ShapeError("Stacked: empty index range.")
    return idx


def _check_partition(ranges: Sequence[Tuple[int, ...]], what: str) -> None:
    flat = [i for r in ranges for i in r]
    total = len(flat)
    counts = collections.Counter(flat)
    overlap = sorted(i for i, c in counts.items() if c > 1)
    if overlap:
        raise ShapeError(
            f"Stacked: {what} ranges overlap at indices {overlap}."
        )
    outside = sorted(i for i in flat if i < 0 or i >= total)
    if outside:
        missing = sorted(set(range(total)) - set(flat))
        raise ShapeError(
            f"Stacked: {what} ranges do not partition 0..{total - 1}; "
            f"missing {missing}, out of bounds {outside}."
        )


def _is_contiguous(r: Tuple[int, ...]) -> bool:
    return r == tuple(range(r[0], r[0] + len(r)))


def _take(x: Array, r: Tuple[int, ...], axis: int) -> Array:
    if _is_contiguous(r):
        return jax.lax.slice_in_dim(x, r[0], r[0] + len(r), axis=axis)
    return jnp.take(x, np.asarray(r), axis=axis)


class Stacked(Transform):
    """
    Block-diagonal transform over a partition of the leading axis.

    Block i applies transforms[i] to x[ranges[i]] and writes its output to
    out_ranges[i]. Unless given, out_ranges are contiguous, in declared order,
    with lengths transforms[i].output_size(len(ranges[i])); a block may change
    length (e.g. a simplex map n-1 -> n).

    Since the Jacobian is block-diagonal,

      logabsdetjac(x) = sum_i logabsdetjac(transforms[i], x[ranges[i]])

    Construction fails with ShapeError when the ranges do not partition
    0..N-1 exactly (gaps or overlaps), or when their count does not match the
    number of transforms.
    """
    transforms: Tuple[Transform, ...]
    ranges: Tuple[Tuple[int, ...], ...] = struct.field(pytree_node=False)
    out_ranges: Any = struct.field(pytree_node=False, default=None)

    def __post_init__(self):
        transforms = tuple(self.transforms)
        ranges = tuple(_normalize_range(r) for r in self.ranges)
        if len(ranges) != len(transforms):
            raise ShapeError(
                f"Stacked: got {len(transforms)} transforms but {len(ranges)} ranges."
            )
        if not transforms:
            raise ShapeError("Stacked requires at least one block.")
        _check_partition(ranges, "input")

        sizes = [t.output_size(len(r)) for t, r in zip(transforms, ranges)]
        if self.out_ranges is None:
            offsets = np.cumsum([0] + sizes)
            out_ranges = tuple(
                tuple(range(int(start), int(stop)))
                for start, stop in zip(offsets[:-1], offsets[1:])
            )
        else:
            out_ranges = tuple(_normalize_range(r) for r in self.out_ranges)
            if len(out_ranges) != len(transforms):
                raise ShapeError(
                    f"Stacked: got {len(transforms)} transforms but "
                    f"{len(out_ranges)} output ranges."
                )
            for i, (r, size) in enumerate(zip(out_ranges, sizes)):
                if len(r) != size:
                    raise ShapeError(
                        f"Stacked: block {i} produces {size} outputs but its "
                        f"output range has length {len(r)}."
                    )
            _check_partition(out_ranges, "output")

        object.__setattr__(self, "transforms", transforms)
        object.__setattr__(self, "ranges", ranges)
        object.__setattr__(self, "out_ranges", out_ranges)

    @property
    def input_length(self) -> int:
        return sum(len(r) for r in self.ranges)

    @property
    def output_length(self) -> int:
        return sum(len(r) for r in self.out_ranges)

    @property
    def invertibility(self):
        return functools.reduce(
            operator.and_, (invertible(t) for t in self.transforms), Invertible
        )

    def inv(self) -> Transform:
        return Stacked(
            tuple(inverse(t) for t in self.transforms),
            ranges=self.out_ranges,
            out_ranges=self.ranges,
        )

    def isclosedform(self) -> bool:
        return all(isclosedform(t) for t in self.transforms)

    def output_size(self, input_size: int) -> int:
        check_length("Stacked", "input", self.input_length, input_size)
        return self.output_length

    def input_size(self, output_size: int) -> int:
        check_length("Stacked", "output", self.output_length, output_size)
        return self.input_length

    def _check_length(self, x: Array, axis: int) -> None:
        if x.ndim <= axis or x.shape[axis] != self.input_length:
            got = x.shape[axis] if x.ndim > axis else x.shape
            raise ShapeError(
                f"Stacked: expected input length {self.input_length}, got {got}."
            )

    def _assemble(self, pieces, axis: int) -> Array:
        for i, (piece, r) in enumerate(zip(pieces, self.out_ranges)):
            if piece.shape[axis] != len(r):
                raise ShapeError(
                    f"Stacked: block {i} returned length {piece.shape[axis]}, "
                    f"expected {len(r)}."
                )
        y = jnp.concatenate(pieces, axis=axis)
        positions = np.concatenate([np.asarray(r) for r in self.out_ranges])
        if np.array_equal(positions, np.arange(positions.size)):
            return y
        return jnp.take(y, np.argsort(positions), axis=axis)

    def _blocks(self, x: Array, axis: int):
        return [
            (t, _take(x, r, axis)) for t, r in zip(self.transforms, self.ranges)
        ]

    def transform(self, x: Array) -> Array:
        x = jnp.asarray(x)
        self._check_length(x, 0)
        return self._assemble([t.transform(xi) for t, xi in self._blocks(x, 0)], 0)

    def logabsdetjac(self, x: Array) -> Array:
        x = jnp.asarray(x)
        self._check_length(x, 0)
        return sum(t.logabsdetjac(xi) for t, xi in self._blocks(x, 0))

    def forward(self, x: Array) -> ForwardResult:
        x = jnp.asarray(x)
        self._check_length(x, 0)
        results = [t.forward(xi) for t, xi in self._blocks(x, 0)]
        y = self._assemble([res.result for res in results], 0)
        return ForwardResult(y, sum(res.logabsdetjac for res in results))

    def transform_batch(self, xs: Array) -> Array:
        xs = jnp.asarray(xs)
        self._check_length(xs, 1)
        return self._assemble(
            [t.transform_batch(xi) for t, xi in self._blocks(xs, 1)], 1
        )

    def logabsdetjac_batch(self, xs: Array) -> Array:
        xs = jnp.asarray(xs)
        self._check_length(xs, 1)
        return sum(t.logabsdetjac_batch(xi) for t, xi in self._blocks(xs, 1))

    def forward_batch(self, xs: Array) -> ForwardResult:
        xs = jnp.asarray(xs)
        self._check_length(xs, 1)
        results = [t.forward_batch(xi) for t, xi in self._blocks(xs, 1)]
        ys = self._assemble([res.result for res in results], 1)
        return ForwardResult(ys, sum(res.logabsdetjac for res in results))


# ===================================================================
# Functional interface
# ===================================================================
def invertible(t: Transform) -> Invertibility:
    return t.invertibility


def inverse(t: Transform) -> Transform:
    """
    Inverse of t.

    Raises NotInvertibleError, before any computation, when t is marked
    NotInvertible. For Composed/Stacked the message names the first element
    responsible.
    """
    if invertible(t) is NotInvertible:
        message = f"{type(t).__name__} is not invertible."
        for i, part in enumerate(getattr(t, "transforms", ())):
            if invertible(part) is NotInvertible:
                message += f" Element {i} ({type(part).__name__}) is not invertible."
                break
        raise NotInvertibleError(message)
    return t.inv()


def isclosedform(t: Transform) -> bool:
    return t.isclosedform()


def transform(t: Transform, x: Array) -> Array:
    return t.transform(x)


def transform_into(t: Transform, x: Array, out: np.ndarray) -> np.ndarray:
    return t.transform_into(x, out)


def logabsdetjac(t: Transform, x: Array) -> Array:
    return t.logabsdetjac(x)


def logabsdetjac_into(t: Transform, x: Array, logjac):
    return t.logabsdetjac_into(x, logjac)


def logabsdetjacinv(t: Transform, y: Array) -> Array:
    """Alias for logabsdetjac(inverse(t), y)."""
    return inverse(t).logabsdetjac(y)


def forward(t: Transform, x: Array) -> ForwardResult:
    return t.forward(x)


def forward_into(t: Transform, x: Array, out: ForwardResult) -> ForwardResult:
    return t.forward_into(x, out)


def transform_batch(t: Transform, xs: Array) -> Array:
    return t.transform_batch(xs)


def logabsdetjac_batch(t: Transform, xs: Array) -> Array:
    return t.logabsdetjac_batch(xs)


def forward_batch(t: Transform, xs: Array) -> ForwardResult:
    return t.forward_batch(xs)


def compose(*transforms: Transform) -> Transform:
    """
    Chain transforms left to right: compose(b1, b2)(x) == b2(b1(x)).

    Nested Composed values are flattened in order. A single transform is
    returned as is; no transforms gives Identity().
    """
    flat = []
    for t in transforms:
        if isinstance(t, Composed):
            flat.extend(t.transforms)
        else:
            flat.append(t)
    if not flat:
        return Identity()
    if len(flat) == 1:
        return flat[0]
    return Composed(tuple(flat))


def stack(*blocks: Tuple[Transform, Any]) -> Stacked:
    """
    Build a Stacked transform from (transform, range) pairs.

    Example:
      stack((Exp(), range(0, 2)), (Identity(), range(2, 5)))
    """
    stacked = Stacked(
        tuple(t for t, _ in blocks),
        tuple(r for _, r in blocks),
    )
    logger.debug(
        "stack: %d blocks, input length %d -> output length %d, output ranges %s",
        len(stacked.transforms),
        stacked.input_length,
        stacked.output_length,
        stacked.out_ranges,
    )
    return stacked
