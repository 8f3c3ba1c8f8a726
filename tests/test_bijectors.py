# tests/test_bijectors.py
"""Unit tests for leaf bijectors."""
from __future__ import annotations

import pytest
import jax
import jax.numpy as jnp

from jaxbij.bijectors import (
    ADBijector,
    ADTransform,
    Exp,
    Log,
    Logit,
    Permute,
    Scale,
    Shift,
    StickBreaking,
)
from jaxbij.config import ADConfig
from jaxbij.exceptions import DomainError, NotInvertibleError, ShapeError
from jaxbij.transforms import (
    Invertible,
    NotInvertible,
    forward,
    inverse,
    invertible,
    logabsdetjac,
    transform,
)
from conftest import check_invertibility, check_logdet_vs_autodiff


def _reals(key, shape):
    return jax.random.normal(key, shape)


def _positive(key, shape):
    return jnp.exp(jax.random.normal(key, shape))


def _interval(key, shape):
    return jax.random.uniform(key, shape, minval=-0.9, maxval=1.9)


ELEMENTWISE = [
    pytest.param(Exp(), _reals, id="exp"),
    pytest.param(Log(), _positive, id="log"),
    pytest.param(Scale(jnp.array(-1.7)), _reals, id="scale"),
    pytest.param(Scale(jnp.array([0.5, -2.0, 3.0, 1.5])), _reals, id="scale-vector"),
    pytest.param(Shift(jnp.array([0.1, 0.2, 0.3, 0.4])), _reals, id="shift"),
    pytest.param(Logit(a=-1.0, b=2.0), _interval, id="logit"),
    pytest.param(Permute((2, 0, 3, 1)), _reals, id="permute"),
    pytest.param(ADBijector(jnp.sinh, jnp.arcsinh), _reals, id="ad-bijector"),
]


# ============================================================================
# Shared properties
# ============================================================================
@pytest.mark.parametrize("bijector, sampler", ELEMENTWISE)
class TestLeafBijectors:
    """Round trip and log-det checks shared by all leaf bijectors."""

    def test_invertible(self, bijector, sampler):
        assert invertible(bijector) is Invertible

    def test_round_trip(self, key, dim, bijector, sampler):
        x = sampler(key, (dim,))

        result = check_invertibility(bijector, inverse(bijector), x)

        assert result["reconstruction_error"] < 1e-10
        assert result["logdet_error"] < 1e-10

    def test_logdet_vs_autodiff(self, key, dim, bijector, sampler):
        x = sampler(key, (dim,))

        result = check_logdet_vs_autodiff(bijector, x)

        assert result["error"] < 1e-10, result

    def test_batch(self, key, dim, batch_size, bijector, sampler):
        xs = sampler(key, (batch_size, dim))

        ys, lds = bijector.forward_batch(xs)

        assert ys.shape == (batch_size, dim)
        assert lds.shape == (batch_size,)
        assert jnp.allclose(lds[0], logabsdetjac(bijector, xs[0]))

    def test_double_inversion(self, bijector, sampler):
        assert inverse(inverse(bijector)) == bijector


# ============================================================================
# Elementwise maps
# ============================================================================
class TestExpLog:
    """Tests for Exp and Log."""

    def test_inverse_pairs(self):
        assert isinstance(inverse(Exp()), Log)
        assert isinstance(inverse(Log()), Exp)

    def test_exp_logdet(self, key, dim):
        x = _reals(key, (dim,))
        assert jnp.allclose(logabsdetjac(Exp(), x), jnp.sum(x))

    def test_scalar(self):
        y, ld = forward(Exp(), jnp.array(0.5))
        assert jnp.allclose(y, jnp.exp(0.5))
        assert jnp.allclose(ld, 0.5)

    def test_log_domain(self):
        with pytest.raises(DomainError, match="positive"):
            logabsdetjac(Log(), jnp.array([1.0, 0.0]))


class TestScale:
    """Tests for Scale."""

    def test_logdet_broadcasts(self, dim):
        ld = logabsdetjac(Scale(jnp.array(-2.0)), jnp.ones(dim))
        assert jnp.allclose(ld, dim * jnp.log(2.0))

    def test_zero_scale_logdet(self, dim):
        with pytest.raises(DomainError, match="non-zero"):
            logabsdetjac(Scale(jnp.array(0.0)), jnp.ones(dim))

    def test_zero_scale_inverse(self, dim):
        with pytest.raises(DomainError, match="non-zero"):
            transform(inverse(Scale(jnp.array([1.0, 0.0]))), jnp.ones(2))


class TestLogit:
    """Tests for Logit."""

    def test_midpoint(self):
        assert jnp.allclose(transform(Logit(a=-1.0, b=3.0), jnp.array(1.0)), 0.0)

    def test_domain(self):
        with pytest.raises(DomainError, match="inside"):
            transform(Logit(), jnp.array([0.5, 1.0]))


# ============================================================================
# Vector maps
# ============================================================================
class TestPermute:
    """Tests for Permute."""

    def test_transform(self):
        y = transform(Permute((2, 0, 1)), jnp.array([10.0, 20.0, 30.0]))
        assert jnp.array_equal(y, jnp.array([30.0, 10.0, 20.0]))

    def test_zero_logdet(self, dim):
        assert logabsdetjac(Permute(tuple(range(dim))[::-1]), jnp.ones(dim)) == 0.0

    def test_not_a_permutation(self):
        with pytest.raises(ValueError, match="permutation"):
            Permute((0, 0, 1))

    def test_not_1d(self):
        with pytest.raises(ValueError, match="1D"):
            Permute(((0, 1), (1, 0)))

    def test_not_integer(self):
        with pytest.raises(TypeError, match="integer"):
            Permute((0.0, 1.0))

    def test_length_mismatch(self):
        with pytest.raises(ShapeError, match="leading dimension 3"):
            transform(Permute((2, 0, 1)), jnp.ones(4))

    def test_sizes(self):
        b = Permute((2, 0, 1))

        assert b.output_size(3) == 3
        assert inverse(b).input_size(3) == 3
        with pytest.raises(ShapeError, match="input length 3, got 4"):
            b.output_size(4)
        with pytest.raises(ShapeError, match="output length 3, got 2"):
            b.input_size(2)


class TestStickBreaking:
    """Tests for StickBreaking."""

    def test_sizes(self):
        sb = StickBreaking()
        assert sb.output_size(3) == 4
        assert sb.input_size(4) == 3
        assert inverse(sb).output_size(4) == 3

    def test_origin_maps_to_uniform(self, dim):
        y = transform(StickBreaking(), jnp.zeros(dim))
        assert jnp.allclose(y, jnp.full(dim + 1, 1.0 / (dim + 1)))

    def test_on_simplex(self, key, dim):
        y = transform(StickBreaking(), 3.0 * _reals(key, (dim,)))

        assert y.shape == (dim + 1,)
        assert jnp.all(y > 0)
        assert jnp.allclose(jnp.sum(y), 1.0)

    def test_logdet_vs_autodiff(self, key, dim):
        """Log-det is that of the Jacobian of the first K - 1 outputs."""
        x = _reals(key, (dim,))
        J = jax.jacfwd(StickBreaking().transform)(x)[:-1]

        expected = jnp.linalg.slogdet(J)[1]

        assert jnp.allclose(logabsdetjac(StickBreaking(), x), expected, atol=1e-10)

    def test_round_trip(self, key, dim):
        sb = StickBreaking()
        x = _reals(key, (dim,))

        result = check_invertibility(sb, inverse(sb), x)

        assert result["reconstruction_error"] < 1e-10
        assert result["logdet_error"] < 1e-10

    def test_batch_round_trip(self, key, dim, batch_size):
        sb = StickBreaking()
        xs = _reals(key, (batch_size, dim))

        ys = sb.transform_batch(xs)

        assert ys.shape == (batch_size, dim + 1)
        assert jnp.allclose(inverse(sb).transform_batch(ys), xs, atol=1e-10)

    def test_codomain_sum(self):
        with pytest.raises(DomainError, match="sum to one"):
            transform(inverse(StickBreaking()), jnp.array([0.5, 0.6]))

    def test_codomain_positive(self):
        with pytest.raises(DomainError, match="positive"):
            inverse(StickBreaking()).transform_batch(jnp.array([[1.2, -0.2]]))

    def test_not_a_vector(self):
        with pytest.raises(ShapeError):
            transform(StickBreaking(), jnp.zeros((2, 2)))


# ============================================================================
# Autodiff Jacobians
# ============================================================================
class TestADTransform:
    """Tests for ADTransform and ADBijector."""

    def test_not_invertible(self):
        t = ADTransform(jnp.tanh)

        assert invertible(t) is NotInvertible
        with pytest.raises(NotInvertibleError):
            inverse(t)

    def test_logdet(self, key, dim):
        x = _reals(key, (dim,))

        ld = logabsdetjac(ADTransform(jnp.tanh), x)

        assert jnp.allclose(ld, jnp.sum(jnp.log1p(-jnp.tanh(x) ** 2)))

    def test_reverse_mode_agrees(self, key, dim):
        x = _reals(key, (dim,))
        fwd = ADTransform(jnp.sinh)
        rev = ADTransform(jnp.sinh, config=ADConfig("reverse"))

        assert jnp.allclose(logabsdetjac(fwd, x), logabsdetjac(rev, x))

    def test_scalar(self):
        ld = logabsdetjac(ADTransform(jnp.sinh), jnp.array(0.7))
        assert jnp.allclose(ld, jnp.log(jnp.cosh(0.7)))

    def test_non_square_jacobian(self, dim):
        t = ADTransform(lambda x: jnp.concatenate([x, x]))

        with pytest.raises(ShapeError, match="square"):
            logabsdetjac(t, jnp.ones(dim))

    def test_singular_jacobian(self):
        t = ADTransform(lambda x: jnp.sum(x) * jnp.ones_like(x))

        with pytest.raises(DomainError, match="singular"):
            logabsdetjac(t, jnp.array([1.0, 2.0]))

    def test_batch(self, key, dim, batch_size):
        xs = _reals(key, (batch_size, dim))

        lds = ADTransform(jnp.tanh).logabsdetjac_batch(xs)

        assert lds.shape == (batch_size,)
        assert jnp.allclose(lds, jnp.sum(jnp.log1p(-jnp.tanh(xs) ** 2), axis=-1))

    def test_ad_bijector_matches_closed_form(self, key, dim):
        x = _reals(key, (dim,))
        b = ADBijector(jnp.exp, jnp.log)

        assert jnp.allclose(logabsdetjac(b, x), logabsdetjac(Exp(), x))
        assert jnp.allclose(transform(inverse(b), jnp.exp(x)), x)
