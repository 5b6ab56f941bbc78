from __future__ import annotations

import logging

import jax.numpy as jnp
import pytest

import isam_jit  # noqa: F401
from isam_jit.core.factor_graph import FactorGraph, numerical_jacobian
from isam_jit.core.noise import Constrained, Isotropic
from isam_jit.core.types import Factor
from isam_jit.core.values import Values
from isam_jit.exceptions import InvalidMeasurementError, MalformedGraphError
from isam_jit.optimization.solvers import GaussNewtonOptimizer
from isam_jit.slam.measurements import between_constraint, between_factor, prior_factor, projection_factor

K = jnp.array([[400.0, 0.0, 320.0], [0.0, 400.0, 240.0], [0.0, 0.0, 1.0]])


def test_single_variable_prior():
    """
    One variable x, one prior factor:
        error = x - 2
    The optimum should be x ~= 2.
    """
    fg = FactorGraph()
    values = Values()
    values.insert(0, "scalar", [0.0])
    fg.add_factor(prior_factor(0, [2.0]))

    result = GaussNewtonOptimizer(fg, values).optimize()

    assert result.converged
    assert float(result.values.at(0)[0]) == pytest.approx(2.0, abs=1e-9)


def test_tiny_slam_prior_plus_odom():
    """
    Two 1D variables p0, p1:
      - prior on p0: wants p0 = 0
      - between p0 and p1: wants p1 - p0 = 1
    Optimum: p0 = 0, p1 = 1
    """
    fg = FactorGraph()
    values = Values()
    values.insert(0, "vector", [0.5])
    values.insert(1, "vector", [0.5])
    fg.add_factor(prior_factor(0, [0.0]))
    fg.add_factor(between_factor(0, 1, [1.0]))

    result = GaussNewtonOptimizer(fg, values).optimize()

    assert float(result.values.at(0)[0]) == pytest.approx(0.0, abs=1e-9)
    assert float(result.values.at(1)[0]) == pytest.approx(1.0, abs=1e-9)
    assert result.error == pytest.approx(0.0, abs=1e-12)


def test_error_is_half_squared_whitened_norm():
    fg = FactorGraph()
    values = Values()
    values.insert(0, "vector", [1.0, 3.0])
    fg.add_factor(prior_factor(0, [0.0, 0.0], Isotropic(2, 0.5)))
    # whitened residual = [2, 6]
    assert fg.error(values) == pytest.approx(0.5 * (4.0 + 36.0))


def test_keys_in_first_appearance_order():
    fg = FactorGraph()
    fg.add_factor(between_factor("b", "a", [0.0]))
    fg.add_factor(between_factor("a", "c", [0.0]))
    fg.add_factor(prior_factor("d", [0.0]))
    assert fg.keys() == ("b", "a", "c", "d")
    assert fg.structure() == [("b", "a"), ("a", "c"), ("d",)]


def test_unknown_factor_type_raises():
    fg = FactorGraph()
    with pytest.raises(ValueError):
        fg.add_factor(Factor("no_such_factor", (0,), {}))


def test_register_residual_per_graph():
    fg = FactorGraph()
    fg.register_residual("square", lambda x, params: x * x - params["target"])
    fg.add("square", [0], {"target": 4.0})
    values = Values()
    values.insert(0, "scalar", [1.0])

    result = GaussNewtonOptimizer(fg, values).optimize()

    assert result.converged
    assert float(result.values.at(0)[0]) == pytest.approx(2.0, abs=1e-6)
    # the default registry is untouched
    assert "square" not in FactorGraph().residual_fns


def test_missing_key_is_malformed():
    fg = FactorGraph()
    values = Values()
    values.insert(0, "vector", [0.0])
    fg.add_factor(prior_factor(0, [0.0]))
    fg.add_factor(between_factor(0, 7, [1.0]))

    with pytest.raises(MalformedGraphError) as info:
        fg.linearize(values)
    assert info.value.factor_index == 1
    assert info.value.key == 7
    assert isinstance(info.value, KeyError)


def test_point_behind_camera_gets_penalty(caplog):
    fg = FactorGraph()
    values = Values()
    values.insert("cam", "pose3", jnp.zeros(6))
    values.insert("p", "point3", [0.0, 0.0, -2.0])
    fg.add_factor(projection_factor("cam", "p", [320.0, 240.0], K, Isotropic(2, 1.0)))

    with caplog.at_level(logging.WARNING, logger="isam_jit"):
        r = fg.residual(0, values)
        jf = fg.linearize_factor(0, values)

    assert jnp.allclose(r, jnp.full(2, 1e3))
    assert jnp.allclose(jf.b, -jnp.full(2, 1e3))
    for block in jf.blocks:
        assert jnp.allclose(block, 0.0)
    assert fg.error(values) == pytest.approx(0.5 * 2 * 1e6)
    assert any("Invalid measurement" in rec.message for rec in caplog.records)


def test_raised_invalid_measurement_uses_custom_penalty():
    def picky(x, params):
        raise InvalidMeasurementError("degenerate geometry")

    fg = FactorGraph()
    fg.register_residual("picky", picky)
    fg.add("picky", [0], {"penalty": 10.0}, Isotropic(3, 1.0))
    values = Values()
    values.insert(0, "vector", [0.0, 0.0, 0.0])

    assert jnp.allclose(fg.residual(0, values), jnp.full(3, 10.0))
    assert fg.linearize_factor(0, values).rows == 3


def test_hard_constraint_rows_in_error():
    """Satisfied hard rows add nothing; violated ones are weighted by mu."""
    fg = FactorGraph()
    fg.add_factor(between_constraint(0, 1, [1.0], mu=100.0))
    values = Values()
    values.insert(0, "vector", [0.0])
    values.insert(1, "vector", [1.0])
    assert fg.error(values) == 0.0
    assert fg.linearize_factor(0, values).has_constraints()

    values.update(1, [1.5])
    assert fg.error(values) == pytest.approx(0.5 * 100.0 * 0.25)


def test_mixed_constrained_noise_whitens_soft_rows_only():
    fg = FactorGraph()
    fg.add_factor(prior_factor(0, [0.0, 0.0], Constrained([0.0, 0.5])))
    values = Values()
    values.insert(0, "vector", [1.0, 1.0])
    jf = fg.linearize_factor(0, values)
    assert jnp.allclose(jf.b, jnp.array([-1.0, -2.0]))
    assert list(map(bool, jf.constrained)) == [True, False]


def test_numerical_jacobian_of_known_function():
    J = numerical_jacobian(lambda x: jnp.array([x[0] * x[1], jnp.sin(x[1])]), jnp.array([2.0, 0.5]))
    expected = jnp.array([[0.5, 2.0], [0.0, jnp.cos(0.5)]])
    assert jnp.allclose(J, expected, atol=1e-8)
