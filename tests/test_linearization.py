from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

import isam_jit  # noqa: F401
from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.noise import Diagonal, Isotropic
from isam_jit.core.values import Values
from isam_jit.optimization.jit_wrappers import clear_kernel_cache, kernel_cache_size
from isam_jit.slam.measurements import (
    bearing_range_factor,
    between_factor,
    prior_factor,
    projection_factor,
    range_factor,
)

K = jnp.array([[500.0, 0.0, 320.0], [0.0, 480.0, 240.0], [0.0, 0.0, 1.0]])


def _assert_jacobians_match(fg: FactorGraph, values: Values, index: int) -> None:
    analytic = fg.linearize_factor(index, values).blocks
    numeric = fg.numerical_jacobians(index, values)
    assert len(analytic) == len(numeric)
    for A, N in zip(analytic, numeric):
        assert A.shape == N.shape
        assert jnp.allclose(A, N, atol=1e-5)


def test_between_pose2_jacobians_match_numerical():
    values = Values()
    values.insert(0, "pose2", [1.0, 2.0, 0.4])
    values.insert(1, "pose2", [2.5, 1.0, -2.2])
    fg = FactorGraph()
    fg.add_factor(between_factor(0, 1, [1.2, -0.3, 0.5], Diagonal([0.1, 0.2, 0.05])))
    _assert_jacobians_match(fg, values, 0)


def test_between_pose3_jacobians_match_numerical():
    values = Values()
    values.insert(0, "pose3", [0.1, -0.4, 1.0, 0.3, -0.2, 0.9])
    values.insert(1, "pose3", [1.0, 0.5, 0.2, -0.6, 0.4, 0.1])
    fg = FactorGraph()
    fg.add_factor(between_factor(0, 1, [0.8, 0.9, -0.7, -0.8, 0.5, -0.6], Isotropic(6, 0.1)))
    _assert_jacobians_match(fg, values, 0)


def test_prior_rot3_jacobian_matches_numerical():
    values = Values()
    values.insert("r", "rot3", [0.4, 0.1, -1.3])
    fg = FactorGraph()
    fg.add_factor(prior_factor("r", [0.3, 0.0, -1.0]))
    _assert_jacobians_match(fg, values, 0)


def test_range_and_bearing_range_jacobians_match_numerical():
    values = Values()
    values.insert("x", "pose2", [0.5, -1.0, 0.3])
    values.insert("l", "point2", [4.0, 2.0])
    fg = FactorGraph()
    fg.add_factor(range_factor("x", "l", 4.0, Isotropic(1, 0.1)))
    fg.add_factor(bearing_range_factor("x", "l", 0.5, 4.2, Diagonal([0.05, 0.1])))
    _assert_jacobians_match(fg, values, 0)
    _assert_jacobians_match(fg, values, 1)


def test_projection_jacobian_matches_numerical():
    values = Values()
    values.insert("c", "pose3", [0.1, 0.2, -1.0, 0.05, -0.1, 0.02])
    values.insert("p", "point3", [0.3, -0.2, 4.0])
    fg = FactorGraph()
    fg.add_factor(projection_factor("c", "p", [330.0, 250.0], K, Isotropic(2, 1.0)))
    _assert_jacobians_match(fg, values, 0)


def test_whitening_scales_rows():
    """The JacobianFactor is whitened: b = -e/sigma and A = H/sigma."""
    values = Values()
    values.insert(0, "vector", [1.0, 2.0])
    fg = FactorGraph()
    fg.add_factor(prior_factor(0, [0.0, 0.0], Diagonal([0.5, 2.0])))
    jf = fg.linearize_factor(0, values)
    assert jnp.allclose(jf.b, jnp.array([-2.0, -1.0]))
    assert jnp.allclose(jf.blocks[0], jnp.diag(jnp.array([2.0, 0.5])))
    assert jf.source == 0


def test_kernels_are_shared_per_signature():
    clear_kernel_cache()
    values = Values()
    for i in range(4):
        values.insert(i, "pose2", [float(i), 0.0, 0.0])
    fg = FactorGraph()
    for i in range(3):
        fg.add_factor(between_factor(i, i + 1, [1.0, 0.0, 0.1]))
    fg.linearize(values)
    assert kernel_cache_size() == 1

    fg.add_factor(prior_factor(0, [0.0, 0.0, 0.0]))
    fg.linearize(values)
    assert kernel_cache_size() == 2


def test_threaded_linearization_matches_serial():
    rng = np.random.default_rng(3)
    values = Values()
    fg = FactorGraph()
    for i in range(12):
        values.insert(i, "pose2", rng.normal(size=3))
    for i in range(11):
        fg.add_factor(between_factor(i, i + 1, rng.normal(size=3), Isotropic(3, 0.3)))

    serial = fg.linearize(values)
    threaded = fg.linearize(values, workers=4)
    assert len(serial) == len(threaded)
    for a, b in zip(serial, threaded):
        assert a.keys == b.keys
        assert jnp.allclose(a.b, b.b)
        for A, B in zip(a.blocks, b.blocks):
            assert jnp.allclose(A, B)
