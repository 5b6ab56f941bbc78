from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

import isam_jit  # noqa: F401
from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.noise import Diagonal, Isotropic
from isam_jit.core.values import Values
from isam_jit.inference.marginals import Marginals
from isam_jit.slam.measurements import between_factor, prior_factor


def loop_problem():
    fg = FactorGraph()
    values = Values()
    for i in range(4):
        values.insert(i, "vector", [float(i), 0.5 * i])
    fg.add_factor(prior_factor(0, [0.0, 0.0], Diagonal([0.1, 0.3])))
    for i in range(3):
        fg.add_factor(between_factor(i, i + 1, [1.0, 0.5], Isotropic(2, 0.2)))
    fg.add_factor(between_factor(3, 0, [-3.0, -1.5], Isotropic(2, 0.5)))
    return fg, values


def dense_covariance(fg, values):
    linear = fg.linearize(values)
    keys = list(values.keys())
    n = 2 * len(keys)
    H = np.zeros((n, n))
    for f in linear:
        A = np.zeros((f.rows, n))
        for k, blk in zip(f.keys, f.blocks):
            i = keys.index(k)
            A[:, 2 * i:2 * i + 2] = np.asarray(blk)
        H += A.T @ A
    return np.linalg.inv(H)


def test_single_prior_covariance():
    fg = FactorGraph()
    values = Values()
    values.insert("x", "pose2", [1.0, 2.0, 0.3])
    fg.add_factor(prior_factor("x", [1.0, 2.0, 0.3], Isotropic(3, 0.1)))
    cov = Marginals(fg, values).marginal_covariance("x")
    assert jnp.allclose(cov, 0.01 * jnp.eye(3), atol=1e-12)


@pytest.mark.parametrize("key", [0, 1, 2, 3])
def test_marginal_covariance_matches_dense_inverse(key):
    fg, values = loop_problem()
    cov = Marginals(fg, values).marginal_covariance(key)
    dense = dense_covariance(fg, values)
    np.testing.assert_allclose(np.asarray(cov), dense[2 * key:2 * key + 2, 2 * key:2 * key + 2], atol=1e-10)


def test_joint_marginal_blocks():
    fg, values = loop_problem()
    joint = Marginals(fg, values).joint_marginal_covariance([3, 1])
    dense = dense_covariance(fg, values)

    assert joint.keys == (3, 1)
    np.testing.assert_allclose(np.asarray(joint[3, 3]), dense[6:8, 6:8], atol=1e-10)
    np.testing.assert_allclose(np.asarray(joint[3, 1]), dense[6:8, 2:4], atol=1e-10)
    np.testing.assert_allclose(np.asarray(joint[1, 3]), dense[2:4, 6:8], atol=1e-10)
    assert joint.full_matrix().shape == (4, 4)


def test_information_is_inverse_of_covariance():
    fg, values = loop_problem()
    marginals = Marginals(fg, values)
    info = marginals.marginal_information(2)
    cov = marginals.marginal_covariance(2)
    assert jnp.allclose(info @ cov, jnp.eye(2), atol=1e-9)


def test_unknown_key_raises():
    fg, values = loop_problem()
    with pytest.raises(KeyError):
        Marginals(fg, values).marginal_covariance("nope")
