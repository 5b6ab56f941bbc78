from __future__ import annotations

import jax.numpy as jnp
import pytest

import isam_jit  # noqa: F401
from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.noise import Isotropic
from isam_jit.core.values import Values
from isam_jit.optimization.solvers import GaussNewtonOptimizer
from isam_jit.slam.em import indicator_probabilities, refresh_em_noise_models
from isam_jit.slam.measurements import (
    EM_PROBABILITY_FLOOR,
    between_factor,
    em_between_factor,
    em_probabilities,
    prior_factor,
)


def em_params(inlier_sigma=0.1, outlier_sigma=10.0, dim=2):
    return {
        "inlier_sqrt_info": jnp.eye(dim) / inlier_sigma,
        "outlier_sqrt_info": jnp.eye(dim) / outlier_sigma,
        "prior_inlier": jnp.asarray(0.5),
        "prior_outlier": jnp.asarray(0.5),
    }


def test_probabilities_sum_to_one():
    p = em_probabilities(jnp.array([0.05, -0.02]), em_params())
    assert float(jnp.sum(p)) == pytest.approx(1.0)
    assert float(p[0]) > float(p[1])


def test_gross_error_is_an_outlier_with_floor():
    p = em_probabilities(jnp.array([5.0, 5.0]), em_params(), bump_near_zero=True)
    floor = EM_PROBABILITY_FLOOR / (1.0 + EM_PROBABILITY_FLOOR)
    assert float(p[0]) == pytest.approx(floor, rel=1e-6)
    assert float(p[1]) == pytest.approx(1.0 - floor, rel=1e-6)


def test_floor_is_off_by_default():
    p = em_probabilities(jnp.array([5.0, 5.0]), em_params())
    assert float(p[0]) < 1e-10


def outlier_problem(bump_near_zero=False):
    """
    Three planar points on a line. Odometry is consistent; one robust
    loop measurement between x0 and x2 is wildly wrong.
    """
    fg = FactorGraph()
    values = Values()
    for i in range(3):
        values.insert(i, "vector", [float(i), 0.0])
    noise = Isotropic(2, 0.1)
    fg.add_factor(prior_factor(0, [0.0, 0.0], noise))
    fg.add_factor(between_factor(0, 1, [1.0, 0.0], noise))
    fg.add_factor(between_factor(1, 2, [1.0, 0.0], noise))
    fg.add_factor(
        em_between_factor(0, 2, [2.0, 0.0], Isotropic(2, 0.1), Isotropic(2, 10.0))
    )
    fg.add_factor(
        em_between_factor(
            0, 2, [-3.0, 4.0], Isotropic(2, 0.1), Isotropic(2, 10.0), bump_near_zero=bump_near_zero
        )
    )
    return fg, values


def test_indicator_probabilities_flag_the_outlier():
    fg, values = outlier_problem()
    probs = indicator_probabilities(fg, values)

    assert sorted(probs) == [3, 4]
    good_in, good_out = probs[3]
    bad_in, bad_out = probs[4]
    assert good_in > 0.9
    assert bad_out > 0.9
    assert good_in + good_out == pytest.approx(1.0)


def test_factor_floor_is_opt_in():
    fg, values = outlier_problem()
    assert fg[4].params["bump_near_zero"] is False
    assert indicator_probabilities(fg, values)[4][0] < 1e-10

    fg, values = outlier_problem(bump_near_zero=True)
    bad_in, _ = indicator_probabilities(fg, values)[4]
    floor = EM_PROBABILITY_FLOOR / (1.0 + EM_PROBABILITY_FLOOR)
    assert bad_in == pytest.approx(floor, rel=1e-6)


def test_outlier_barely_moves_the_estimate():
    # without the floor a confident outlier keeps only its broad hypothesis
    fg, values = outlier_problem()
    result = GaussNewtonOptimizer(fg, values).optimize()
    assert result.converged
    assert jnp.allclose(result.values.at(2), jnp.array([2.0, 0.0]), atol=0.05)


def test_em_factor_linearizes_to_both_hypotheses():
    fg, values = outlier_problem()
    jf = fg.linearize_factor(3, values)
    assert jf.rows == 4
    assert fg.residual(3, values).shape == (4,)


def test_refresh_inflates_covariances_and_copies_the_graph():
    fg, values = outlier_problem()
    refreshed = refresh_em_noise_models(fg, values)

    assert len(refreshed) == len(fg)
    assert refreshed[0] is fg[0]
    for i in (3, 4):
        old = fg[i].params
        new = refreshed[i].params
        for name in ("inlier_sqrt_info", "outlier_sqrt_info"):
            W_old, W_new = jnp.asarray(old[name]), jnp.asarray(new[name])
            cov_old = jnp.linalg.inv(W_old.T @ W_old)
            cov_new = jnp.linalg.inv(W_new.T @ W_new)
            # strictly larger: the joint marginal adds a positive-definite term
            assert bool(jnp.all(jnp.linalg.eigvalsh(cov_new - cov_old) > 0.0))
        # the original graph keeps its models
        assert jnp.array_equal(jnp.asarray(old["inlier_sqrt_info"]), jnp.eye(2) / 0.1)
