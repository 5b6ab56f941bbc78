from __future__ import annotations

import math

import jax.numpy as jnp
import pytest

import isam_jit  # noqa: F401
from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.math3d import wrap_angle
from isam_jit.core.noise import Isotropic
from isam_jit.core.values import Values
from isam_jit.exceptions import MalformedGraphError, RankDeficientSystemError
from isam_jit.inference.marginals import Marginals
from isam_jit.optimization.incremental import IncrementalConfig, IncrementalSmoother
from isam_jit.optimization.solvers import GaussNewtonOptimizer
from isam_jit.slam.measurements import between_factor, prior_factor, range_factor


def values_of(*entries):
    out = Values()
    for key, var_type, value in entries:
        out.insert(key, var_type, value)
    return out


def test_chain_extension_only_touches_the_top():
    """
    Update 1: x0 - x1 - x2 with a prior on x0.
    Update 2: x3 hangs off x2. Only the root is rebuilt; the clique of x0
    survives as an orphan and is re-attached below x1.
    """
    smoother = IncrementalSmoother()
    smoother.update(
        [
            prior_factor(0, [0.0]),
            between_factor(0, 1, [1.0]),
            between_factor(1, 2, [1.0]),
        ],
        values_of((0, "vector", [0.2]), (1, "vector", [0.8]), (2, "vector", [2.3])),
    )
    tree = smoother.bayes_tree
    assert len(tree.roots) == 1
    assert tree[tree.roots[0]].frontals == [1, 2]
    leaf = tree.clique_of(0)
    leaf_obj = tree[leaf]
    assert leaf_obj.separator == (1,)
    theta0 = smoother.linearization_point.at(0)

    result = smoother.update([between_factor(2, 3, [1.0])], values_of((3, "vector", [2.9])))

    assert result.reeliminated_keys == [1, 2, 3]
    assert result.orphans == [leaf]
    assert result.new_factor_indices == [3]
    assert result.cliques_resolved == 2
    assert tree.clique_of(0) == leaf
    assert tree[leaf] is leaf_obj
    assert tree[tree.clique_of(1)].separator == (2,)
    assert tree[leaf].parent == tree.clique_of(1)
    assert tree.check_running_intersection()
    assert jnp.array_equal(smoother.linearization_point.at(0), theta0)

    estimate = smoother.calculate_estimate()
    for k in range(4):
        assert float(estimate.at(k)[0]) == pytest.approx(float(k), abs=1e-9)


def vector_updates():
    """Planar points with odometry, added one at a time, then a loop closure."""
    noise = Isotropic(2, 0.1)
    steps = [
        ([prior_factor(0, [0.0, 0.0], noise)], [(0, "vector", [0.1, -0.1])]),
        ([between_factor(0, 1, [1.0, 0.0], noise)], [(1, "vector", [1.2, 0.1])]),
        ([between_factor(1, 2, [0.0, 1.0], noise)], [(2, "vector", [1.0, 0.8])]),
        ([between_factor(2, 3, [-1.0, 0.0], noise)], [(3, "vector", [0.1, 1.1])]),
        ([between_factor(3, 4, [0.0, -0.9], noise)], [(4, "vector", [0.0, 0.2])]),
        ([between_factor(4, 0, [0.1, 0.1], noise), between_factor(1, 3, [-1.0, 1.05], noise)], []),
    ]
    return steps


@pytest.mark.parametrize("cache", [True, False])
def test_linear_problem_matches_batch_after_every_update(cache):
    cfg = IncrementalConfig(wildfire_threshold=0.0, cache_linearized_factors=cache)
    smoother = IncrementalSmoother(cfg)
    fg = FactorGraph()
    values = Values()

    for factors, entries in vector_updates():
        smoother.update(factors, values_of(*entries))
        fg.add_factors(factors)
        for key, var_type, value in entries:
            values.insert(key, var_type, value)

        batch = GaussNewtonOptimizer(fg, values).optimize()
        estimate = smoother.calculate_estimate()
        for k in values.keys():
            assert jnp.allclose(estimate.at(k), batch.values.at(k), atol=1e-8)
        assert smoother.bayes_tree.check_running_intersection()


def test_zero_relinearize_threshold_matches_batch_with_default_wildfire():
    """
    A stiff chain x0..x11 followed by a weak prior on x11: the correction
    is tiny at every pose, but with an exact relinearization threshold the
    estimate must still match the batch solution everywhere.
    """
    smoother = IncrementalSmoother(IncrementalConfig(relinearize_threshold=0.0))
    assert smoother.config.wildfire_threshold > 0.0
    fg = FactorGraph()
    values = Values()
    stiff = Isotropic(1, 0.01)

    def push(factors, entries):
        smoother.update(factors, values_of(*entries))
        fg.add_factors(factors)
        for key, var_type, value in entries:
            values.insert(key, var_type, value)

    push([prior_factor(0, [0.0], stiff)], [(0, "vector", [0.05])])
    for k in range(1, 12):
        push([between_factor(k - 1, k, [1.0], stiff)], [(k, "vector", [k + 0.1])])
    # shifts x11 by about 1e-4, under the default wildfire threshold
    push([prior_factor(11, [1011.0], Isotropic(1, 100.0))], [])

    batch = GaussNewtonOptimizer(fg, values).optimize()
    assert batch.converged
    estimate = smoother.calculate_estimate()
    for k in values.keys():
        assert jnp.allclose(estimate.at(k), batch.values.at(k), atol=1e-6)


def test_pose2_loop_matches_batch_after_relinearizing():
    odom = Isotropic(3, 0.1)
    truth = [
        [0.0, 0.0, 0.0],
        [1.0, 0.0, math.pi / 2],
        [1.0, 1.0, math.pi],
        [0.0, 1.0, -math.pi / 2],
    ]
    guesses = [
        [0.05, -0.05, 0.02],
        [1.1, 0.1, math.pi / 2 - 0.1],
        [0.9, 1.15, math.pi - 0.05],
        [0.1, 0.9, -math.pi / 2 + 0.1],
    ]
    measured = [1.0, 0.0, math.pi / 2]

    smoother = IncrementalSmoother(IncrementalConfig(relinearize_skip=1, wildfire_threshold=0.0))
    fg = FactorGraph()
    values = Values()

    def push(factors, entries):
        smoother.update(factors, values_of(*entries))
        fg.add_factors(factors)
        for key, var_type, value in entries:
            values.insert(key, var_type, value)

    push([prior_factor(0, jnp.zeros(3), Isotropic(3, 0.01))], [(0, "pose2", guesses[0])])
    for i in range(1, 4):
        push([between_factor(i - 1, i, measured, odom)], [(i, "pose2", guesses[i])])
    push([between_factor(3, 0, measured, odom)], [])
    for _ in range(6):
        smoother.update(force_relinearize=True)

    batch = GaussNewtonOptimizer(fg, values).optimize()
    estimate = smoother.calculate_estimate()
    for k in range(4):
        x, y = estimate.at(k), batch.values.at(k)
        assert jnp.allclose(x[:2], y[:2], atol=1e-6)
        assert abs(float(wrap_angle(x[2] - y[2]))) < 1e-6
        assert jnp.allclose(x[:2], jnp.array(truth[k][:2]), atol=1e-4)


def test_failed_update_leaves_state_untouched():
    smoother = IncrementalSmoother()
    smoother.update(
        [prior_factor(0, jnp.zeros(3), Isotropic(3, 0.1))],
        values_of((0, "pose2", [0.1, 0.0, 0.0])),
    )
    before = smoother.calculate_estimate()
    n_factors = len(smoother.graph)
    n_cliques = smoother.bayes_tree.num_cliques

    # one range measurement cannot pin down a 2D landmark
    with pytest.raises(RankDeficientSystemError):
        smoother.update(
            [range_factor(0, 1, 5.0, Isotropic(1, 0.1))],
            values_of((1, "point2", [3.0, 4.0])),
        )

    assert len(smoother.graph) == n_factors
    assert 1 not in smoother.linearization_point
    assert smoother.bayes_tree.num_cliques == n_cliques
    assert jnp.array_equal(smoother.calculate_estimate().at(0), before.at(0))

    # the same key can be added again, this time well constrained
    smoother.update(
        [range_factor(0, 1, 5.0, Isotropic(1, 0.1)), prior_factor(1, [3.0, 4.0], Isotropic(2, 0.1))],
        values_of((1, "point2", [3.0, 4.0])),
    )
    assert 1 in smoother.linearization_point


def test_unknown_key_is_malformed():
    smoother = IncrementalSmoother()
    with pytest.raises(MalformedGraphError):
        smoother.update([between_factor(0, 1, [1.0])], values_of((0, "vector", [0.0])))
    assert len(smoother.graph) == 0


def test_duplicate_key_is_rejected():
    smoother = IncrementalSmoother()
    smoother.update([prior_factor(0, [0.0])], values_of((0, "vector", [0.0])))
    with pytest.raises(ValueError):
        smoother.update([], values_of((0, "vector", [1.0])))


def pose2_pair(exempt=frozenset(), **kwargs):
    cfg = IncrementalConfig(
        relinearize_threshold=0.05, relinearize_skip=1, relinearize_exempt=exempt, **kwargs
    )
    smoother = IncrementalSmoother(cfg)
    smoother.update(
        [
            prior_factor(0, jnp.zeros(3), Isotropic(3, 0.1)),
            between_factor(0, 1, [1.0, 0.0, 0.0], Isotropic(3, 0.1)),
        ],
        values_of((0, "pose2", [0.5, 0.0, 0.0]), (1, "pose2", [1.5, 0.4, 0.2])),
    )
    return smoother


def test_large_deltas_trigger_relinearization():
    smoother = pose2_pair()
    theta1 = smoother.linearization_point.at(1)

    result = smoother.update()

    assert set(result.relinearized_keys) == {0, 1}
    assert not jnp.array_equal(smoother.linearization_point.at(1), theta1)


def test_exempt_keys_are_not_relinearized():
    smoother = pose2_pair(exempt=frozenset({0}))
    theta0 = smoother.linearization_point.at(0)

    result = smoother.update()

    assert result.relinearized_keys == [1]
    assert jnp.array_equal(smoother.linearization_point.at(0), theta0)


def test_relinearization_can_be_disabled():
    smoother = pose2_pair(enable_relinearization=False)
    result = smoother.update(force_relinearize=True)
    assert result.relinearized_keys == []


def test_relinearize_skip():
    cfg = IncrementalConfig(relinearize_threshold=0.0, relinearize_skip=3)
    smoother = IncrementalSmoother(cfg)
    smoother.update([prior_factor(0, [1.0])], values_of((0, "vector", [0.0])))
    # updates 2 and 3 skip the check, update 4 runs it
    assert smoother.update().relinearized_keys == []
    assert smoother.update().relinearized_keys == []
    assert smoother.update().relinearized_keys == [0]


def test_marginals_match_batch():
    smoother = IncrementalSmoother()
    fg = FactorGraph()
    values = Values()
    for factors, entries in vector_updates():
        smoother.update(factors, values_of(*entries))
        fg.add_factors(factors)
        for key, var_type, value in entries:
            values.insert(key, var_type, value)

    batch = Marginals(fg, values)
    for k in (0, 2, 4):
        assert jnp.allclose(smoother.marginal_covariance(k), batch.marginal_covariance(k), atol=1e-10)


def test_error_is_reported_on_request():
    smoother = IncrementalSmoother(IncrementalConfig(evaluate_error=True))
    result = smoother.update([prior_factor(0, [1.0])], values_of((0, "vector", [0.0])))
    assert result.error == pytest.approx(0.0, abs=1e-12)
    assert float(smoother.estimate_at(0)[0]) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "kwargs",
    [{"relinearize_threshold": -0.1}, {"relinearize_skip": 0}, {"wildfire_threshold": -1.0}],
)
def test_invalid_config_rejected(kwargs):
    with pytest.raises(ValueError):
        IncrementalConfig(**kwargs)


def test_extending_a_converged_pose_chain_leaves_early_poses_alone():
    smoother = IncrementalSmoother()
    smoother.update(
        [
            prior_factor(0, jnp.zeros(3), Isotropic(3, 0.01)),
            between_factor(0, 1, [1.0, 0.0, math.pi / 2], Isotropic(3, 0.1)),
            between_factor(1, 2, [1.0, 0.0, math.pi / 2], Isotropic(3, 0.1)),
        ],
        values_of(
            (0, "pose2", [0.05, -0.05, 0.02]),
            (1, "pose2", [1.1, 0.1, 1.5]),
            (2, "pose2", [1.1, 0.9, 3.0]),
        ),
    )
    for _ in range(4):
        smoother.update(force_relinearize=True)
    before = smoother.calculate_estimate()
    theta = smoother.linearization_point
    leaf = smoother.bayes_tree.clique_of(0)

    result = smoother.update(
        [between_factor(2, 3, [1.0, 0.0, math.pi / 2], Isotropic(3, 0.1))],
        values_of((3, "pose2", [0.01, 1.01, -1.565])),
    )

    assert result.relinearized_keys == []
    assert 0 not in result.reeliminated_keys
    assert set(result.reeliminated_keys) >= {2, 3}
    assert leaf in result.orphans
    for k in (0, 1):
        assert jnp.array_equal(smoother.linearization_point.at(k), theta.at(k))
    after = smoother.calculate_estimate()
    assert jnp.array_equal(after.at(0), before.at(0))
    assert jnp.allclose(after.at(1), before.at(1), atol=1e-12)
    assert jnp.allclose(after.at(3)[:2], jnp.array([0.0, 1.0]), atol=1e-3)
