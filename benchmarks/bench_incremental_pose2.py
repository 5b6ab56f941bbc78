# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.

import math
import time

import jax.numpy as jnp

from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.noise import Isotropic
from isam_jit.core.values import Values
from isam_jit.optimization.incremental import IncrementalConfig, IncrementalSmoother
from isam_jit.optimization.solvers import GaussNewtonOptimizer
from isam_jit.slam.measurements import between_factor, prior_factor


def build_pose2_trajectory(num_poses: int = 200, loop_every: int = 25):
    """
    Planar trajectory driving around a square of side 10, one pose per
    meter, with a loop closure to the pose one lap back every
    ``loop_every`` poses.

    Returns a list of (factors, (key, initial value)) steps, one per pose.
    """
    odom_noise = Isotropic(3, 0.1)
    loop_noise = Isotropic(3, 0.2)
    step = jnp.array([1.0, 0.0, 0.0])
    turn = jnp.array([1.0, 0.0, math.pi / 2])

    steps = []
    pose = jnp.zeros(3)
    for i in range(num_poses):
        if i == 0:
            factors = [prior_factor(0, jnp.zeros(3), Isotropic(3, 0.01))]
        else:
            measured = turn if i % 10 == 0 else step
            factors = [between_factor(i - 1, i, measured, odom_noise)]
            c, s = math.cos(float(pose[2])), math.sin(float(pose[2]))
            pose = pose + jnp.array(
                [c * measured[0] - s * measured[1], s * measured[0] + c * measured[1], measured[2]]
            )
            if i >= 40 and i % loop_every == 0:
                factors.append(between_factor(i - 40, i, jnp.zeros(3), loop_noise))
        # drifting initial guess
        guess = pose + jnp.array([0.01 * i, -0.005 * i, 0.002 * i])
        steps.append((factors, (i, guess)))
    return steps


def run_benchmark(num_poses: int = 200):
    print("=== Incremental vs batch pose2 benchmark ===")
    print(f"num_poses = {num_poses}")
    steps = build_pose2_trajectory(num_poses)

    # Warmup: compile the prior and between kernels once
    warm = IncrementalSmoother()
    for factors, (key, guess) in steps[:2]:
        new_values = Values()
        new_values.insert(key, "pose2", guess)
        warm.update(factors, new_values)

    smoother = IncrementalSmoother(IncrementalConfig(relinearize_skip=1))
    resolved = 0
    t0 = time.time()
    for factors, (key, guess) in steps:
        new_values = Values()
        new_values.insert(key, "pose2", guess)
        result = smoother.update(factors, new_values)
        resolved += result.cliques_resolved
    t1 = time.time()
    print(f"Incremental: {(t1 - t0) * 1000:.1f} ms total, "
          f"{resolved / num_poses:.1f} cliques re-solved per update")

    fg = FactorGraph()
    values = Values()
    for factors, (key, guess) in steps:
        fg.add_factors(factors)
        values.insert(key, "pose2", guess)
    t0 = time.time()
    batch = GaussNewtonOptimizer(fg, values).optimize()
    t1 = time.time()
    print(f"Batch GN (final graph only): {(t1 - t0) * 1000:.1f} ms, "
          f"{batch.iterations} iterations, status {batch.status.value}")

    estimate = smoother.calculate_estimate()
    last = num_poses - 1
    print(f"pose_last (incremental): {estimate.at(last)}")
    print(f"pose_last (batch):       {batch.values.at(last)}")


if __name__ == "__main__":
    run_benchmark(num_poses=200)
