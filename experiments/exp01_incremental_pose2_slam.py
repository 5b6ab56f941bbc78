from __future__ import annotations

import logging
import math

import jax.numpy as jnp

from isam_jit.core.noise import Isotropic
from isam_jit.optimization.incremental import IncrementalConfig
from isam_jit.world.model import WorldModel


def setup_landmark_world() -> WorldModel:
    """
    Build a small planar SLAM session step by step:

      - 8 poses on a circle of radius 2, 45 degrees apart
      - 2 landmarks, at the center and outside the circle
      - odometry between consecutive poses, a loop closure back to pose0
      - bearing/range observations of every landmark from every pose

    After each pose the world model pushes the new pieces into the
    incremental smoother.
    """
    wm = WorldModel(IncrementalConfig(relinearize_threshold=0.01, relinearize_skip=1))

    radius = 2.0
    step_angle = math.pi / 4
    chord = 2.0 * radius * math.sin(step_angle / 2.0)
    odom = jnp.array([chord * math.cos(step_angle / 2.0), chord * math.sin(step_angle / 2.0), step_angle])
    landmarks = {"center": jnp.array([0.0, 0.0]), "tree": jnp.array([4.0, 1.0])}

    def truth(i):
        a = i * step_angle
        return jnp.array([radius * math.cos(a), radius * math.sin(a), a + math.pi / 2])

    ids = {}
    for name, pos in landmarks.items():
        ids[name] = wm.add_point(pos + jnp.array([0.3, -0.2]), name=name)

    prev = None
    for i in range(8):
        # noisy initial guess
        guess = truth(i) + jnp.array([0.05 * i, -0.03 * i, 0.01 * i])
        pose = wm.add_pose(guess, name=f"x{i}")
        if prev is None:
            wm.add_factor("prior", (pose,), {"prior": truth(0)}, Isotropic(3, 0.01))
        else:
            wm.add_factor("between", (prev, pose), {"measured": odom}, Isotropic(3, 0.05))
        x, y, th = (float(v) for v in truth(i))
        for name, pos in landmarks.items():
            dx, dy = float(pos[0]) - x, float(pos[1]) - y
            bearing = math.atan2(dy, dx) - th
            wm.add_factor(
                "bearing_range",
                (pose, ids[name]),
                {"measured": jnp.array([bearing, math.hypot(dx, dy)])},
                Isotropic(2, 0.05),
            )
        result = wm.update()
        print(
            f"step {i}: {len(result.reeliminated_keys)} variables re-eliminated, "
            f"{len(result.relinearized_keys)} relinearized, "
            f"{result.cliques_resolved} cliques re-solved"
        )
        prev = pose

    wm.add_factor("between", (prev, wm.pose_ids["x0"]), {"measured": odom}, Isotropic(3, 0.05))
    wm.update()
    return wm


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    wm = setup_landmark_world()
    for name, key in wm.point_ids.items():
        print(f"{name}: {wm.get_variable_value(key)}")
    print("x7 covariance:")
    print(wm.marginal_covariance(wm.pose_ids["x7"]))
