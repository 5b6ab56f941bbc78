# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
SO(2)/SE(2) and SO(3)/SE(3) operations for isam-jit.

This module implements the minimal Lie-group mathematics needed by the
built-in manifold types and measurement models:

    • SO(3) exponential & logarithm maps (stable near 0 and near π)
    • Composition, inversion and relative poses in vector form
    • Left-multiplicative retraction and its exact inverse
    • Planar (SE(2)) counterparts with angle wrapping

All functions are written in JAX so that factor Jacobians can be obtained by
forward-mode autodiff and the whole linearization can be JIT-compiled.

Pose conventions
----------------
pose2 : [x, y, theta]
pose3 : [tx, ty, tz, wx, wy, wz]   (translation, axis-angle rotation)

Retraction convention
---------------------
Both pose types use the *left* update

    R_new = Exp(dw) R,      t_new = Exp(dw) t + dt

whose inverse (``*_local``) is

    dw = Log(R_new Rᵀ),     dt = t_new − Exp(dw) t

so that ``local(x, retract(x, v)) == v`` up to round-off.

Key Functions
-------------
hat(w), vee(W)
    so(3) ↔ R³.
so3_exp(w), so3_log(R)
    Rotation vector ↔ rotation matrix.
compose_pose_se3(a, b), inverse_pose_se3(a), relative_pose_se3(a, b)
    Group operations on 6D pose vectors.
se3_retract_left(pose, delta), se3_local_left(pose, other)
    Manifold update and its inverse.
pose2_* / wrap_angle
    Planar versions.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

# theta^2 below which the series expansions are used
_SMALL_ANGLE_SQ = 1e-10


def wrap_angle(theta: jnp.ndarray) -> jnp.ndarray:
    """Wrap an angle (or array of angles) to (-π, π]."""
    return jnp.arctan2(jnp.sin(theta), jnp.cos(theta))


def rot2(theta: jnp.ndarray) -> jnp.ndarray:
    """2×2 rotation matrix for a planar angle."""
    c, s = jnp.cos(theta), jnp.sin(theta)
    return jnp.array([[c, -s], [s, c]])


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    t = v[0:3]
    w = v[3:6]
    return t, w


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Only the skew-symmetric part of the argument contributes.
    """
    return jnp.array([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a second-order series for tiny angles.
    The angle itself is only formed inside the regular branch so that
    forward-mode derivatives at w = 0 stay finite.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    I = jnp.eye(3, dtype=w.dtype)
    W = hat(w)

    def small_angle(_) -> jnp.ndarray:
        return I + W + 0.5 * (W @ W)

    def normal_angle(_) -> jnp.ndarray:
        theta = jnp.sqrt(theta_sq)
        A = jnp.sin(theta) / theta
        B = (1.0 - jnp.cos(theta)) / theta_sq
        return I + A * W + B * (W @ W)

    return jax.lax.cond(theta_sq < _SMALL_ANGLE_SQ, small_angle, normal_angle, None)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map for SO(3).

    Three regimes:
      - theta ≈ 0 : w ≈ vee(R − Rᵀ)/2 (error O(theta³))
      - regular   : w = atan2(sin, cos) · axis
      - theta ≈ π : axis recovered from the symmetric part (R + I)/2

    Returns w in R^3 such that Exp(w) ~ R.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    s = vee(R - R.T)  # sin(theta) * axis
    s_sq = jnp.dot(s, s)

    def small_angle_case(_) -> jnp.ndarray:
        return s

    def general_case(_) -> jnp.ndarray:
        sin_theta = jnp.sqrt(s_sq)
        theta = jnp.arctan2(sin_theta, cos_theta)
        return (theta / sin_theta) * s

    def near_pi_case(_) -> jnp.ndarray:
        B = 0.5 * (R + jnp.eye(3, dtype=R.dtype))
        i = jnp.argmax(jnp.diag(B))
        axis = B[:, i] / jnp.sqrt(jnp.maximum(B[i, i], 1e-300))
        axis = axis / jnp.linalg.norm(axis)
        # keep the sign consistent with the (tiny) antisymmetric part
        axis = jnp.where(jnp.dot(axis, s) < 0.0, -axis, axis)
        theta = jnp.arctan2(jnp.sqrt(s_sq), cos_theta)
        return theta * axis

    tiny = s_sq < _SMALL_ANGLE_SQ
    branch = jnp.where(tiny, jnp.where(cos_theta > 0.0, 0, 2), 1)
    return jax.lax.switch(branch, (small_angle_case, general_case, near_pi_case), None)


# ---------------------------------------------------------------------------
# SE(3) in 6D vector form
# ---------------------------------------------------------------------------


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compose two SE(3) poses in 6D vector form.

    a, b: [tx, ty, tz, wx, wy, wz]
    Returns: 6D vector for a ∘ b
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R = Ra @ Rb
    t = Ra @ tb + ta

    w = so3_log(R)
    return jnp.concatenate([t, w])


def inverse_pose_se3(a: jnp.ndarray) -> jnp.ndarray:
    """Inverse of a 6D pose vector: [-Rᵀ t, Log(Rᵀ)]."""
    t, w = pose_vec_to_rt(a)
    R = so3_exp(w)
    return jnp.concatenate([-(R.T @ t), -w])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compute relative pose from a to b in 6D vector form.

      T_rel = T_a^{-1} T_b
      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R_rel = Ra.T @ Rb
    w_rel = so3_log(R_rel)
    t_rel = Ra.T @ (tb - ta)

    return jnp.concatenate([t_rel, w_rel])


def se3_retract_left(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Left-multiplicative SE(3) retraction:

        R_new = Exp(dw) R
        t_new = Exp(dw) t + dt

    then converted back to the 6D vector [t_new, Log(R_new)].
    """
    pose = jnp.asarray(pose)
    delta = jnp.asarray(delta)

    t, w = pose_vec_to_rt(pose)
    dt, dw = pose_vec_to_rt(delta)

    R = so3_exp(w)
    R_d = so3_exp(dw)

    R_new = R_d @ R
    t_new = R_d @ t + dt

    w_new = so3_log(R_new)
    return jnp.concatenate([t_new, w_new])


def se3_local_left(pose: jnp.ndarray, other: jnp.ndarray) -> jnp.ndarray:
    """Inverse of :func:`se3_retract_left`: the delta taking ``pose`` to ``other``."""
    t, w = pose_vec_to_rt(pose)
    to, wo = pose_vec_to_rt(other)

    R_d = so3_exp(wo) @ so3_exp(w).T
    dw = so3_log(R_d)
    dt = to - R_d @ t
    return jnp.concatenate([dt, dw])


def se3_transform_to(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Express a world point in the pose frame: Rᵀ (p − t)."""
    t, w = pose_vec_to_rt(pose)
    return so3_exp(w).T @ (point - t)


def se3_transform_from(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Map a point in the pose frame to the world: R p + t."""
    t, w = pose_vec_to_rt(pose)
    return so3_exp(w) @ point + t


def se3_identity() -> jnp.ndarray:
    """
    Convenience: return the identity SE(3) pose in 6D vector form.
    """
    return jnp.zeros(6)


# ---------------------------------------------------------------------------
# SE(2) in 3D vector form
# ---------------------------------------------------------------------------


def pose2_compose(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a ∘ b for planar poses [x, y, theta]."""
    t = rot2(a[2]) @ b[:2] + a[:2]
    return jnp.concatenate([t, jnp.atleast_1d(wrap_angle(a[2] + b[2]))])


def pose2_between(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a⁻¹ ∘ b for planar poses."""
    t = rot2(a[2]).T @ (b[:2] - a[:2])
    return jnp.concatenate([t, jnp.atleast_1d(wrap_angle(b[2] - a[2]))])


def pose2_retract(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Planar version of :func:`se3_retract_left`."""
    R_d = rot2(delta[2])
    t_new = R_d @ pose[:2] + delta[:2]
    return jnp.concatenate([t_new, jnp.atleast_1d(wrap_angle(pose[2] + delta[2]))])


def pose2_local(pose: jnp.ndarray, other: jnp.ndarray) -> jnp.ndarray:
    """Inverse of :func:`pose2_retract`."""
    dtheta = wrap_angle(other[2] - pose[2])
    dt = other[:2] - rot2(dtheta) @ pose[:2]
    return jnp.concatenate([dt, jnp.atleast_1d(dtheta)])


def pose2_transform_to(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Express a world point in the planar pose frame."""
    return rot2(pose[2]).T @ (point - pose[:2])
