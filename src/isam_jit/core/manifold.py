# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Manifold registry for variable types.

Every variable in a :class:`~isam_jit.core.values.Values` carries a type
tag (``"vector"``, ``"pose2"``, ``"pose3"``, ...). The tag selects a
:class:`Manifold` record holding the pure functions the engine needs:

    retract(x, v)           x ⊕ v, with v in the tangent space
    local_coordinates(x, y) y ⊖ x, the tangent vector taking x to y
    dimension(x)            tangent-space dimension
    between(x, y)           x⁻¹ ∘ y   (group types only, used by factors)
    compose(x, y)           x ∘ y

The two maps are mutual inverses for small v:
``local_coordinates(x, retract(x, v)) ≈ v``.

The optimizer never inspects the tag itself; it only calls through this
registry, so new types are added with :func:`register_manifold` without
touching the solvers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import jax.numpy as jnp

from . import math3d

ArrayFn = Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]


@dataclass(frozen=True)
class Manifold:
    name: str
    retract: ArrayFn
    local_coordinates: ArrayFn
    dimension: Callable[[jnp.ndarray], int]
    between: Optional[ArrayFn] = None
    compose: Optional[ArrayFn] = None


def _vector_dim(x: jnp.ndarray) -> int:
    return int(jnp.shape(x)[0])


VECTOR = Manifold(
    name="vector",
    retract=lambda x, v: x + v,
    local_coordinates=lambda x, y: y - x,
    dimension=_vector_dim,
    between=lambda x, y: y - x,
    compose=lambda x, y: x + y,
)

ROT2 = Manifold(
    name="rot2",
    retract=lambda x, v: math3d.wrap_angle(x + v),
    local_coordinates=lambda x, y: math3d.wrap_angle(y - x),
    dimension=lambda x: 1,
    between=lambda x, y: math3d.wrap_angle(y - x),
    compose=lambda x, y: math3d.wrap_angle(x + y),
)

POSE2 = Manifold(
    name="pose2",
    retract=math3d.pose2_retract,
    local_coordinates=math3d.pose2_local,
    dimension=lambda x: 3,
    between=math3d.pose2_between,
    compose=math3d.pose2_compose,
)

ROT3 = Manifold(
    name="rot3",
    retract=lambda x, v: math3d.so3_log(math3d.so3_exp(v) @ math3d.so3_exp(x)),
    local_coordinates=lambda x, y: math3d.so3_log(
        math3d.so3_exp(y) @ math3d.so3_exp(x).T
    ),
    dimension=lambda x: 3,
    between=lambda x, y: math3d.so3_log(math3d.so3_exp(x).T @ math3d.so3_exp(y)),
    compose=lambda x, y: math3d.so3_log(math3d.so3_exp(x) @ math3d.so3_exp(y)),
)

POSE3 = Manifold(
    name="pose3",
    retract=math3d.se3_retract_left,
    local_coordinates=math3d.se3_local_left,
    dimension=lambda x: 6,
    between=math3d.relative_pose_se3,
    compose=math3d.compose_pose_se3,
)

MANIFOLDS: Dict[str, Manifold] = {
    "vector": VECTOR,
    "rot2": ROT2,
    "pose2": POSE2,
    "rot3": ROT3,
    "pose3": POSE3,
}

# Friendly aliases for common variable kinds
TYPE_TO_MANIFOLD: Dict[str, str] = {
    "point2": "vector",
    "point3": "vector",
    "landmark": "vector",
    "scalar": "vector",
    "pose_se2": "pose2",
    "pose_se3": "pose3",
}


def register_manifold(name: str, manifold: Manifold) -> None:
    """Make a new variable type available to Values and the solvers."""
    MANIFOLDS[name] = manifold


def get_manifold(var_type: str) -> Manifold:
    name = TYPE_TO_MANIFOLD.get(var_type, var_type)
    try:
        return MANIFOLDS[name]
    except KeyError:
        raise ValueError(f"Unknown manifold type '{var_type}'") from None
