# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Measurement models (error functions) for isam-jit.

This module defines the *measurement-level* building blocks used by the
factor graph:

    • Each function here implements an error:
          e(x; params) ∈ ℝᵏ
      compatible with JAX differentiation and JIT compilation. ``x`` is the
      concatenation of the connected variable values; ``params["types"]``
      and ``params["sizes"]`` say how to split it.

    • Factor types ("prior", "between", "range", ...) are mapped to these
      functions in a process-wide registry on import, so every new
      :class:`~isam_jit.core.factor_graph.FactorGraph` knows them.
      ``FactorGraph.register_residual`` overrides or extends them per graph.

    • Errors are *unwhitened*. The factor's noise model whitens them.

Families
--------
1. Priors and relative constraints
    • `prior_error`:    local_coordinates(prior, x)
    • `between_error`:  local_coordinates(measured, x1⁻¹ ∘ x2)

   Both work for every registered manifold through its ``between`` and
   ``local_coordinates`` maps. `between_constraint` builds a between factor
   with a hard (zero-sigma) noise model.

2. Range and bearing
    • `range_error`:          ‖p − t‖ − r   (pose2/pose3/point → point)
    • `bearing_range_error`:  [bearing, range] of a point2 seen from a pose2

3. Camera projection
    • `projection_error`:  pinhole projection of a point3 into a pose3
      camera. A point at or behind the image plane makes the error
      non-finite, which the graph turns into a penalty.

4. Robust EM between factor
    • `em_between_error`: between error weighted by inlier/outlier
      indicator probabilities computed from the current error and held
      constant for differentiation (see :mod:`isam_jit.slam.em`).

Notes
-----
When adding a new factor type:

    1. Implement an error here:
           def my_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray

    2. Register it:
           register_default_residual("my_factor", my_error)
       or, for a single graph, ``fg.register_residual("my_factor", my_error)``.
"""

from __future__ import annotations

from typing import Any, Dict, List

import jax
import jax.numpy as jnp

from isam_jit.core.factor_graph import register_default_residual
from isam_jit.core.manifold import get_manifold
from isam_jit.core.math3d import pose2_transform_to, se3_transform_to, wrap_angle
from isam_jit.core.noise import Constrained
from isam_jit.core.types import Factor, Key

# E-step floor used when bump_near_zero is set
EM_PROBABILITY_FLOOR = 0.05
# minimum camera depth for a valid projection
MIN_DEPTH = 1e-6


def _split(x: jnp.ndarray, params: Dict[str, Any]) -> List[jnp.ndarray]:
    out, col = [], 0
    for n in params["sizes"]:
        out.append(x[col:col + n])
        col += n
    return out


def _translation(x: jnp.ndarray, var_type: str) -> jnp.ndarray:
    name = get_manifold(var_type).name
    if name == "pose2":
        return x[:2]
    if name == "pose3":
        return x[:3]
    return x


def _between(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    x1, x2 = _split(x, params)
    manifold = get_manifold(params["types"][0])
    if manifold.between is None:
        raise ValueError(f"Manifold '{manifold.name}' has no between operation")
    return manifold.local_coordinates(jnp.asarray(params["measured"]), manifold.between(x1, x2))


def prior_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Prior on a single variable:
        error = local_coordinates(prior, x)
    """
    manifold = get_manifold(params["types"][0])
    return manifold.local_coordinates(jnp.asarray(params["prior"]), x)


def between_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Relative measurement between two variables of the same type:

        x = [x1, x2]
        error = local_coordinates(measured, x1⁻¹ ∘ x2)
    """
    return _between(x, params)


def range_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """Distance from a pose (or point) to a point, minus the measured range."""
    a, p = _split(x, params)
    t = _translation(a, params["types"][0])
    return jnp.atleast_1d(jnp.linalg.norm(p - t) - params["measured"])


def bearing_range_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Planar bearing and range of a landmark seen from a pose2:

        measured = [bearing, range]
        error    = [wrap(bearinĝ − bearing), rangê − range]
    """
    pose, point = _split(x, params)
    local = pose2_transform_to(pose, point)
    measured = jnp.asarray(params["measured"])
    bearing = jnp.arctan2(local[1], local[0])
    rng = jnp.linalg.norm(local)
    return jnp.stack([wrap_angle(bearing - measured[0]), rng - measured[1]])


def projection_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Pinhole reprojection error of a point3 in a pose3 camera.

    The pose is the camera-to-world transform; ``params["K"]`` is the 3x3
    calibration matrix and ``params["measured"]`` the pixel observation.
    Points with depth below :data:`MIN_DEPTH` give NaN (cheirality).
    """
    pose, point = _split(x, params)
    p_cam = se3_transform_to(pose, point)
    z = p_cam[2]
    safe_z = jnp.where(z > MIN_DEPTH, z, 1.0)
    uvw = params["K"] @ (p_cam / safe_z)
    e = uvw[:2] - params["measured"]
    return jnp.where(z > MIN_DEPTH, e, jnp.nan)


def em_probabilities(e: jnp.ndarray, params: Dict[str, Any], bump_near_zero: bool = False) -> jnp.ndarray:
    """
    E-step: posterior (p_inlier, p_outlier) for a raw between error ``e``.

    Each hypothesis is a zero-mean Gaussian with square-root information
    ``inlier_sqrt_info`` / ``outlier_sqrt_info`` weighted by its prior.
    """
    W_in = params["inlier_sqrt_info"]
    W_out = params["outlier_sqrt_info"]
    w_in = W_in @ e
    w_out = W_out @ e
    log_in = (
        jnp.log(params["prior_inlier"])
        + jnp.linalg.slogdet(W_in)[1]
        - 0.5 * jnp.dot(w_in, w_in)
    )
    log_out = (
        jnp.log(params["prior_outlier"])
        + jnp.linalg.slogdet(W_out)[1]
        - 0.5 * jnp.dot(w_out, w_out)
    )
    probs = jax.nn.softmax(jnp.stack([log_in, log_out]))
    if bump_near_zero:
        probs = jnp.maximum(probs, EM_PROBABILITY_FLOOR)
        probs = probs / jnp.sum(probs)
    return probs


def em_between_error(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Between error split into inlier and outlier hypotheses:

        [√p_in · W_in e ; √p_out · W_out e]

    The indicator probabilities are treated as constants when
    differentiating, so the Jacobian is that of the two whitened copies.
    The factor whitens itself; it is added without a noise model.
    """
    e = _between(x, params)
    probs = jax.lax.stop_gradient(
        em_probabilities(e, params, params.get("bump_near_zero", False))
    )
    w_in = params["inlier_sqrt_info"] @ e
    w_out = params["outlier_sqrt_info"] @ e
    return jnp.concatenate([jnp.sqrt(probs[0]) * w_in, jnp.sqrt(probs[1]) * w_out])


register_default_residual("prior", prior_error)
register_default_residual("between", between_error)
register_default_residual("range", range_error)
register_default_residual("bearing_range", bearing_range_error)
register_default_residual("projection", projection_error)
register_default_residual("em_between", em_between_error)


# --- factor builders ---


def prior_factor(key: Key, prior, noise=None) -> Factor:
    return Factor("prior", (key,), {"prior": jnp.asarray(prior, dtype=float)}, noise)


def between_factor(key1: Key, key2: Key, measured, noise=None) -> Factor:
    return Factor("between", (key1, key2), {"measured": jnp.asarray(measured, dtype=float)}, noise)


def between_constraint(key1: Key, key2: Key, measured, mu: float = 1000.0) -> Factor:
    """Hard equality ``x1⁻¹ ∘ x2 == measured`` (every row zero-sigma)."""
    measured = jnp.atleast_1d(jnp.asarray(measured, dtype=float))
    return between_factor(key1, key2, measured, Constrained.all(measured.shape[0], mu))


def range_factor(key1: Key, key2: Key, measured: float, noise=None) -> Factor:
    return Factor("range", (key1, key2), {"measured": float(measured)}, noise)


def bearing_range_factor(pose: Key, point: Key, bearing: float, rng: float, noise=None) -> Factor:
    return Factor(
        "bearing_range", (pose, point), {"measured": jnp.array([bearing, rng], dtype=float)}, noise
    )


def projection_factor(pose: Key, point: Key, measured, K, noise=None, penalty=None) -> Factor:
    params = {
        "measured": jnp.asarray(measured, dtype=float),
        "K": jnp.asarray(K, dtype=float),
    }
    if penalty is not None:
        params["penalty"] = float(penalty)
    return Factor("projection", (pose, point), params, noise)


def em_between_factor(
    key1: Key,
    key2: Key,
    measured,
    inlier,
    outlier,
    prior_inlier: float = 0.5,
    prior_outlier: float = 0.5,
    bump_near_zero: bool = False,
) -> Factor:
    """
    Robust between factor; ``inlier`` and ``outlier`` are noise models
    exposing ``sqrt_information``. With ``bump_near_zero`` neither
    indicator probability drops below the floor; it is off by default.
    """
    params = {
        "measured": jnp.asarray(measured, dtype=float),
        "inlier_sqrt_info": jnp.asarray(inlier.sqrt_information),
        "outlier_sqrt_info": jnp.asarray(outlier.sqrt_information),
        "prior_inlier": float(prior_inlier),
        "prior_outlier": float(prior_outlier),
        "bump_near_zero": bool(bump_near_zero),
    }
    return Factor("em_between", (key1, key2), params)
