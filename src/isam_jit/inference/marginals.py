# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Marginal covariances from the linearized posterior.

To get the joint marginal of a set of query variables, the Gaussian graph is
eliminated with the query variables *last* (constrained min-degree). Their
conditionals then only involve each other and stack into an upper-triangular
square-root information matrix ``R`` whose ``RᵀR`` is the joint marginal
information; its inverse is the covariance. Covariances are in the tangent
space of each variable at the linearization point.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

import jax.numpy as jnp

from isam_jit.core.types import Key
from isam_jit.inference.elimination import eliminate_sequential
from isam_jit.inference.ordering import min_degree_ordering
from isam_jit.linear.gaussian import GaussianFactorGraph


class JointMarginal:
    """Block view of a joint covariance matrix over ``keys``."""

    def __init__(self, keys: Sequence[Key], dims: Dict[Key, int], matrix: jnp.ndarray) -> None:
        self.keys: Tuple[Key, ...] = tuple(keys)
        self.dims = {k: dims[k] for k in self.keys}
        self._offsets: Dict[Key, int] = {}
        col = 0
        for k in self.keys:
            self._offsets[k] = col
            col += self.dims[k]
        self.matrix = matrix

    def __getitem__(self, pair: Tuple[Key, Key]) -> jnp.ndarray:
        ki, kj = pair
        i, j = self._offsets[ki], self._offsets[kj]
        return self.matrix[i:i + self.dims[ki], j:j + self.dims[kj]]

    def full_matrix(self) -> jnp.ndarray:
        return self.matrix


def joint_information(
    linear: GaussianFactorGraph,
    keys: Sequence[Key],
    rank_tol: float = 1e-9,
) -> Tuple[List[Key], jnp.ndarray]:
    """Joint marginal information ``RᵀR`` over ``keys`` (in the given order)."""
    keys = list(dict.fromkeys(keys))
    dims = linear.dims()
    for k in keys:
        if k not in dims:
            raise KeyError(k)
    ordering = min_degree_ordering(linear.structure(), constrained_last=keys, keys=linear.keys())
    steps = eliminate_sequential(linear, ordering, rank_tol)
    tail = steps[len(steps) - len(keys):]

    offsets: Dict[Key, int] = {}
    col = 0
    for k in keys:
        offsets[k] = col
        col += dims[k]
    R = jnp.zeros((col, col))
    for step in tail:
        cond = step.conditional
        row = offsets[cond.frontal]
        R = R.at[row:row + cond.dim, row:row + cond.dim].set(cond.R)
        for p, Sp in zip(cond.parents, cond.S):
            R = R.at[row:row + cond.dim, offsets[p]:offsets[p] + dims[p]].set(Sp)
    return keys, R.T @ R


class Marginals:
    """
    Marginal covariances of a nonlinear graph at ``values``.

    The graph is linearized once on construction.
    """

    def __init__(self, graph, values, rank_tol: float = 1e-9) -> None:
        self.linear = graph.linearize(values)
        self.rank_tol = rank_tol

    @classmethod
    def from_linear(cls, linear: GaussianFactorGraph, rank_tol: float = 1e-9) -> "Marginals":
        out = cls.__new__(cls)
        out.linear = linear
        out.rank_tol = rank_tol
        return out

    def marginal_information(self, key: Key) -> jnp.ndarray:
        _, info = joint_information(self.linear, [key], self.rank_tol)
        return info

    def marginal_covariance(self, key: Key) -> jnp.ndarray:
        return jnp.linalg.inv(self.marginal_information(key))

    def joint_marginal_covariance(self, keys: Iterable[Key]) -> JointMarginal:
        keys, info = joint_information(self.linear, list(keys), self.rank_tol)
        return JointMarginal(keys, self.linear.dims(), jnp.linalg.inv(info))

    def joint_marginal_information(self, keys: Iterable[Key]) -> JointMarginal:
        keys, info = joint_information(self.linear, list(keys), self.rank_tol)
        return JointMarginal(keys, self.linear.dims(), info)
