# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Session-level wrapper around the factor graph and the estimate.

This module defines the *world model*: a thin layer on top of
:class:`~isam_jit.core.factor_graph.FactorGraph` and
:class:`~isam_jit.core.values.Values` that hands out variable keys, records
factors, and runs either a batch optimizer or the incremental smoother.

Key responsibilities
--------------------
- Own one FactorGraph and one Values for the whole session.
- Provide ergonomic helpers to:
    • Add variables with automatically assigned integer keys.
    • Add typed factors (priors, betweens, projections, ...).
    • Optimize in batch (Gauss-Newton or Levenberg-Marquardt) and write the
      result back.
    • Push everything added since the last call into an
      :class:`~isam_jit.optimization.incremental.IncrementalSmoother`.
- Keep simple name → key maps so that scenarios do not have to track keys.

Typical use
-----------
    wm = WorldModel()
    x0 = wm.add_pose([0.0, 0.0, 0.0])
    x1 = wm.add_pose([1.0, 0.0, 0.0])
    wm.add_factor("prior", [x0], {"prior": jnp.zeros(3)}, Isotropic(3, 0.1))
    wm.add_factor("between", [x0, x1], {"measured": jnp.array([1.0, 0, 0])}, Isotropic(3, 0.2))
    wm.optimize(method="lm")

Design goals
------------
- **Thin wrapper**: all numerical work stays in the optimizers; WorldModel
  only decides what to hand them.
- **Safe write-back**: values are replaced only when the optimizer did not
  fail, so a rank-deficient graph can be fixed and optimized again.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Sequence

import jax.numpy as jnp

from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.types import Factor, Key
from isam_jit.core.values import Values
from isam_jit.inference.marginals import Marginals
from isam_jit.optimization.incremental import IncrementalConfig, IncrementalSmoother, UpdateResult
from isam_jit.optimization.solvers import (
    GaussNewtonConfig,
    GaussNewtonOptimizer,
    LevenbergMarquardtConfig,
    LevenbergMarquardtOptimizer,
    OptimizationResult,
)


class WorldModel:
    """High-level estimation session built on :class:`FactorGraph`."""

    def __init__(self, incremental_config: Optional[IncrementalConfig] = None) -> None:
        self.fg = FactorGraph()
        self.values = Values()
        # Semantic maps; purely for convenience.
        self.pose_ids: Dict[str, Key] = {}
        self.point_ids: Dict[str, Key] = {}
        self.incremental_config = incremental_config
        self.smoother: Optional[IncrementalSmoother] = None
        self._next_key = 0
        self._pending_keys: List[Key] = []
        self._pushed_factors = 0

    # --- construction ---

    def add_variable(self, var_type: str, value, key: Optional[Key] = None) -> Key:
        """
        Insert a variable and return its key. Without ``key`` the next free
        integer is used.
        """
        if key is None:
            while self._next_key in self.values:
                self._next_key += 1
            key = self._next_key
            self._next_key += 1
        self.values.insert(key, var_type, value)
        self._pending_keys.append(key)
        return key

    def add_pose(self, value, name: Optional[str] = None, var_type: str = "pose2") -> Key:
        """Add a pose variable (planar by default; pass ``var_type="pose3"`` for SE(3))."""
        key = self.add_variable(var_type, value)
        if name is not None:
            self.pose_ids[name] = key
        return key

    def add_point(self, value, name: Optional[str] = None) -> Key:
        """Add a landmark position; the dimension follows ``value``."""
        key = self.add_variable("vector", value)
        if name is not None:
            self.point_ids[name] = key
        return key

    def add_factor(self, f_type: str, var_ids: Sequence[Key], params: Optional[Dict] = None, noise=None) -> int:
        """Create a factor and return its index in the graph."""
        return self.fg.add_factor(Factor(f_type, tuple(var_ids), params or {}, noise))

    def add_factors(self, factors: Iterable[Factor]) -> List[int]:
        return self.fg.add_factors(factors)

    # --- batch ---

    def optimize(
        self,
        method: str = "gn",
        should_cancel: Optional[Callable[[], bool]] = None,
        **config,
    ) -> OptimizationResult:
        """
        Optimize the whole graph from the current values.

        method:
          - "gn" : Gauss-Newton
          - "lm" : Levenberg-Marquardt

        Extra keyword arguments go to the matching config dataclass. The
        values are written back unless the run failed.
        """
        if method == "gn":
            optimizer = GaussNewtonOptimizer(self.fg, self.values, GaussNewtonConfig(**config))
        elif method == "lm":
            optimizer = LevenbergMarquardtOptimizer(
                self.fg, self.values, LevenbergMarquardtConfig(**config)
            )
        else:
            raise ValueError(f"Unknown optimization method '{method}'")

        result = optimizer.optimize(should_cancel)
        if not result.failed:
            self.values = result.values
        return result

    # --- incremental ---

    def update(self) -> UpdateResult:
        """Push factors and variables added since the last update."""
        if self.smoother is None:
            self.smoother = IncrementalSmoother(self.incremental_config)
        new_factors = self.fg.factors[self._pushed_factors:]
        new_values = Values(self.values.variable(k) for k in self._pending_keys)
        result = self.smoother.update(new_factors, new_values)
        self._pushed_factors = len(self.fg)
        self._pending_keys = []
        estimate = self.smoother.calculate_estimate()
        for k in estimate.keys():
            self.values.update(k, estimate.at(k))
        return result

    # --- queries ---

    def marginal_covariance(self, key: Key) -> jnp.ndarray:
        return Marginals(self.fg, self.values).marginal_covariance(key)

    def error(self) -> float:
        return self.fg.error(self.values)

    def get_variable_value(self, key: Key) -> jnp.ndarray:
        """Return the current value of a variable.

        :param key: Identifier of the variable.
        :returns: A JAX array holding the variable's current value.
        """
        return self.values.at(key)

    def snapshot_state(self) -> Dict[Key, jnp.ndarray]:
        """Capture a shallow snapshot of the current estimate.

        :returns: A dictionary mapping keys to copies of their values.
        """
        return {k: jnp.array(v) for k, v in self.values.snapshot().items()}
