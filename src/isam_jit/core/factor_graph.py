# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Nonlinear factor graph and linearization.

The FactorGraph stores:
    - Factors, in insertion order (the position of a factor is its id)
    - Registered residual functions (by factor type)

Variables live in a separate :class:`~isam_jit.core.values.Values` so that
the same graph can be evaluated at many estimates (the optimizers keep
trying new ones; the incremental smoother keeps a per-variable
linearization point).

Key Features
------------
• Registry of residual functions
    Each factor type maps to ``fn(x, params) -> error`` where ``x`` is the
    concatenation of the connected variable values. A graph starts from the
    process-wide defaults registered by :mod:`isam_jit.slam.measurements`
    and can override or extend them with :meth:`FactorGraph.register_residual`.

• Linearization on manifolds
    :meth:`FactorGraph.linearize_factor` returns a whitened
    :class:`~isam_jit.linear.gaussian.JacobianFactor`. Jacobians are taken
    with respect to the tangent vector of each variable through a jitted
    forward-mode kernel (:mod:`isam_jit.optimization.jit_wrappers`).
    :func:`numerical_jacobian` is the central-difference fallback.

• Invalid measurements
    A residual that raises :class:`~isam_jit.exceptions.InvalidMeasurementError`
    or returns non-finite values (e.g. a landmark behind the camera) is
    replaced by a constant penalty with zero Jacobians, and a warning is
    logged. Optimization carries on.

• Hard constraints
    Rows of a :class:`~isam_jit.core.noise.Constrained` noise model are
    passed through unscaled and flagged on the JacobianFactor so elimination
    can satisfy them exactly. In :meth:`FactorGraph.error` they only count
    when violated, weighted by the model's ``mu``.

Notes
-----
The graph only grows. Removing or replacing factors is done by building a
new graph (see :func:`isam_jit.slam.em.refresh_em_noise_models`).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import jax.numpy as jnp

from isam_jit.exceptions import InvalidMeasurementError, MalformedGraphError
from isam_jit.linear.gaussian import GaussianFactorGraph, JacobianFactor
from isam_jit.optimization.jit_wrappers import FactorKernel, get_kernel, split_params

from .types import Factor, Key
from .values import Values

logger = logging.getLogger(__name__)

# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]

DEFAULT_PENALTY = 1e3
CONSTRAINT_TOL = 1e-9

_DEFAULT_RESIDUALS: Dict[str, ResidualFn] = {}


def register_default_residual(factor_type: str, fn: ResidualFn) -> None:
    """Make ``factor_type`` available to every FactorGraph created afterwards."""
    _DEFAULT_RESIDUALS[factor_type] = fn


def default_residuals() -> Dict[str, ResidualFn]:
    return dict(_DEFAULT_RESIDUALS)


def numerical_jacobian(
    fn: Callable[[jnp.ndarray], jnp.ndarray],
    x: jnp.ndarray,
    step: float = 1e-6,
) -> jnp.ndarray:
    """Central-difference Jacobian of ``fn`` at ``x``."""
    x = jnp.asarray(x, dtype=float)
    cols = []
    for i in range(x.shape[0]):
        dx = jnp.zeros_like(x).at[i].set(step)
        cols.append((fn(x + dx) - fn(x - dx)) / (2.0 * step))
    return jnp.stack(cols, axis=1)


class FactorGraph:
    """
    Ordered list of nonlinear factors plus the residual registry.

    - factors: list of :class:`Factor`; the index is the factor id
    - residual_fns: mapping factor.type -> callable that computes the error
    """

    def __init__(
        self,
        factors: Optional[Iterable[Factor]] = None,
        residual_fns: Optional[Dict[str, ResidualFn]] = None,
    ) -> None:
        self.factors: List[Factor] = []
        self.residual_fns: Dict[str, ResidualFn] = default_residuals()
        if residual_fns:
            self.residual_fns.update(residual_fns)
        for f in factors or ():
            self.add_factor(f)

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    # --- construction ---

    def add_factor(self, factor: Factor) -> int:
        if factor.type not in self.residual_fns:
            raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
        if factor.noise is not None and factor.noise.dim <= 0:
            raise ValueError("Noise model must have a positive dimension")
        self.factors.append(factor)
        return len(self.factors) - 1

    def add_factors(self, factors: Iterable[Factor]) -> List[int]:
        return [self.add_factor(f) for f in factors]

    def add(self, f_type: str, var_ids: Sequence[Key], params=None, noise=None) -> int:
        return self.add_factor(Factor(f_type, tuple(var_ids), params or {}, noise))

    def copy(self) -> "FactorGraph":
        out = FactorGraph(residual_fns=self.residual_fns)
        out.factors = list(self.factors)
        return out

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[Factor]:
        return iter(self.factors)

    def __getitem__(self, index: int) -> Factor:
        return self.factors[index]

    # --- structure ---

    def keys(self) -> Tuple[Key, ...]:
        """Every referenced key, in order of first appearance."""
        seen: Dict[Key, None] = {}
        for f in self.factors:
            for k in f.keys:
                seen.setdefault(k, None)
        return tuple(seen)

    def structure(self, indices: Optional[Iterable[int]] = None) -> List[Tuple[Key, ...]]:
        if indices is None:
            return [f.keys for f in self.factors]
        return [self.factors[i].keys for i in indices]

    def validate(self, values: Values, indices: Optional[Iterable[int]] = None) -> None:
        """
        Check that every key referenced by the given factors is in ``values``.

        :raises MalformedGraphError: on the first missing key.
        """
        for i in range(len(self.factors)) if indices is None else indices:
            for k in self.factors[i].keys:
                if k not in values:
                    raise MalformedGraphError(i, k)

    # --- evaluation ---

    def _kernel(self, factor: Factor, values: Values) -> Tuple[FactorKernel, tuple, dict]:
        fn = self.residual_fns.get(factor.type)
        if fn is None:
            raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
        variables = [values.variable(k) for k in factor.keys]
        arrays, static = split_params(factor.params)
        kernel = get_kernel(
            factor.type,
            fn,
            tuple(v.type for v in variables),
            tuple(int(v.value.shape[0]) for v in variables),
            tuple(v.dim for v in variables),
            static,
        )
        return kernel, tuple(v.value for v in variables), arrays

    def _lookup(self, factor: Any) -> Tuple[Optional[int], Factor]:
        if isinstance(factor, Factor):
            return None, factor
        return int(factor), self.factors[factor]

    def unwhitened_error(self, factor, values: Values) -> jnp.ndarray:
        """Raw error of one factor (by index or object)."""
        index, f = self._lookup(factor)
        for k in f.keys:
            if k not in values:
                raise MalformedGraphError(index, k)
        kernel, vals, arrays = self._kernel(f, values)
        return kernel.error(vals, arrays)

    def residual(self, factor, values: Values) -> jnp.ndarray:
        """Whitened error of one factor; the penalty if it is invalid."""
        index, f = self._lookup(factor)
        try:
            e = self.unwhitened_error(f if index is None else index, values)
        except InvalidMeasurementError as exc:
            return self._penalty(index, f, None, exc)
        if not bool(jnp.all(jnp.isfinite(e))):
            return self._penalty(index, f, e.shape[0], None)
        return e if f.noise is None else f.noise.whiten(e)

    def _penalty(self, index, factor: Factor, rows: Optional[int], exc) -> jnp.ndarray:
        if rows is None:
            rows = factor.noise.dim if factor.noise is not None else 1
        penalty = float(factor.params.get("penalty", DEFAULT_PENALTY))
        logger.warning(
            "Invalid measurement in factor %s (%s on %s): %s; using penalty %g",
            index, factor.type, factor.keys, exc or "non-finite error", penalty,
        )
        return jnp.full((rows,), penalty)

    def factor_error(self, factor, values: Values) -> float:
        """½‖whitened residual‖²; hard rows count only when violated."""
        _, f = self._lookup(factor)
        r = self.residual(factor, values)
        mask = f.noise.constrained if f.noise is not None else None
        if mask is None:
            return 0.5 * float(jnp.dot(r, r))
        soft = jnp.where(mask, 0.0, r)
        hard = jnp.where(mask & (jnp.abs(r) > CONSTRAINT_TOL), r, 0.0)
        mu = float(getattr(f.noise, "mu", 1.0))
        return 0.5 * float(jnp.dot(soft, soft)) + 0.5 * mu * float(jnp.dot(hard, hard))

    def error(self, values: Values) -> float:
        self.validate(values)
        return sum(self.factor_error(i, values) for i in range(len(self.factors)))

    # --- linearization ---

    def linearize_factor(self, index: int, values: Values) -> JacobianFactor:
        """Whitened linearization of factor ``index`` at ``values``."""
        f = self.factors[index]
        for k in f.keys:
            if k not in values:
                raise MalformedGraphError(index, k)
        kernel, vals, arrays = self._kernel(f, values)
        try:
            e, J = kernel.linearize(vals, arrays)
        except InvalidMeasurementError as exc:
            return self._penalty_factor(index, f, kernel, None, exc)
        if not (bool(jnp.all(jnp.isfinite(e))) and bool(jnp.all(jnp.isfinite(J)))):
            return self._penalty_factor(index, f, kernel, e.shape[0], None)

        if f.noise is not None:
            if f.noise.dim != e.shape[0]:
                raise ValueError(
                    f"Noise model of factor {index} has dimension {f.noise.dim}, "
                    f"error has {e.shape[0]}"
                )
            e = f.noise.whiten(e)
            J = f.noise.whiten_jacobian(J)
        mask = f.noise.constrained if f.noise is not None else None
        return JacobianFactor(
            keys=f.keys,
            blocks=kernel.split_jacobian(J),
            b=-e,
            constrained=mask,
            source=index,
        )

    def _penalty_factor(self, index, factor, kernel, rows, exc) -> JacobianFactor:
        r = self._penalty(index, factor, rows, exc)
        m = r.shape[0]
        return JacobianFactor(
            keys=factor.keys,
            blocks=tuple(jnp.zeros((m, d)) for d in kernel.dims),
            b=-r,
            source=index,
        )

    def linearize(
        self,
        values: Values,
        workers: Optional[int] = None,
        indices: Optional[Sequence[int]] = None,
    ) -> GaussianFactorGraph:
        """
        Linearize the given factors (all by default) at ``values``.

        With ``workers`` > 1 factors are linearized on a thread pool; the
        result is always in factor order.

        :raises MalformedGraphError: before any work if a key is missing.
        """
        indices = list(range(len(self.factors))) if indices is None else list(indices)
        self.validate(values, indices)
        if workers and workers > 1 and len(indices) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                linear = list(pool.map(lambda i: self.linearize_factor(i, values), indices))
        else:
            linear = [self.linearize_factor(i, values) for i in indices]
        return GaussianFactorGraph(linear)

    def numerical_jacobians(
        self,
        index: int,
        values: Values,
        step: float = 1e-6,
    ) -> Tuple[jnp.ndarray, ...]:
        """Whitened Jacobian blocks of factor ``index`` by central differences."""
        f = self.factors[index]
        variables = [values.variable(k) for k in f.keys]
        dims = [v.dim for v in variables]

        def fn(v):
            moved = values.copy()
            col = 0
            for var, d in zip(variables, dims):
                moved.update(var.id, var.manifold.retract(var.value, v[col:col + d]))
                col += d
            return self.residual(index, moved)

        J = numerical_jacobian(fn, jnp.zeros(sum(dims)), step)
        blocks, col = [], 0
        for d in dims:
            blocks.append(J[:, col:col + d])
            col += d
        return tuple(blocks)
