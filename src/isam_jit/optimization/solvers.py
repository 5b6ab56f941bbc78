# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Batch nonlinear optimizers for isam-jit.

Both optimizers repeat the same cycle on a :class:`FactorGraph` and an
initial :class:`Values`:

    linearize all factors at the current estimate
    → eliminate the Gaussian graph into a Bayes Tree and back-substitute
    → retract the solution onto the estimate

The cycle is written as an explicit state machine; each state has one
handler method that does its work and returns the next state:

    INITIAL → LINEARIZING → SOLVING → UPDATING → {CONVERGED, ITERATING, FAILED}

Key Concepts
------------
GaussNewtonConfig
    Dataclass holding the termination tolerances shared by both optimizers:
    - max_iterations
    - absolute_error_tol / relative_error_tol: on the error decrease
    - error_tol: absolute error considered "solved"
    - delta_norm_tol: on the step size
    - ordering: fixed elimination ordering (min-degree when None)
    - linearize_workers: thread pool size for linearization

LevenbergMarquardtConfig
    Adds the damping schedule: lambda_initial, lambda_factor_up,
    lambda_factor_down, lambda bounds and max_retries.

GaussNewtonOptimizer
    Accepts every step.

LevenbergMarquardtOptimizer
    Solves the damped system (√λ·I prior rows on every variable). A step
    that lowers the error is accepted and λ decreases; otherwise it is
    rejected, λ increases, and the same linearization is solved again. A
    singular damped system counts as a rejected step.

Failure handling
----------------
A :class:`~isam_jit.exceptions.RankDeficientSystemError` ends Gauss-Newton
with ``Status.FAILED`` and the exception as ``reason``. The estimate and the
graph are left as they were after the last accepted step, so the caller can
add constraints and retry.

Notes
-----
The elimination ordering is computed once per optimizer (damping adds only
unary rows, so the structure never changes between iterations).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Union

import jax.numpy as jnp

from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.types import Key
from isam_jit.core.values import Values
from isam_jit.exceptions import RankDeficientSystemError
from isam_jit.inference.elimination import eliminate
from isam_jit.inference.ordering import min_degree_ordering
from isam_jit.linear.gaussian import GaussianFactorGraph

logger = logging.getLogger(__name__)


class OptimizerState(Enum):
    INITIAL = "initial"
    LINEARIZING = "linearizing"
    SOLVING = "solving"
    UPDATING = "updating"
    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"


class Status(Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GaussNewtonConfig:
    max_iterations: int = 100
    absolute_error_tol: float = 1e-5
    relative_error_tol: float = 1e-5
    error_tol: float = 0.0
    delta_norm_tol: float = 0.0
    rank_tol: float = 1e-9
    ordering: Optional[Sequence[Key]] = None
    linearize_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")
        for name in ("absolute_error_tol", "relative_error_tol", "error_tol",
                     "delta_norm_tol", "rank_tol"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be non-negative")


@dataclass
class LevenbergMarquardtConfig(GaussNewtonConfig):
    lambda_initial: float = 1e-5
    lambda_factor_up: float = 10.0
    lambda_factor_down: float = 10.0
    lambda_lower_bound: float = 0.0
    lambda_upper_bound: float = 1e5
    max_retries: int = 10

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.lambda_initial < 0.0:
            raise ValueError("lambda_initial must be non-negative")
        if self.lambda_factor_up <= 1.0 or self.lambda_factor_down <= 1.0:
            raise ValueError("lambda factors must be greater than 1")
        if not 0.0 <= self.lambda_lower_bound <= self.lambda_upper_bound:
            raise ValueError("lambda bounds must satisfy 0 <= lower <= upper")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")


@dataclass
class OptimizationResult:
    values: Values
    error: float
    iterations: int
    error_trace: List[float]
    status: Status
    reason: Optional[Union[str, Exception]] = None

    @property
    def converged(self) -> bool:
        return self.status is Status.CONVERGED

    @property
    def failed(self) -> bool:
        return self.status is Status.FAILED


def delta_norm(delta: Dict[Key, jnp.ndarray]) -> float:
    return float(jnp.sqrt(sum(jnp.dot(d, d) for d in delta.values()))) if delta else 0.0


def check_convergence(
    config: GaussNewtonConfig,
    current_error: float,
    new_error: float,
    step_norm: float,
) -> bool:
    """Error-decrease and step-size tests shared by both optimizers."""
    if new_error <= config.error_tol:
        return True
    decrease = current_error - new_error
    relative = decrease / current_error if current_error > 0.0 else 0.0
    return (
        decrease <= config.absolute_error_tol
        or relative <= config.relative_error_tol
        or step_norm <= config.delta_norm_tol
    )


_TERMINAL = (OptimizerState.CONVERGED, OptimizerState.ITERATING, OptimizerState.FAILED)


class GaussNewtonOptimizer:
    """Gauss-Newton on a nonlinear factor graph; every step is accepted."""

    def __init__(
        self,
        graph: FactorGraph,
        values: Values,
        config: Optional[GaussNewtonConfig] = None,
    ) -> None:
        self.config = config if config is not None else self._default_config()
        graph.validate(values)
        self.graph = graph
        self.values = values
        self.error = graph.error(values)
        self.iterations = 0
        self.error_trace: List[float] = [self.error]
        self.state = OptimizerState.INITIAL
        self.status: Optional[Status] = None
        self.reason: Optional[Union[str, Exception]] = None
        self.ordering: Optional[List[Key]] = (
            list(self.config.ordering) if self.config.ordering is not None else None
        )
        self._linear: Optional[GaussianFactorGraph] = None
        self._delta: Optional[Dict[Key, jnp.ndarray]] = None
        self._handlers: Dict[OptimizerState, Callable[[], OptimizerState]] = {
            OptimizerState.INITIAL: self._on_initial,
            OptimizerState.ITERATING: self._on_iterating,
            OptimizerState.LINEARIZING: self._on_linearizing,
            OptimizerState.SOLVING: self._on_solving,
            OptimizerState.UPDATING: self._on_updating,
        }

    @staticmethod
    def _default_config() -> GaussNewtonConfig:
        return GaussNewtonConfig()

    # --- state handlers ---

    def _on_initial(self) -> OptimizerState:
        if self.ordering is None:
            self.ordering = min_degree_ordering(self.graph.structure(), keys=self.values.keys())
        return OptimizerState.LINEARIZING

    def _on_iterating(self) -> OptimizerState:
        return OptimizerState.LINEARIZING

    def _on_linearizing(self) -> OptimizerState:
        self._linear = self.graph.linearize(self.values, workers=self.config.linearize_workers)
        return OptimizerState.SOLVING

    def _solve(self, linear: GaussianFactorGraph) -> Dict[Key, jnp.ndarray]:
        result = eliminate(linear, self.ordering, self.config.rank_tol)
        return result.bayes_tree.solve()

    def _on_solving(self) -> OptimizerState:
        try:
            self._delta = self._solve(self._linear)
        except RankDeficientSystemError as exc:
            logger.warning("Gauss-Newton failed: %s", exc)
            return self._fail(exc)
        return OptimizerState.UPDATING

    def _on_updating(self) -> OptimizerState:
        candidate = self.values.retract(self._delta)
        new_error = self.graph.error(candidate)
        step = delta_norm(self._delta)
        converged = check_convergence(self.config, self.error, new_error, step)
        self._accept(candidate, new_error)
        logger.debug("GN iteration %d: error %.6g, |delta| %.3g", self.iterations, new_error, step)
        if converged:
            self.status = Status.CONVERGED
            return OptimizerState.CONVERGED
        return OptimizerState.ITERATING

    def _accept(self, candidate: Values, new_error: float) -> None:
        self.values = candidate
        self.error = new_error
        self.iterations += 1
        self.error_trace.append(new_error)

    def _fail(self, reason: Union[str, Exception]) -> OptimizerState:
        self.status = Status.FAILED
        self.reason = reason
        return OptimizerState.FAILED

    # --- driver ---

    def iterate(self) -> OptimizerState:
        """Run state handlers until one iteration has finished."""
        if self.state in (OptimizerState.CONVERGED, OptimizerState.FAILED):
            return self.state
        self.state = self._handlers[self.state]()
        while self.state not in _TERMINAL:
            self.state = self._handlers[self.state]()
        return self.state

    def optimize(self, should_cancel: Optional[Callable[[], bool]] = None) -> OptimizationResult:
        """
        Iterate until convergence, failure, cancellation or
        ``max_iterations``. ``should_cancel`` is polled before every
        iteration.
        """
        while self.state not in (OptimizerState.CONVERGED, OptimizerState.FAILED):
            if self.iterations >= self.config.max_iterations:
                self.status = Status.MAX_ITERATIONS
                break
            if should_cancel is not None and should_cancel():
                self.status = Status.CANCELLED
                break
            self.iterate()
        logger.info(
            "%s finished: %s after %d iterations, error %.6g",
            type(self).__name__, self.status.value, self.iterations, self.error,
        )
        return self.result()

    def result(self) -> OptimizationResult:
        return OptimizationResult(
            values=self.values,
            error=self.error,
            iterations=self.iterations,
            error_trace=list(self.error_trace),
            status=self.status,
            reason=self.reason,
        )


class LevenbergMarquardtOptimizer(GaussNewtonOptimizer):
    """Levenberg-Marquardt with multiplicative λ schedule."""

    def __init__(
        self,
        graph: FactorGraph,
        values: Values,
        config: Optional[LevenbergMarquardtConfig] = None,
    ) -> None:
        super().__init__(graph, values, config)
        self.lambda_ = self.config.lambda_initial
        self.retries = 0
        self.total_rejections = 0
        self.lambda_trace: List[float] = []

    @staticmethod
    def _default_config() -> LevenbergMarquardtConfig:
        return LevenbergMarquardtConfig()

    def _increase_lambda(self) -> None:
        self.lambda_ = min(
            max(self.lambda_ * self.config.lambda_factor_up, self.config.lambda_initial or 1e-12),
            self.config.lambda_upper_bound,
        )

    def _decrease_lambda(self) -> None:
        self.lambda_ = max(self.lambda_ / self.config.lambda_factor_down, self.config.lambda_lower_bound)

    def _reject(self, why: str) -> OptimizerState:
        self.retries += 1
        self.total_rejections += 1
        at_bound = self.lambda_ >= self.config.lambda_upper_bound
        logger.debug("LM step rejected (%s), lambda %.3g, retry %d", why, self.lambda_, self.retries)
        if self.retries > self.config.max_retries or at_bound:
            return self._fail("lambda retries exhausted")
        self._increase_lambda()
        return OptimizerState.SOLVING

    def _on_solving(self) -> OptimizerState:
        # damping would otherwise hide a variable that no factor constrains
        constrained = set(self._linear.keys())
        for k in self.values.keys():
            if k not in constrained:
                exc = RankDeficientSystemError(k, "no factor references it")
                logger.warning("Levenberg-Marquardt failed: %s", exc)
                return self._fail(exc)
        damped = self._linear.damped(self.lambda_, self._linear.keys())
        try:
            self._delta = self._solve(damped)
        except RankDeficientSystemError as exc:
            return self._reject(f"rank deficient: {exc}")
        return OptimizerState.UPDATING

    def _on_updating(self) -> OptimizerState:
        candidate = self.values.retract(self._delta)
        new_error = self.graph.error(candidate)
        step = delta_norm(self._delta)
        converged = check_convergence(self.config, self.error, new_error, step)

        if new_error < self.error:
            self._accept(candidate, new_error)
            self.lambda_trace.append(self.lambda_)
            self.retries = 0
            self._decrease_lambda()
            logger.debug(
                "LM iteration %d: error %.6g, lambda %.3g", self.iterations, new_error, self.lambda_
            )
            if converged:
                self.status = Status.CONVERGED
                return OptimizerState.CONVERGED
            return OptimizerState.ITERATING

        if converged and self.error - new_error >= -self.config.absolute_error_tol:
            # no measurable change either way: already at the minimum
            self.status = Status.CONVERGED
            return OptimizerState.CONVERGED
        return self._reject(f"error {new_error:.6g} >= {self.error:.6g}")
