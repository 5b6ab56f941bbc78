# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Incremental smoothing with a Bayes Tree (iSAM2-style).

The smoother keeps, between calls:

    graph     every factor added so far
    theta     the linearization point of every variable
    delta     the current solution of the linear system, per variable
    tree      the Bayes Tree of that linear system
    cache     linearized factors at theta, by factor index

and the estimate is always ``theta.retract(delta)``.

Each :meth:`IncrementalSmoother.update` only redoes the part of the tree the
new information can reach:

1.  New variables enter theta with a zero delta.
2.  Variables whose delta grew beyond ``relinearize_threshold`` are moved:
    theta absorbs their delta, delta is reset, and the cached linearization
    of every factor touching them is dropped.
3.  Cliques holding a key of a new factor (as frontal), or a relinearized
    key (as frontal or separator), are marked. The marked cliques and all of
    their ancestors form the *top* that must be rebuilt; their children
    outside the top become orphans.
4.  The top is re-eliminated from the factors its cliques had absorbed, the
    new factors, and the cached separator factor of every orphan, with the
    new-factor variables ordered last.
5.  Orphans are hung back under the clique of their first eliminated
    separator variable.
6.  Back-substitution starts at the new top and only descends where a
    separator value moved by more than ``wildfire_threshold`` (exactly 0
    when ``relinearize_threshold`` is 0, so the estimate matches a batch
    solve).

All work that can fail (validation, linearization, elimination) is done
before the stored state is touched, so a failed update leaves the smoother
exactly as it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

import jax.numpy as jnp

from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.types import Factor, Key
from isam_jit.core.values import Values
from isam_jit.exceptions import MalformedGraphError
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.inference.elimination import assemble, eliminate_sequential
from isam_jit.inference.marginals import Marginals
from isam_jit.inference.ordering import min_degree_ordering
from isam_jit.linear.gaussian import GaussianFactorGraph, JacobianFactor

logger = logging.getLogger(__name__)


@dataclass
class IncrementalConfig:
    relinearize_threshold: float = 0.1
    relinearize_skip: int = 10
    relinearize_exempt: FrozenSet[Key] = field(default_factory=frozenset)
    enable_relinearization: bool = True
    wildfire_threshold: float = 0.001
    cache_linearized_factors: bool = True
    evaluate_error: bool = False
    rank_tol: float = 1e-9
    linearize_workers: Optional[int] = None

    def __post_init__(self) -> None:
        self.relinearize_exempt = frozenset(self.relinearize_exempt)
        if self.relinearize_threshold < 0.0:
            raise ValueError("relinearize_threshold must be non-negative")
        if self.relinearize_skip < 1:
            raise ValueError("relinearize_skip must be at least 1")
        if self.wildfire_threshold < 0.0:
            raise ValueError("wildfire_threshold must be non-negative")
        if self.rank_tol < 0.0:
            raise ValueError("rank_tol must be non-negative")

    @property
    def solve_threshold(self) -> float:
        """Wildfire threshold in effect; an exact relinearization threshold also solves exactly."""
        if self.relinearize_threshold == 0.0:
            return 0.0
        return self.wildfire_threshold


@dataclass
class UpdateResult:
    relinearized_keys: List[Key]
    reeliminated_keys: List[Key]
    removed_cliques: List[int]
    orphans: List[int]
    new_cliques: List[int]
    cliques_resolved: int
    new_factor_indices: List[int]
    error: Optional[float] = None


class IncrementalSmoother:
    """Incremental nonlinear smoother over a growing factor graph."""

    def __init__(self, config: Optional[IncrementalConfig] = None, graph: Optional[FactorGraph] = None) -> None:
        self.config = config if config is not None else IncrementalConfig()
        self.graph = graph.copy() if graph is not None else FactorGraph()
        if len(self.graph):
            raise ValueError("Start from an empty graph; add factors through update()")
        self.theta = Values()
        self.delta: Dict[Key, jnp.ndarray] = {}
        self.bayes_tree = BayesTree()
        self._linear_cache: Dict[int, JacobianFactor] = {}
        self._update_count = 0

    @property
    def linearization_point(self) -> Values:
        return self.theta

    # --- update ---

    def _validate(self, new_factors: Sequence[Factor], new_values: Values) -> None:
        for k in new_values.keys():
            if k in self.theta:
                raise ValueError(f"Variable {k!r} already exists")
        base = len(self.graph)
        for i, f in enumerate(new_factors):
            if f.type not in self.graph.residual_fns:
                raise ValueError(f"No residual fn registered for factor type '{f.type}'")
            for k in f.keys:
                if k not in self.theta and k not in new_values:
                    raise MalformedGraphError(base + i, k)

    def _relinearization_keys(self, force: bool) -> List[Key]:
        cfg = self.config
        if not cfg.enable_relinearization:
            return []
        if not force and self._update_count % cfg.relinearize_skip != 0:
            return []
        keys = []
        for k, d in self.delta.items():
            if k in cfg.relinearize_exempt or d.shape[0] == 0:
                continue
            if force or float(jnp.max(jnp.abs(d))) > cfg.relinearize_threshold:
                keys.append(k)
        return keys

    def update(
        self,
        new_factors: Iterable[Factor] = (),
        new_values: Optional[Values] = None,
        force_relinearize: bool = False,
    ) -> UpdateResult:
        """
        Add factors and variables and bring the estimate up to date.

        :raises MalformedGraphError: if a new factor references an unknown key.
        :raises RankDeficientSystemError: if the updated system is singular;
            the smoother state is unchanged.
        """
        new_factors = list(new_factors)
        new_values = new_values if new_values is not None else Values()
        self._validate(new_factors, new_values)
        tree = self.bayes_tree

        # relinearization and the new linearization point
        relin_keys = self._relinearization_keys(force_relinearize)
        theta = self.theta.retract({k: self.delta[k] for k in relin_keys})
        theta.merge(new_values)
        delta = dict(self.delta)
        for k in relin_keys:
            delta[k] = jnp.zeros_like(delta[k])
        for k in new_values.keys():
            delta[k] = jnp.zeros(new_values.dim(k))

        # the top of the tree that must be rebuilt
        base = len(self.graph)
        new_indices = list(range(base, base + len(new_factors)))
        new_factor_keys = list(dict.fromkeys(k for f in new_factors for k in f.keys))
        marked: Set[int] = {tree.clique_of(k) for k in new_factor_keys if k in tree}
        for k in relin_keys:
            if k in tree:
                marked.update(tree.cliques_containing(k))
        affected, orphans = tree.top_of(marked)

        factor_ids: Set[int] = set()
        elim_set: Set[Key] = set(new_values.keys()).union(new_factor_keys)
        for idx in affected:
            factor_ids.update(tree[idx].factor_ids)
            elim_set.update(tree[idx].frontals)
        # insertion order of the variables breaks ordering ties
        elim_keys = [k for k in theta.keys() if k in elim_set]

        # linearize what is needed at the new theta
        graph = self.graph.copy()
        graph.add_factors(new_factors)
        relin_set = set(relin_keys)
        cache = {
            i: jf for i, jf in self._linear_cache.items()
            if not relin_set.intersection(jf.keys)
        }
        missing = [i for i in sorted(factor_ids) + new_indices if i not in cache]
        fresh = graph.linearize(theta, workers=self.config.linearize_workers, indices=missing)
        cache.update(zip(missing, fresh))

        linear = GaussianFactorGraph(cache[i] for i in sorted(factor_ids) + new_indices)
        for o in orphans:
            if tree[o].cached_factor is not None:
                linear.add(tree[o].cached_factor)

        ordering = min_degree_ordering(linear.structure(), new_factor_keys, keys=elim_keys)
        steps = eliminate_sequential(linear, ordering, self.config.rank_tol)

        # commit
        self.graph = graph
        self.theta = theta
        self._linear_cache = cache if self.config.cache_linearized_factors else {}
        removed, _ = tree.remove_top(marked)
        tree, created = assemble(steps, ordering, tree)
        position = {k: i for i, k in enumerate(ordering)}
        for o in orphans:
            first = min(tree[o].separator, key=lambda k: position[k])
            tree.attach(o, tree.clique_of(first))
        self.delta, resolved = tree.solve_partial(delta, created, self.config.solve_threshold)
        self._update_count += 1

        result = UpdateResult(
            relinearized_keys=relin_keys,
            reeliminated_keys=ordering,
            removed_cliques=sorted(affected),
            orphans=orphans,
            new_cliques=created,
            cliques_resolved=resolved,
            new_factor_indices=new_indices,
            error=self.error() if self.config.evaluate_error else None,
        )
        logger.info(
            "Update %d: %d factors, %d relinearized, %d/%d cliques rebuilt, %d re-solved",
            self._update_count, len(new_factors), len(relin_keys), len(created),
            tree.num_cliques, resolved,
        )
        logger.debug("Removed %d cliques, %d orphans", len(removed), len(orphans))
        return result

    # --- queries ---

    def calculate_estimate(self) -> Values:
        return self.theta.retract(self.delta)

    def estimate_at(self, key: Key) -> jnp.ndarray:
        return self.theta.variable(key).retract(self.delta[key]).value

    def error(self) -> float:
        return self.graph.error(self.calculate_estimate())

    def _linearized_graph(self) -> GaussianFactorGraph:
        out = []
        for i in range(len(self.graph)):
            jf = self._linear_cache.get(i)
            if jf is None:
                jf = self.graph.linearize_factor(i, self.theta)
            out.append(jf)
        return GaussianFactorGraph(out)

    def marginals(self) -> Marginals:
        """Marginals of the linear system at the linearization point."""
        return Marginals.from_linear(self._linearized_graph(), self.config.rank_tol)

    def marginal_covariance(self, key: Key) -> jnp.ndarray:
        return self.marginals().marginal_covariance(key)
