# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Bayes Tree: the factored posterior produced by elimination.

Cliques live in an arena (``BayesTree.cliques``) and refer to each other by
index: ``parent`` is an index or ``None`` and ``children`` is a list of
indices. Detaching a subtree during an incremental update is therefore just
index bookkeeping; no clique object is ever shared between two trees.

Each clique holds

    frontals       variables eliminated in this clique, in elimination order
    separator      variables it is conditioned on (all present in the parent)
    conditionals   one GaussianConditional per frontal, same order
    factor_ids     nonlinear factors absorbed while eliminating the frontals
    cached_factor  the separator factor passed up to the parent

Back-substitution (:meth:`BayesTree.solve`) walks root to leaves: a clique's
separator values are always solved before the clique itself, and its
conditionals are solved from the last eliminated frontal to the first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import jax.numpy as jnp

from isam_jit.core.types import Key
from isam_jit.linear.gaussian import GaussianConditional, JacobianFactor

logger = logging.getLogger(__name__)

Delta = Dict[Key, jnp.ndarray]


@dataclass(eq=False)
class Clique:
    frontals: List[Key]
    separator: Tuple[Key, ...]
    conditionals: List[GaussianConditional]
    factor_ids: Set[int] = field(default_factory=set)
    cached_factor: Optional[JacobianFactor] = None
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return tuple(self.frontals) + self.separator

    def solve_into(self, solution: Dict[Key, jnp.ndarray]) -> None:
        for cond in reversed(self.conditionals):
            solution[cond.frontal] = cond.solve(solution)


class BayesTree:
    """Arena-allocated forest of :class:`Clique`."""

    def __init__(self) -> None:
        self.cliques: List[Optional[Clique]] = []
        self.roots: List[int] = []
        self.key_to_clique: Dict[Key, int] = {}
        self._free: List[int] = []

    # --- access ---

    def __getitem__(self, idx: int) -> Clique:
        clique = self.cliques[idx]
        if clique is None:
            raise KeyError(f"Clique {idx} has been removed")
        return clique

    def __contains__(self, key: Key) -> bool:
        return key in self.key_to_clique

    def __len__(self) -> int:
        return len(self.cliques) - len(self._free)

    @property
    def num_cliques(self) -> int:
        return len(self)

    def indices(self) -> Iterator[int]:
        return (i for i, c in enumerate(self.cliques) if c is not None)

    def keys(self) -> Tuple[Key, ...]:
        return tuple(self.key_to_clique)

    def clique_of(self, key: Key) -> int:
        return self.key_to_clique[key]

    def path_to_root(self, idx: int) -> List[int]:
        path = [idx]
        while self[path[-1]].parent is not None:
            path.append(self[path[-1]].parent)
        return path

    def depth(self, idx: int) -> int:
        return len(self.path_to_root(idx)) - 1

    def subtree(self, idx: int) -> List[int]:
        """Pre-order indices of the subtree rooted at ``idx``."""
        out, stack = [], [idx]
        while stack:
            i = stack.pop()
            out.append(i)
            stack.extend(reversed(self[i].children))
        return out

    def cliques_containing(self, key: Key) -> List[int]:
        """Cliques with ``key`` as frontal or separator variable."""
        out, stack = [], [self.key_to_clique[key]]
        while stack:
            i = stack.pop()
            out.append(i)
            stack.extend(c for c in self[i].children if key in self[c].separator)
        return out

    def max_separator_size(self) -> int:
        return max((len(self[i].separator) for i in self.indices()), default=0)

    # --- construction ---

    def _allocate(self, clique: Clique) -> int:
        if self._free:
            idx = self._free.pop()
            self.cliques[idx] = clique
        else:
            idx = len(self.cliques)
            self.cliques.append(clique)
        for k in clique.frontals:
            self.key_to_clique[k] = idx
        return idx

    def attach(self, child: int, parent: Optional[int]) -> None:
        """Hang ``child`` below ``parent`` (or make it a root)."""
        self[child].parent = parent
        if parent is None:
            self.roots.append(child)
        else:
            self[parent].children.append(child)

    def insert_conditional(
        self,
        cond: GaussianConditional,
        position: Mapping[Key, int],
        factor_ids: Iterable[int] = (),
        separator_factor: Optional[JacobianFactor] = None,
    ) -> Tuple[int, bool]:
        """
        Insert a conditional; conditionals must arrive in reverse
        elimination order.

        The conditional is merged into its parent clique as a new (earliest)
        frontal when its parent set equals the parent clique's variables;
        otherwise it starts a new clique. Returns ``(index, created)``.
        """
        if not cond.parents:
            idx = self._allocate(
                Clique([cond.frontal], (), [cond], set(factor_ids), separator_factor)
            )
            self.attach(idx, None)
            return idx, True

        parent_key = min(cond.parents, key=lambda k: position[k])
        p_idx = self.key_to_clique[parent_key]
        parent = self[p_idx]
        if len(cond.parents) == len(parent.frontals) + len(parent.separator):
            parent.frontals.insert(0, cond.frontal)
            parent.conditionals.insert(0, cond)
            parent.factor_ids.update(factor_ids)
            self.key_to_clique[cond.frontal] = p_idx
            return p_idx, False

        idx = self._allocate(
            Clique([cond.frontal], tuple(cond.parents), [cond], set(factor_ids), separator_factor)
        )
        self.attach(idx, p_idx)
        return idx, True

    # --- incremental surgery ---

    def top_of(self, marked: Iterable[int]) -> Tuple[Set[int], List[int]]:
        """
        The marked cliques plus all of their ancestors, and the children of
        that set which lie outside it (the would-be orphans).
        """
        affected: Set[int] = set()
        for idx in marked:
            for i in self.path_to_root(idx):
                if i in affected:
                    break
                affected.add(i)
        orphans = [
            c for idx in sorted(affected) for c in self[idx].children if c not in affected
        ]
        return affected, orphans

    def remove_top(self, marked: Iterable[int]) -> Tuple[List[Clique], List[int]]:
        """
        Remove the marked cliques and all of their ancestors.

        Returns the removed cliques and the indices of their surviving
        children, which are left detached (``parent is None``) and are not
        roots until re-attached with :meth:`attach`.
        """
        affected, orphans = self.top_of(marked)
        removed = [self[idx] for idx in sorted(affected)]

        for idx in sorted(affected):
            clique = self.cliques[idx]
            for k in clique.frontals:
                del self.key_to_clique[k]
            self.cliques[idx] = None
            self._free.append(idx)
        self.roots = [r for r in self.roots if r not in affected]
        for o in orphans:
            self[o].parent = None
        logger.debug("Removed %d cliques, %d orphans", len(removed), len(orphans))
        return removed, orphans

    # --- back-substitution ---

    def solve(self) -> Delta:
        """Full root-to-leaves back-substitution."""
        solution: Delta = {}
        stack = list(reversed(self.roots))
        while stack:
            idx = stack.pop()
            clique = self[idx]
            clique.solve_into(solution)
            stack.extend(reversed(clique.children))
        return solution

    def solve_partial(
        self,
        delta: Mapping[Key, jnp.ndarray],
        force: Iterable[int],
        threshold: float = 0.0,
    ) -> Tuple[Delta, int]:
        """
        Wildfire back-substitution starting from the existing ``delta``.

        Cliques in ``force`` are always re-solved. Any other clique is
        re-solved only if a separator value changed by more than
        ``threshold`` (max-abs) during this pass; otherwise its whole
        subtree keeps its previous solution. Returns the updated delta and
        the number of cliques re-solved.
        """
        solution: Delta = dict(delta)
        force = set(force)
        changed: Set[Key] = set()
        count = 0
        stack = list(reversed(self.roots))
        while stack:
            idx = stack.pop()
            clique = self[idx]
            if idx not in force and not any(k in changed for k in clique.separator):
                continue
            old = {k: solution.get(k) for k in clique.frontals}
            clique.solve_into(solution)
            count += 1
            for k in clique.frontals:
                prev = old[k]
                if prev is None or float(jnp.max(jnp.abs(solution[k] - prev))) > threshold:
                    changed.add(k)
            stack.extend(reversed(clique.children))
        return solution, count

    # --- invariants ---

    def check_running_intersection(self) -> bool:
        seen: Set[Key] = set()
        for idx in self.indices():
            clique = self[idx]
            for k in clique.frontals:
                if k in seen or self.key_to_clique.get(k) != idx:
                    return False
                seen.add(k)
            if clique.parent is None:
                if clique.separator or idx not in self.roots:
                    return False
            else:
                parent = self[clique.parent]
                if not set(clique.separator) <= set(parent.keys):
                    return False
                if idx not in parent.children:
                    return False
        return True
