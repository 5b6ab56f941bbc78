# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Sequential elimination of a Gaussian factor graph into a Bayes Tree.

Variables are eliminated one at a time in the given ordering. Each step
gathers every live factor touching the variable (original or produced by an
earlier step), calls :func:`~isam_jit.linear.gaussian.eliminate_one`, and puts
the resulting separator factor back into the pool. The conditionals are then
assembled into cliques in reverse elimination order.

Bookkeeping recorded per conditional and carried into the cliques:

    sources          indices of the *nonlinear* factors first absorbed here
    separator factor the marginal on the separator passed to the parent

The incremental smoother relies on both: the first tells it which factors to
re-linearize when a clique is removed, the second lets it re-eliminate the
top of the tree without touching the subtrees below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from isam_jit.core.types import Key
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.gaussian import (
    GaussianConditional,
    GaussianFactorGraph,
    JacobianFactor,
    eliminate_one,
)

logger = logging.getLogger(__name__)


@dataclass
class EliminationStep:
    conditional: GaussianConditional
    sources: Set[int]
    separator_factor: Optional[JacobianFactor]


@dataclass
class EliminationResult:
    bayes_tree: BayesTree
    ordering: List[Key]
    steps: List[EliminationStep]
    new_cliques: List[int]


def eliminate_sequential(
    graph: GaussianFactorGraph,
    ordering: Sequence[Key],
    rank_tol: float = 1e-9,
) -> List[EliminationStep]:
    """
    Run the elimination loop and return one step per variable.

    :raises ValueError: if ``ordering`` does not cover the graph's variables.
    :raises RankDeficientSystemError: if any frontal block is singular.
    """
    dims = graph.dims()
    covered = set(ordering)
    missing = [k for k in dims if k not in covered]
    if missing:
        raise ValueError(f"Ordering is missing variables: {missing!r}")

    live: Dict[int, JacobianFactor] = {}
    by_key: Dict[Key, List[int]] = {}
    counter = 0

    def push(f: JacobianFactor) -> None:
        nonlocal counter
        live[counter] = f
        for k in f.keys:
            by_key.setdefault(k, []).append(counter)
        counter += 1

    for f in graph:
        push(f)

    steps: List[EliminationStep] = []
    for key in ordering:
        gathered = [live.pop(i) for i in by_key.pop(key, []) if i in live]
        cond, new_factor = eliminate_one(gathered, key, dims, rank_tol)
        sources = {f.source for f in gathered if f.source is not None}
        if new_factor is not None:
            push(new_factor)
        steps.append(EliminationStep(cond, sources, new_factor))
    return steps


def assemble(
    steps: Sequence[EliminationStep],
    ordering: Sequence[Key],
    tree: Optional[BayesTree] = None,
) -> Tuple[BayesTree, List[int]]:
    """
    Insert eliminated conditionals into ``tree`` (a fresh tree by default).

    Returns the tree and the indices of cliques created by this call.
    """
    tree = tree if tree is not None else BayesTree()
    position = {k: i for i, k in enumerate(ordering)}
    created: List[int] = []
    for step in reversed(steps):
        idx, is_new = tree.insert_conditional(
            step.conditional, position, step.sources, step.separator_factor
        )
        if is_new:
            created.append(idx)
    return tree, created


def eliminate(
    graph: GaussianFactorGraph,
    ordering: Sequence[Key],
    rank_tol: float = 1e-9,
) -> EliminationResult:
    """Eliminate ``graph`` in ``ordering`` into a new :class:`BayesTree`."""
    ordering = list(ordering)
    steps = eliminate_sequential(graph, ordering, rank_tol)
    tree, created = assemble(steps, ordering)
    logger.debug(
        "Eliminated %d variables into %d cliques (max separator %d)",
        len(ordering), tree.num_cliques, tree.max_separator_size(),
    )
    return EliminationResult(tree, ordering, steps, created)
