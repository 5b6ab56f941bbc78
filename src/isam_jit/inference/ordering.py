# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Fill-reducing elimination orderings.

The only input is the co-occurrence pattern of the factors: one tuple of keys
per factor. :func:`min_degree_ordering` runs the classic greedy minimum-degree
heuristic on the induced variable graph: repeatedly pick the variable with the
fewest remaining neighbours, connect those neighbours into a clique (the fill
it would create), and remove it.

Constrained mode keeps a caller-given list of variables out of the greedy
phase and appends them last, in caller order. The incremental smoother uses it
to keep recently touched variables near the root, and marginal queries use it
to make the query variables the root clique.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional, Sequence, Set

from isam_jit.core.types import Key


def _adjacency(
    structure: Iterable[Sequence[Key]],
    keys: Optional[Iterable[Key]] = None,
) -> Dict[Key, Set[Key]]:
    adj: Dict[Key, Set[Key]] = {}
    for k in keys or ():
        adj.setdefault(k, set())
    for factor_keys in structure:
        for k in factor_keys:
            nbrs = adj.setdefault(k, set())
            nbrs.update(o for o in factor_keys if o != k)
    return adj


def _eliminate_symbolic(adj: Dict[Key, Set[Key]], v: Key) -> Set[Key]:
    nbrs = adj.pop(v)
    for a in nbrs:
        adj[a].discard(v)
        adj[a].update(o for o in nbrs if o != a)
    return nbrs


def min_degree_ordering(
    structure: Iterable[Sequence[Key]],
    constrained_last: Optional[Sequence[Key]] = None,
    keys: Optional[Iterable[Key]] = None,
) -> List[Key]:
    """
    Greedy minimum-degree ordering.

    :param structure: key tuple of every factor.
    :param constrained_last: variables excluded from the greedy phase and
        appended at the end in the given order.
    :param keys: extra variables to include even if no factor touches them.
    :returns: a permutation of all variables.
    """
    adj = _adjacency(structure, keys)
    last: List[Key] = list(dict.fromkeys(constrained_last or ()))
    for k in last:
        adj.setdefault(k, set())
    held = set(last)

    # ties are broken by first appearance so the result is deterministic
    rank = {k: i for i, k in enumerate(adj)}
    heap = [(len(nbrs), rank[k], k) for k, nbrs in adj.items() if k not in held]
    heapq.heapify(heap)

    order: List[Key] = []
    while heap:
        degree, r, v = heapq.heappop(heap)
        if v not in adj or len(adj[v]) != degree:
            continue  # eliminated or stale entry
        nbrs = _eliminate_symbolic(adj, v)
        order.append(v)
        for a in nbrs:
            if a not in held:
                heapq.heappush(heap, (len(adj[a]), rank[a], a))

    order.extend(last)
    return order


def elimination_width(
    structure: Iterable[Sequence[Key]],
    ordering: Sequence[Key],
) -> int:
    """Largest separator produced by eliminating in ``ordering``."""
    adj = _adjacency(structure, ordering)
    width = 0
    for v in ordering:
        width = max(width, len(_eliminate_symbolic(adj, v)))
    return width


def ordering_from_graph(graph, constrained_last: Optional[Sequence[Key]] = None) -> List[Key]:
    """Min-degree ordering for a (nonlinear or Gaussian) factor graph."""
    return min_degree_ordering(graph.structure(), constrained_last, keys=graph.keys())
