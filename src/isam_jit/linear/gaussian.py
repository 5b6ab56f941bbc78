# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Linear-Gaussian building blocks: Jacobian factors, conditionals, and the
single-variable elimination step.

A :class:`JacobianFactor` is the linearization of one nonlinear factor at the
current estimate, already whitened:

    ‖ Σ_k A_k δ_k − b ‖²,        b = −whitened error

Eliminating a variable ``j`` gathers every factor touching it, stacks them
into a dense system ``[A_j | A_S | b]`` and factorizes it with QR. The top
``d_j`` rows give the conditional density

    R δ_j + Σ_s S_s δ_s = d

and the remaining rows form a new factor on the separator ``S`` which is fed
back into the pool.

Hard constraints
----------------
Rows flagged as constrained (zero sigma) are eliminated with a null-space
method: the hard rows fix δ_j along their row space exactly, and the soft
rows are used only for the remaining directions. The resulting conditional
is square but not triangular and is solved with a general dense solve.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp
import jax.scipy.linalg as jsl

from isam_jit.core.types import Key
from isam_jit.exceptions import RankDeficientSystemError


@dataclass(frozen=True, eq=False)
class JacobianFactor:
    """Whitened linear factor ‖Σ A_k δ_k − b‖² over ``keys``."""
    keys: Tuple[Key, ...]
    blocks: Tuple[jnp.ndarray, ...]
    b: jnp.ndarray
    constrained: Optional[jnp.ndarray] = None  # bool mask over rows
    source: Optional[int] = None               # nonlinear factor index, if any

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def dims(self) -> Dict[Key, int]:
        return {k: int(A.shape[1]) for k, A in zip(self.keys, self.blocks)}

    def has_constraints(self) -> bool:
        return self.constrained is not None and bool(jnp.any(self.constrained))

    def block(self, key: Key) -> jnp.ndarray:
        return self.blocks[self.keys.index(key)]

    def residual(self, delta: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        r = -self.b
        for k, A in zip(self.keys, self.blocks):
            r = r + A @ delta[k]
        return r

    def error(self, delta: Mapping[Key, jnp.ndarray]) -> float:
        r = self.residual(delta)
        return 0.5 * float(jnp.dot(r, r))


@dataclass(frozen=True, eq=False)
class GaussianConditional:
    """
    Conditional density on one frontal variable given its parents:

        R δ_f = d − Σ_p S_p δ_p
    """
    frontal: Key
    parents: Tuple[Key, ...]
    R: jnp.ndarray
    S: Tuple[jnp.ndarray, ...]
    d: jnp.ndarray
    constrained: Optional[jnp.ndarray] = None
    triangular: bool = True

    @property
    def dim(self) -> int:
        return int(self.R.shape[0])

    @property
    def keys(self) -> Tuple[Key, ...]:
        return (self.frontal,) + self.parents

    def solve(self, solution: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        """Frontal update given already-solved parent values."""
        rhs = self.d
        for p, Sp in zip(self.parents, self.S):
            rhs = rhs - Sp @ solution[p]
        if self.triangular:
            return jsl.solve_triangular(self.R, rhs, lower=False)
        return jnp.linalg.solve(self.R, rhs)

    def as_factor(self) -> JacobianFactor:
        return JacobianFactor(
            keys=self.keys,
            blocks=(self.R,) + self.S,
            b=self.d,
            constrained=self.constrained,
        )


class GaussianFactorGraph:
    """Ordered collection of :class:`JacobianFactor`."""

    def __init__(self, factors: Optional[Iterable[JacobianFactor]] = None) -> None:
        self.factors: List[JacobianFactor] = []
        self._dims: Dict[Key, int] = {}
        for f in factors or ():
            self.add(f)

    def add(self, factor: JacobianFactor) -> None:
        for k, d in factor.dims().items():
            known = self._dims.setdefault(k, d)
            if known != d:
                raise ValueError(f"Inconsistent dimension for {k!r}: {known} vs {d}")
        self.factors.append(factor)

    def __iter__(self) -> Iterator[JacobianFactor]:
        return iter(self.factors)

    def __len__(self) -> int:
        return len(self.factors)

    def keys(self) -> Tuple[Key, ...]:
        return tuple(self._dims)

    def dims(self) -> Dict[Key, int]:
        return dict(self._dims)

    def structure(self) -> List[Tuple[Key, ...]]:
        return [f.keys for f in self.factors]

    def error(self, delta: Mapping[Key, jnp.ndarray]) -> float:
        return sum(f.error(delta) for f in self.factors)

    def damped(self, lam: float, keys: Optional[Iterable[Key]] = None) -> "GaussianFactorGraph":
        """
        Levenberg-Marquardt damping: append √λ·I prior rows with zero
        right-hand side on every variable.
        """
        out = GaussianFactorGraph(self.factors)
        s = jnp.sqrt(lam)
        for k in keys if keys is not None else self._dims:
            d = self._dims[k]
            out.add(JacobianFactor((k,), (s * jnp.eye(d),), jnp.zeros(d)))
        return out


def _stack(factors: Sequence[JacobianFactor], keys: Sequence[Key], dims: Mapping[Key, int]):
    """Dense [A | b] over ``keys`` and the matching constraint mask."""
    rows, masks = [], []
    for f in factors:
        cols = []
        for k in keys:
            if k in f.keys:
                cols.append(f.block(k))
            else:
                cols.append(jnp.zeros((f.rows, dims[k])))
        cols.append(f.b[:, None])
        rows.append(jnp.concatenate(cols, axis=1))
        masks.append(
            f.constrained if f.constrained is not None else jnp.zeros(f.rows, dtype=bool)
        )
    return jnp.concatenate(rows, axis=0), jnp.concatenate(masks)


def _rank_threshold(Ab: jnp.ndarray, rank_tol: float) -> float:
    scale = float(jnp.max(jnp.abs(Ab))) if Ab.size else 1.0
    return rank_tol * max(1.0, scale)


def _split_blocks(M: jnp.ndarray, keys: Sequence[Key], dims: Mapping[Key, int]):
    out, col = [], 0
    for k in keys:
        out.append(M[:, col:col + dims[k]])
        col += dims[k]
    return tuple(out)


def _separator_factor(
    rest: jnp.ndarray,
    sep: Sequence[Key],
    dims: Mapping[Key, int],
    constrained: Optional[jnp.ndarray] = None,
) -> Optional[JacobianFactor]:
    if not sep:
        return None
    n = rest.shape[1] - 1
    return JacobianFactor(
        keys=tuple(sep),
        blocks=_split_blocks(rest[:, :n], sep, dims),
        b=rest[:, n],
        constrained=constrained,
    )


def eliminate_one(
    factors: Sequence[JacobianFactor],
    key: Key,
    dims: Mapping[Key, int],
    rank_tol: float = 1e-9,
) -> Tuple[GaussianConditional, Optional[JacobianFactor]]:
    """
    Eliminate ``key`` from the factors that touch it.

    Returns the conditional on ``key`` given its separator, and the new
    separator factor (``None`` when the separator is empty).

    :raises RankDeficientSystemError: if the stacked frontal block is singular.
    """
    if not factors:
        raise RankDeficientSystemError(key, "no factors constrain this variable")
    sep: List[Key] = []
    for f in factors:
        for k in f.keys:
            if k != key and k not in sep:
                sep.append(k)
    d = dims[key]

    Ab, mask = _stack(factors, [key] + sep, dims)
    if bool(jnp.any(mask)):
        return _eliminate_constrained(Ab, mask, key, sep, dims, rank_tol)

    m = Ab.shape[0]
    if m < d:
        raise RankDeficientSystemError(key, f"{m} rows for a {d}-dimensional variable")

    tol = _rank_threshold(Ab, rank_tol)
    R = jnp.linalg.qr(Ab, mode="r")
    R_ff = R[:d, :d]
    if bool(jnp.any(jnp.abs(jnp.diag(R_ff)) <= tol)):
        raise RankDeficientSystemError(key, "singular frontal block")

    n = Ab.shape[1] - 1
    cond = GaussianConditional(
        frontal=key,
        parents=tuple(sep),
        R=R_ff,
        S=_split_blocks(R[:d, d:n], sep, dims),
        d=R[:d, n],
    )
    n_sep = n - d
    rest = R[d:d + n_sep, d:]
    return cond, _separator_factor(rest, sep, dims)


def _eliminate_constrained(Ab, mask, key, sep, dims, rank_tol):
    """Null-space elimination when hard rows are present."""
    d = dims[key]
    n = Ab.shape[1] - 1
    n_sep = n - d
    tol = _rank_threshold(Ab, rank_tol)

    hard = Ab[mask]
    soft = Ab[~mask]

    Rh = jnp.linalg.qr(hard, mode="r")
    k = min(Rh.shape[0], d)
    if bool(jnp.any(jnp.abs(jnp.diag(Rh[:k, :k])) <= tol)):
        raise RankDeficientSystemError(key, "degenerate hard constraint")

    C, D, e = Rh[:k, :d], Rh[:k, d:n], Rh[:k, n]
    # hard rows left after compression no longer involve the frontal
    extra_hard = Rh[k:, d:]
    if extra_hard.shape[0]:
        keep = jnp.any(jnp.abs(extra_hard[:, :n_sep]) > tol, axis=1)
        extra_hard = extra_hard[keep]

    Q, Rq = jnp.linalg.qr(C.T, mode="complete")
    Q1, Q2 = Q[:, :k], Q[:, k:]
    Rq1 = Rq[:k, :k]
    # y1 = Rq1^{-T} (e - D x_s), x_f = Q1 y1 + Q2 y2
    Rq1_inv_T = jsl.solve_triangular(Rq1.T, jnp.eye(k), lower=True)

    A, B, c = soft[:, :d], soft[:, d:n], soft[:, n]
    G = A @ Q1 @ Rq1_inv_T
    B_red = B - G @ D
    c_red = c - G @ e

    if k < d:
        free = d - k
        if soft.shape[0] < free:
            raise RankDeficientSystemError(key, "hard constraints leave free directions unconstrained")
        M = jnp.concatenate([A @ Q2, B_red, c_red[:, None]], axis=1)
        Rs = jnp.linalg.qr(M, mode="r")
        if bool(jnp.any(jnp.abs(jnp.diag(Rs[:free, :free])) <= tol)):
            raise RankDeficientSystemError(key, "singular block after applying hard constraints")
        R_rows = jnp.concatenate([C, Rs[:free, :free] @ Q2.T], axis=0)
        S_rows = jnp.concatenate([D, Rs[:free, free:free + n_sep]], axis=0)
        d_rows = jnp.concatenate([e, Rs[:free, free + n_sep]])
        soft_rest = Rs[free:free + n_sep, free:]
    else:
        R_rows, S_rows, d_rows = C, D, e
        if soft.shape[0]:
            M = jnp.concatenate([B_red, c_red[:, None]], axis=1)
            soft_rest = jnp.linalg.qr(M, mode="r")[:n_sep]
        else:
            soft_rest = jnp.zeros((0, n_sep + 1))

    cond = GaussianConditional(
        frontal=key,
        parents=tuple(sep),
        R=R_rows,
        S=_split_blocks(S_rows, sep, dims),
        d=d_rows,
        constrained=jnp.arange(d) < k,
        triangular=False,
    )
    rest = jnp.concatenate([extra_hard, soft_rest], axis=0)
    rest_mask = jnp.arange(rest.shape[0]) < extra_hard.shape[0]
    new_factor = None
    if rest.shape[0]:
        new_factor = _separator_factor(rest, sep, dims, rest_mask if bool(jnp.any(rest_mask)) else None)
    return cond, new_factor
