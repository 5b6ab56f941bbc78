# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Variable store: mapping from keys to manifold-valued variables.

``Values`` is the current estimate handed to linearization. It is a plain
mapping with two mutation paths only:

    insert(key, type, value)   add a new key (error if it exists)
    update(key, value)         atomically replace an existing key

Whole-estimate updates go through :meth:`Values.retract`, which returns a
*new* store; the receiver is left untouched so that a rejected
Levenberg-Marquardt step can simply be discarded.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

import jax.numpy as jnp

from .types import Key, Variable


class Values:
    """Mapping Key -> :class:`Variable`."""

    def __init__(self, variables: Optional[Iterable[Variable]] = None) -> None:
        self._vars: Dict[Key, Variable] = {}
        for var in variables or ():
            self.insert_variable(var)

    # --- mapping protocol ---

    def __contains__(self, key: Key) -> bool:
        return key in self._vars

    def __len__(self) -> int:
        return len(self._vars)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._vars)

    def __repr__(self) -> str:
        return f"Values({len(self._vars)} variables)"

    def keys(self) -> Tuple[Key, ...]:
        return tuple(self._vars)

    def exists(self, key: Key) -> bool:
        return key in self._vars

    def variable(self, key: Key) -> Variable:
        return self._vars[key]

    def at(self, key: Key) -> jnp.ndarray:
        """Return the current value array for ``key``."""
        return self._vars[key].value

    def type_of(self, key: Key) -> str:
        return self._vars[key].type

    def dim(self, key: Key) -> int:
        return self._vars[key].dim

    def dims(self) -> Dict[Key, int]:
        return {k: v.dim for k, v in self._vars.items()}

    def total_dim(self) -> int:
        return sum(self.dims().values())

    # --- mutation ---

    def insert(self, key: Key, var_type: str, value) -> None:
        self.insert_variable(Variable(key, var_type, value))

    def insert_variable(self, var: Variable) -> None:
        if var.id in self._vars:
            raise ValueError(f"Variable {var.id!r} already exists")
        self._vars[var.id] = var

    def update(self, key: Key, value) -> None:
        if key not in self._vars:
            raise KeyError(key)
        old = self._vars[key]
        self._vars[key] = Variable(key, old.type, value)

    def merge(self, other: "Values") -> None:
        """Insert every variable of ``other``; keys must be new."""
        for var in other._vars.values():
            self.insert_variable(var)

    def copy(self) -> "Values":
        out = Values()
        out._vars = dict(self._vars)
        return out

    # --- manifold operations ---

    def retract(self, delta: Mapping[Key, jnp.ndarray]) -> "Values":
        """Return a new Values with ``delta[k]`` applied to every listed key."""
        out = self.copy()
        for key, d in delta.items():
            out._vars[key] = self._vars[key].retract(d)
        return out

    def local_coordinates(self, other: "Values") -> Dict[Key, jnp.ndarray]:
        """Tangent vectors taking ``self`` to ``other`` for every shared key."""
        return {
            k: var.local_coordinates(other._vars[k])
            for k, var in self._vars.items()
            if k in other._vars
        }

    def snapshot(self) -> Dict[Key, jnp.ndarray]:
        return {k: v.value for k, v in self._vars.items()}
