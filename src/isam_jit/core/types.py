# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Core typed data structures for isam-jit.

This module defines the lightweight value classes used throughout the
estimation engine. They store only structure and values; all numerical work
happens in JAX functions in the linearization and elimination layers.

Classes
-------
Variable
    A manifold-valued state:
    - id: Unique, hashable identifier (int, string, or ``symbol("x", 3)``)
    - type: Manifold tag (see :mod:`isam_jit.core.manifold`)
    - value: 1-D JAX array in the tag's vector form

Factor
    A measurement constraint between one or more variables:
    - type: String key selecting a residual function in the FactorGraph
    - var_ids: Ordered tuple of keys passed to the residual
    - params: Measurement and model parameters (arrays or floats)
    - noise: Noise model used to whiten the residual

Notes
-----
Both classes are frozen. Updating an estimate replaces the Variable held in
the Values, it never mutates it in place, which keeps snapshots handed to
linearization valid for the whole call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Optional, Tuple

import jax.numpy as jnp

from .manifold import Manifold, get_manifold

Key = Hashable


def symbol(char: str, index: int) -> Tuple[str, int]:
    """Named key, e.g. ``symbol("x", 0)`` for the first pose."""
    return (str(char), int(index))


@dataclass(frozen=True, eq=False)
class Variable:
    """Manifold-valued optimization variable."""
    id: Key
    type: str          # e.g. "vector", "pose2", "pose3"
    value: jnp.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", jnp.atleast_1d(jnp.asarray(self.value, dtype=float)))
        # fail early on unknown tags
        get_manifold(self.type)

    @property
    def manifold(self) -> Manifold:
        return get_manifold(self.type)

    @property
    def dim(self) -> int:
        return self.manifold.dimension(self.value)

    def retract(self, delta: jnp.ndarray) -> "Variable":
        return Variable(self.id, self.type, self.manifold.retract(self.value, jnp.asarray(delta)))

    def local_coordinates(self, other: "Variable") -> jnp.ndarray:
        return self.manifold.local_coordinates(self.value, other.value)


@dataclass(frozen=True, eq=False)
class Factor:
    """Measurement factor connecting variables."""
    type: str          # e.g. "prior", "between", "projection"
    var_ids: Tuple[Key, ...]
    params: Dict[str, Any] = field(default_factory=dict)
    noise: Optional[Any] = None  # NoiseModel; None means unit noise

    def __post_init__(self) -> None:
        object.__setattr__(self, "var_ids", tuple(self.var_ids))
        object.__setattr__(self, "params", dict(self.params))
        if not self.var_ids:
            raise ValueError("A factor must reference at least one variable")

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.var_ids
