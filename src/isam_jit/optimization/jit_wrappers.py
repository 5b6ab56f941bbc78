# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
JIT-compiled linearization kernels.

Linearizing a factor means evaluating its error and the Jacobian of

    v ↦ error(retract(x, v))        at v = 0

with respect to every connected variable's tangent vector. Both are
produced by one jitted function per *factor signature*: the residual
function, the manifold tags and value sizes of the connected variables, and
the non-array ("static") parameters. Array parameters (measurements,
calibration, square-root information matrices) are traced arguments, so a
graph with thousands of ``between`` factors on ``pose2`` variables compiles
exactly one kernel.

Residual functions keep the graph-wide convention

    fn(x, params) -> error

where ``x`` is the concatenation of the connected variable values. Two
static entries are always injected into ``params``:

    params["types"]   manifold tag of each connected variable
    params["sizes"]   value length of each connected variable

so a residual can split ``x`` and call the right manifold maps without
being written once per variable type.

Jacobians use forward-mode autodiff (``jax.jacfwd``): factors have few
inputs and the error is evaluated at the retraction, so forward mode is the
cheap direction.

Notes
-----
Kernels are cached for the life of the process in a module-level dict.
:func:`clear_kernel_cache` empties it (tests use it to count compilations).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Tuple

import jax
import jax.numpy as jnp

from isam_jit.core.manifold import get_manifold

ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]
StaticParams = Tuple[Tuple[str, Any], ...]


def _is_static(value: Any) -> bool:
    if value is None or isinstance(value, (str, bool)):
        return True
    return isinstance(value, tuple) and all(isinstance(v, (str, bool)) for v in value)


def split_params(params: Mapping[str, Any]) -> Tuple[Dict[str, jnp.ndarray], StaticParams]:
    """Separate traced array parameters from hashable static ones."""
    arrays: Dict[str, jnp.ndarray] = {}
    static = []
    for name, value in params.items():
        if _is_static(value):
            static.append((name, value))
        else:
            arrays[name] = jnp.asarray(value)
    return arrays, tuple(sorted(static))


@dataclass(frozen=True)
class FactorKernel:
    """Compiled error / linearization pair for one factor signature."""
    types: Tuple[str, ...]
    sizes: Tuple[int, ...]
    dims: Tuple[int, ...]
    error: Callable[..., jnp.ndarray]
    linearize: Callable[..., Tuple[jnp.ndarray, jnp.ndarray]]

    def split_jacobian(self, J: jnp.ndarray) -> Tuple[jnp.ndarray, ...]:
        blocks, col = [], 0
        for d in self.dims:
            blocks.append(J[:, col:col + d])
            col += d
        return tuple(blocks)


def build_kernel(
    residual_fn: ResidualFn,
    types: Tuple[str, ...],
    sizes: Tuple[int, ...],
    dims: Tuple[int, ...],
    static: StaticParams = (),
) -> FactorKernel:
    """Compile the error and linearization functions of one signature."""
    manifolds = tuple(get_manifold(t) for t in types)
    offsets = []
    col = 0
    for d in dims:
        offsets.append(col)
        col += d
    total = col

    def error(values: Tuple[jnp.ndarray, ...], arrays: Dict[str, jnp.ndarray]) -> jnp.ndarray:
        params: Dict[str, Any] = dict(arrays)
        params.update(static)
        params["types"] = types
        params["sizes"] = sizes
        x = jnp.concatenate(values) if len(values) > 1 else values[0]
        return jnp.reshape(residual_fn(x, params), (-1,))

    def retracted_error(v, values, arrays):
        moved = tuple(
            m.retract(x, v[o:o + d])
            for m, x, o, d in zip(manifolds, values, offsets, dims)
        )
        return error(moved, arrays)

    def linearize(values, arrays):
        e = error(values, arrays)
        J = jax.jacfwd(retracted_error)(jnp.zeros(total), values, arrays)
        return e, J

    return FactorKernel(
        types=types,
        sizes=sizes,
        dims=dims,
        error=jax.jit(error),
        linearize=jax.jit(linearize),
    )


_KERNELS: Dict[tuple, FactorKernel] = {}


def get_kernel(
    factor_type: str,
    residual_fn: ResidualFn,
    types: Tuple[str, ...],
    sizes: Tuple[int, ...],
    dims: Tuple[int, ...],
    static: StaticParams = (),
) -> FactorKernel:
    """Return the cached kernel for this signature, compiling on first use."""
    key = (factor_type, residual_fn, types, sizes, dims, static)
    kernel = _KERNELS.get(key)
    if kernel is None:
        kernel = build_kernel(residual_fn, types, sizes, dims, static)
        _KERNELS[key] = kernel
    return kernel


def kernel_cache_size() -> int:
    return len(_KERNELS)


def clear_kernel_cache() -> None:
    _KERNELS.clear()
