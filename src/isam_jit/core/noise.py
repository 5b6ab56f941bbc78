# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Noise models used to whiten factor residuals.

A noise model is an immutable value shared freely between factors. It exposes

    whiten(e)            R e, with RᵀR the information matrix
    whiten_jacobian(H)   R H
    dim                  residual dimension
    constrained          boolean row mask of hard (zero-sigma) rows, or None

Hard constraints
----------------
:class:`Constrained` marks rows with sigma = 0 as *hard*. Those rows are not
scaled (there is no finite whitening); they are flagged instead, and the
elimination engine treats them through its constrained branch so that the
solution satisfies them exactly. ``mu`` weights violated hard rows when the
total error is reported.

Models:

    Gaussian      full square-root information matrix
    Diagonal      independent sigmas
    Isotropic     one sigma for every component
    Unit          identity whitening
    Constrained   diagonal with some (or all) zero sigmas
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import jax.numpy as jnp
import jax.scipy.linalg as jsl


@dataclass(frozen=True, eq=False)
class Gaussian:
    """Noise model given by a square-root information matrix R (RᵀR = Σ⁻¹)."""
    sqrt_information: jnp.ndarray

    @classmethod
    def from_covariance(cls, cov) -> "Gaussian":
        cov = jnp.asarray(cov, dtype=float)
        # information = cov^-1 = Rᵀ R with R = L⁻¹ for cov = L Lᵀ
        L = jnp.linalg.cholesky(cov)
        R = jsl.solve_triangular(L, jnp.eye(cov.shape[0]), lower=True)
        return cls(sqrt_information=R)

    @property
    def dim(self) -> int:
        return int(self.sqrt_information.shape[0])

    @property
    def constrained(self) -> Optional[jnp.ndarray]:
        return None

    @property
    def covariance(self) -> jnp.ndarray:
        R = self.sqrt_information
        return jnp.linalg.inv(R.T @ R)

    def whiten(self, e: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_information @ e

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_information @ H


@dataclass(frozen=True, eq=False)
class Diagonal:
    """Independent per-component standard deviations."""
    sigmas: jnp.ndarray

    def __post_init__(self) -> None:
        sigmas = jnp.atleast_1d(jnp.asarray(self.sigmas, dtype=float))
        if bool(jnp.any(sigmas <= 0.0)):
            raise ValueError("Diagonal sigmas must be positive; use Constrained for hard rows")
        object.__setattr__(self, "sigmas", sigmas)

    @property
    def dim(self) -> int:
        return int(self.sigmas.shape[0])

    @property
    def constrained(self) -> Optional[jnp.ndarray]:
        return None

    @property
    def sqrt_information(self) -> jnp.ndarray:
        return jnp.diag(1.0 / self.sigmas)

    @property
    def covariance(self) -> jnp.ndarray:
        return jnp.diag(self.sigmas ** 2)

    def whiten(self, e: jnp.ndarray) -> jnp.ndarray:
        return e / self.sigmas

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return H / self.sigmas[:, None]


def Isotropic(dim: int, sigma: float) -> Diagonal:
    """Diagonal model with the same sigma on every component."""
    return Diagonal(jnp.full((dim,), float(sigma)))


def Unit(dim: int) -> Diagonal:
    return Diagonal(jnp.ones((dim,)))


@dataclass(frozen=True, eq=False)
class Constrained:
    """
    Diagonal model where zero sigmas denote hard equality constraints.

    Soft rows (sigma > 0) are whitened as in :class:`Diagonal`; hard rows
    pass through unscaled and are reported by :attr:`constrained`.
    """
    sigmas: jnp.ndarray
    mu: float = 1000.0

    def __post_init__(self) -> None:
        sigmas = jnp.atleast_1d(jnp.asarray(self.sigmas, dtype=float))
        if bool(jnp.any(sigmas < 0.0)):
            raise ValueError("Constrained sigmas must be non-negative")
        object.__setattr__(self, "sigmas", sigmas)

    @classmethod
    def all(cls, dim: int, mu: float = 1000.0) -> "Constrained":
        """Every component is a hard constraint."""
        return cls(jnp.zeros((dim,)), mu=abs(mu))

    @property
    def dim(self) -> int:
        return int(self.sigmas.shape[0])

    @property
    def constrained(self) -> jnp.ndarray:
        return self.sigmas == 0.0

    def _scale(self) -> jnp.ndarray:
        return jnp.where(self.constrained, 1.0, 1.0 / jnp.where(self.constrained, 1.0, self.sigmas))

    def whiten(self, e: jnp.ndarray) -> jnp.ndarray:
        return e * self._scale()

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return H * self._scale()[:, None]
