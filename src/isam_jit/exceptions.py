# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Exception types raised by the estimation engine.

All errors derive from :class:`EstimationError` so callers can catch the
whole family at once. Each one also derives from the closest builtin
(``ValueError``, ``ArithmeticError``, ``KeyError``) so existing ``except``
clauses keep working.

InvalidMeasurementError
    Raised by an error function whose residual is undefined at the current
    estimate (e.g. a landmark behind the camera). The factor graph always
    recovers from it locally by substituting a large finite penalty.

RankDeficientSystemError
    A frontal block became singular during elimination. The problem is
    under-constrained around ``key``.

MalformedGraphError
    A factor references a variable that is not present in the Values.
"""

from __future__ import annotations

from typing import Hashable, Optional


class EstimationError(Exception):
    """Base class for all estimation failures."""


class InvalidMeasurementError(EstimationError, ValueError):
    """Residual is undefined for the current values (geometric degeneracy)."""


class RankDeficientSystemError(EstimationError, ArithmeticError):
    """Singular block while eliminating ``key``."""

    def __init__(self, key: Hashable, detail: str = "") -> None:
        self.key = key
        self.detail = detail
        msg = f"Rank-deficient system while eliminating variable {key!r}"
        if detail:
            msg += f": {detail}"
        msg += " (problem is under-constrained)"
        super().__init__(msg)


class MalformedGraphError(EstimationError, KeyError):
    """A factor references a key that is missing from the Values."""

    def __init__(self, factor_index: Optional[int], key: Hashable) -> None:
        self.factor_index = factor_index
        self.key = key
        super().__init__(
            f"Factor {factor_index} references variable {key!r} "
            "which is not present in the values"
        )

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]
