# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
Re-weighting pass for ``em_between`` factors.

An ``em_between`` factor explains its relative measurement either as an
inlier or as an outlier, each a zero-mean Gaussian on the between error.
The indicator probabilities are recomputed inside the error function on
every evaluation (see :func:`isam_jit.slam.measurements.em_between_error`);
this module holds the part that is *not* done inside the elimination loop:

    refresh_em_noise_models
        Inflate both hypotheses by the uncertainty of the current estimate,
        Σ_hyp ← Σ_hyp + H Σ_joint Hᵀ, where Σ_joint is the joint marginal of
        the two connected variables and H the Jacobian of the between error.
        Returns a new graph; call it between optimizer runs.

    indicator_probabilities
        Current (p_inlier, p_outlier) of every em factor, for inspection.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import jax.numpy as jnp

from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.noise import Gaussian
from isam_jit.core.types import Factor
from isam_jit.core.values import Values
from isam_jit.inference.marginals import Marginals
from isam_jit.slam.measurements import em_probabilities

logger = logging.getLogger(__name__)

EM_FACTOR_TYPE = "em_between"


def _between_probe(factor: Factor) -> Factor:
    return Factor("between", factor.keys, {"measured": factor.params["measured"]})


def indicator_probabilities(graph: FactorGraph, values: Values) -> Dict[int, Tuple[float, float]]:
    """Map factor index -> (p_inlier, p_outlier) at ``values``."""
    out: Dict[int, Tuple[float, float]] = {}
    for i, f in enumerate(graph):
        if f.type != EM_FACTOR_TYPE:
            continue
        e = graph.unwhitened_error(_between_probe(f), values)
        params = {k: (v if isinstance(v, bool) else jnp.asarray(v)) for k, v in f.params.items()}
        p = em_probabilities(e, params, bool(f.params.get("bump_near_zero", False)))
        out[i] = (float(p[0]), float(p[1]))
    return out


def refresh_em_noise_models(
    graph: FactorGraph,
    values: Values,
    marginals: Optional[Marginals] = None,
) -> FactorGraph:
    """
    Return a copy of ``graph`` whose ``em_between`` factors carry inlier and
    outlier models inflated by the joint marginal of their variables.
    """
    marginals = marginals if marginals is not None else Marginals(graph, values)
    probe_graph = FactorGraph(residual_fns=graph.residual_fns)
    out = FactorGraph(residual_fns=graph.residual_fns)
    refreshed = 0
    for f in graph:
        if f.type != EM_FACTOR_TYPE:
            out.add_factor(f)
            continue
        joint = marginals.joint_marginal_covariance(f.keys).full_matrix()
        idx = probe_graph.add_factor(_between_probe(f))
        H = jnp.concatenate(probe_graph.linearize_factor(idx, values).blocks, axis=1)
        extra = H @ joint @ H.T

        params = dict(f.params)
        for name in ("inlier_sqrt_info", "outlier_sqrt_info"):
            W = jnp.asarray(params[name])
            cov = jnp.linalg.inv(W.T @ W) + extra
            params[name] = Gaussian.from_covariance(0.5 * (cov + cov.T)).sqrt_information
        out.add_factor(Factor(f.type, f.keys, params, f.noise))
        refreshed += 1
    logger.debug("Refreshed noise models of %d em factors", refreshed)
    return out
