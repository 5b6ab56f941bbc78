# Copyright (c) 2025.
# This file is part of isam-jit, released under the MIT License.
"""
isam-jit: incremental nonlinear least squares on factor graphs with JAX.

Importing the package enables 64-bit floats in JAX and registers the
built-in measurement models.
"""

import jax

jax.config.update("jax_enable_x64", True)

from isam_jit.core.factor_graph import FactorGraph, numerical_jacobian  # noqa: E402
from isam_jit.core.noise import Constrained, Diagonal, Gaussian, Isotropic, Unit  # noqa: E402
from isam_jit.core.types import Factor, Variable, symbol  # noqa: E402
from isam_jit.core.values import Values  # noqa: E402
from isam_jit.exceptions import (  # noqa: E402
    EstimationError,
    InvalidMeasurementError,
    MalformedGraphError,
    RankDeficientSystemError,
)
from isam_jit.inference.marginals import Marginals  # noqa: E402
from isam_jit.optimization.incremental import (  # noqa: E402
    IncrementalConfig,
    IncrementalSmoother,
    UpdateResult,
)
from isam_jit.optimization.solvers import (  # noqa: E402
    GaussNewtonConfig,
    GaussNewtonOptimizer,
    LevenbergMarquardtConfig,
    LevenbergMarquardtOptimizer,
    OptimizationResult,
    Status,
)
from isam_jit.slam import measurements  # noqa: E402,F401
from isam_jit.world.model import WorldModel  # noqa: E402

__version__ = "0.1.0"
