"""
flash_lab - Variational Empirical-Bayes Refinement of Sparse Factor Models
"""

__version__ = "0.1.0"

# =============================================================================
# CORE TYPES
# =============================================================================
from .types import (
    FlashData,
    FlashFit,
    NormalMeansResult,
    VarType,
    EBSolver,
)

# =============================================================================
# EBNM SOLVERS
# =============================================================================
from .ebnm import (
    ebnm_normal,
    ebnm_point_normal,
    normal_means_posterior_loglik,
    NormalPrior,
    PointNormalPrior,
    SolverRegistry,
    SolverInfo,
    get_solver,
    get_solver_info,
    find_solver_info,
)

# =============================================================================
# RESIDUALS
# =============================================================================
from .residuals import (
    expected_squared_residuals,
    residuals_excluding,
    compute_precision,
    expected_loglik,
    ResidualTracker,
)

# =============================================================================
# REFINEMENT
# =============================================================================
from .refine import (
    refine,
    update_single_term,
    flash_objective,
)

# =============================================================================
# INITIALIZATION
# =============================================================================
from .initialization import (
    fit_from_factors,
    init_from_svd,
    add_fixed_loadings,
)

# =============================================================================
# METRICS
# =============================================================================
from .metrics import (
    mse,
    factor_correlation,
)

# PUBLIC API
# =============================================================================
__all__ = [
    "__version__",
    "FlashData",
    "FlashFit",
    "NormalMeansResult",
    "VarType",
    "EBSolver",
    "ebnm_normal",
    "ebnm_point_normal",
    "normal_means_posterior_loglik",
    "NormalPrior",
    "PointNormalPrior",
    "SolverRegistry",
    "SolverInfo",
    "get_solver",
    "get_solver_info",
    "find_solver_info",
    "expected_squared_residuals",
    "residuals_excluding",
    "compute_precision",
    "expected_loglik",
    "ResidualTracker",
    "refine",
    "update_single_term",
    "flash_objective",
    "fit_from_factors",
    "init_from_svd",
    "add_fixed_loadings",
    "mse",
    "factor_correlation",
]
