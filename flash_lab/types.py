"""
types.py - Core Data Structures and Type Definitions for Flash Lab

This module defines the fundamental data structures used throughout flash_lab:
- FlashData: The observed matrix together with its missingness mask
- FlashFit: The factorization state (K rank-1 loading x factor terms)
- NormalMeansResult: Output of an empirical-Bayes normal-means solver
- VarType: Residual variance structure

Design Principles:
-----------------
1. Validation at construction time (fail-fast)
2. Structure of arrays keyed by term index (column k of every matrix)
3. Opaque priors: the refinement loop stores fitted priors but never
   inspects them
4. Numpy-style docstrings throughout

Example Usage:
-------------
    >>> import numpy as np
    >>> from flash_lab.types import FlashData, FlashFit
    >>>
    >>> Y = np.random.randn(50, 10)
    >>> data = FlashData.from_array(Y)
    >>> print(f"Data: {data.n} x {data.p}, {data.n_observed} observed")
    Data: 50 x 10, 500 observed
"""

from __future__ import annotations

import copy
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum


# =============================================================================
# TYPE ALIASES
# =============================================================================

# An EB solver is called as solver(x, s, **params) and returns a
# NormalMeansResult. It must be deterministic and side-effect free.
EBSolver = Callable[..., "NormalMeansResult"]


# =============================================================================
# VARIANCE STRUCTURE
# =============================================================================

class VarType(str, Enum):
    """
    Residual variance structure used when estimating the precision.

    CONSTANT: One precision shared by every observed entry.
    BY_COLUMN: One precision per column of the observed matrix.
    """
    CONSTANT = "constant"
    BY_COLUMN = "by_column"


# =============================================================================
# EBNM RESULT
# =============================================================================

@dataclass(frozen=True)
class NormalMeansResult:
    """
    Result of an empirical-Bayes normal-means solve.

    Parameters
    ----------
    postmean : np.ndarray
        Posterior means, one per observation.
    postmean2 : np.ndarray
        Posterior second moments, one per observation.
    fitted_g : Any
        The fitted prior. Opaque to the refinement loop.
    penloglik : float
        Penalized marginal log-likelihood of the fitted prior.
    """
    postmean: np.ndarray
    postmean2: np.ndarray
    fitted_g: Any
    penloglik: float

    def __post_init__(self):
        if self.postmean.shape != self.postmean2.shape:
            raise ValueError(
                f"postmean and postmean2 shapes differ: "
                f"{self.postmean.shape} vs {self.postmean2.shape}"
            )


# =============================================================================
# OBSERVED DATA
# =============================================================================

@dataclass
class FlashData:
    """
    An observed matrix and its missingness mask.

    Missing entries of `Y` are stored as zero so that they never contribute
    to products with the loadings or factors. Likelihood terms are masked
    separately through `missing`.

    Parameters
    ----------
    Y : np.ndarray
        Observed matrix with shape (n, p), zero at missing entries.
    missing : np.ndarray
        Boolean mask with shape (n, p); True marks a missing entry.

    Examples
    --------
    >>> Y = np.array([[1.0, np.nan], [0.5, 2.0]])
    >>> data = FlashData.from_array(Y)
    >>> data.missing
    array([[False,  True],
           [False, False]])
    """
    Y: np.ndarray
    missing: np.ndarray

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_array(
        cls,
        Y: np.ndarray,
        missing: Optional[np.ndarray] = None
    ) -> "FlashData":
        """
        Build FlashData from a raw matrix, copying the input.

        NaN entries of `Y` are flagged missing in addition to `missing`.
        """
        Y = np.array(Y, dtype=float)
        if Y.ndim != 2:
            raise ValueError(f"Y must be 2D, got shape {Y.shape}")

        mask = np.isnan(Y)
        if missing is not None:
            missing = np.asarray(missing, dtype=bool)
            if missing.shape != Y.shape:
                raise ValueError(
                    f"missing shape mismatch: expected {Y.shape}, "
                    f"got {missing.shape}"
                )
            mask = mask | missing

        Y[mask] = 0.0
        return cls(Y=Y, missing=mask)

    @property
    def n(self) -> int:
        """Number of rows."""
        return self.Y.shape[0]

    @property
    def p(self) -> int:
        """Number of columns."""
        return self.Y.shape[1]

    @property
    def n_observed(self) -> int:
        """Number of non-missing entries."""
        return int(self.missing.size - np.count_nonzero(self.missing))

    def validate(self) -> None:
        """
        Validate the data container.

        Raises
        ------
        ValueError
            If Y is not 2D, has empty dimensions, or the mask shape differs.
        """
        if self.Y.ndim != 2:
            raise ValueError(f"Y must be 2D, got shape {self.Y.shape}")

        n, p = self.Y.shape
        if n == 0 or p == 0:
            raise ValueError(f"Y must have positive dimensions, got ({n}, {p})")

        if self.missing.shape != (n, p):
            raise ValueError(
                f"missing shape mismatch: expected ({n}, {p}), "
                f"got {self.missing.shape}"
            )

        if self.missing.dtype != bool:
            raise ValueError(f"missing must be boolean, got {self.missing.dtype}")


# =============================================================================
# FACTORIZATION STATE
# =============================================================================

@dataclass
class FlashFit:
    """
    Factorization state: K rank-1 terms approximating an (n, p) matrix.

    Column k of every (n, K) or (p, K) matrix belongs to term k. The matrix
    approximation is

        Y ≈ EL @ EF.T = sum_k outer(EL[:, k], EF[:, k])

    Parameters
    ----------
    EL : np.ndarray
        Loading posterior means, shape (n, K).
    EL2 : np.ndarray
        Loading posterior second moments, shape (n, K).
    EF : np.ndarray
        Factor posterior means, shape (p, K).
    EF2 : np.ndarray
        Factor posterior second moments, shape (p, K).
    fixl : np.ndarray
        Boolean (n, K) mask of loading entries excluded from re-estimation.
    fixf : np.ndarray
        Boolean (p, K) mask of factor entries excluded from re-estimation.
    KL_l : np.ndarray
        Per-term KL correction for the loadings, shape (K,).
    KL_f : np.ndarray
        Per-term KL correction for the factors, shape (K,).
    gl : List[Any]
        Fitted loading prior per term (None until fitted).
    gf : List[Any]
        Fitted factor prior per term (None until fitted).
    eb_solvers : List[Optional[EBSolver]]
        Solver used on the last update of each term.
    eb_params : List[Dict[str, Any]]
        Solver parameters used on the last update of each term.
    tau : Optional[np.ndarray]
        Precision matrix (n, p) from the last refinement, zero at missing
        entries.
    objective : float
        Objective value reached by the last refinement.
    objective_trace : List[float]
        Objective after every single-term update of the last refinement.
    bootstrap_updates : List[int]
        Positions in `objective_trace` of updates that fitted a term's prior
        for the first time. The objective may drop at these positions because
        the term's KL correction enters the sum.

    Notes
    -----
    The refinement loop mutates the fit in place. Use `copy()` to hand an
    independent state to another worker.
    """
    EL: np.ndarray
    EL2: np.ndarray
    EF: np.ndarray
    EF2: np.ndarray
    fixl: np.ndarray
    fixf: np.ndarray
    KL_l: np.ndarray
    KL_f: np.ndarray
    gl: List[Any] = field(default_factory=list)
    gf: List[Any] = field(default_factory=list)
    eb_solvers: List[Optional[EBSolver]] = field(default_factory=list)
    eb_params: List[Dict[str, Any]] = field(default_factory=list)
    tau: Optional[np.ndarray] = None
    objective: float = -np.inf
    objective_trace: List[float] = field(default_factory=list)
    bootstrap_updates: List[int] = field(default_factory=list)

    def __post_init__(self):
        """Fill per-term lists and validate dimensions on construction."""
        k = self.EL.shape[1] if self.EL.ndim == 2 else 0
        if not self.gl:
            self.gl = [None] * k
        if not self.gf:
            self.gf = [None] * k
        if not self.eb_solvers:
            self.eb_solvers = [None] * k
        if not self.eb_params:
            self.eb_params = [{} for _ in range(k)]
        self.validate()

    @property
    def n(self) -> int:
        """Number of rows (loading length)."""
        return self.EL.shape[0]

    @property
    def p(self) -> int:
        """Number of columns (factor length)."""
        return self.EF.shape[0]

    @property
    def k(self) -> int:
        """Number of rank-1 terms."""
        return self.EL.shape[1]

    @property
    def kl_total(self) -> float:
        """Sum of the KL corrections over all terms and both sides."""
        return float(np.sum(self.KL_l) + np.sum(self.KL_f))

    def validate(self) -> None:
        """
        Validate internal consistency of the factorization state.

        Raises
        ------
        ValueError
            If any dimension mismatches are detected.

        Notes
        -----
        Checks performed:
        1. EL has shape (n, K) and EF has shape (p, K) for K > 0
        2. Second moments and fixed masks match their means
        3. KL vectors have length K
        4. Per-term lists have length K
        5. tau, if present, has shape (n, p)
        """
        if self.EL.ndim != 2:
            raise ValueError(f"EL must be 2D, got shape {self.EL.shape}")
        if self.EF.ndim != 2:
            raise ValueError(f"EF must be 2D, got shape {self.EF.shape}")

        n, k = self.EL.shape
        p = self.EF.shape[0]

        if n == 0 or p == 0 or k == 0:
            raise ValueError(
                f"Fit must have positive dimensions, got n={n}, p={p}, K={k}"
            )

        if self.EF.shape[1] != k:
            raise ValueError(
                f"EF has {self.EF.shape[1]} terms but EL has {k}"
            )

        for name, arr, expected in (
            ("EL2", self.EL2, (n, k)),
            ("fixl", self.fixl, (n, k)),
            ("EF2", self.EF2, (p, k)),
            ("fixf", self.fixf, (p, k)),
        ):
            if arr.shape != expected:
                raise ValueError(
                    f"{name} shape mismatch: expected {expected}, got {arr.shape}"
                )

        if self.KL_l.shape != (k,) or self.KL_f.shape != (k,):
            raise ValueError(
                f"KL vectors must have shape ({k},), got "
                f"{self.KL_l.shape} and {self.KL_f.shape}"
            )

        for name, items in (
            ("gl", self.gl),
            ("gf", self.gf),
            ("eb_solvers", self.eb_solvers),
            ("eb_params", self.eb_params),
        ):
            if len(items) != k:
                raise ValueError(f"{name} must have {k} entries, got {len(items)}")

        if self.tau is not None and self.tau.shape != (n, p):
            raise ValueError(
                f"tau shape mismatch: expected ({n}, {p}), got {self.tau.shape}"
            )

    def check_data(self, data: FlashData) -> None:
        """Raise ValueError if the fit does not match the data dimensions."""
        if (self.n, self.p) != (data.n, data.p):
            raise ValueError(
                f"Fit dimensions ({self.n}, {self.p}) do not match "
                f"data dimensions ({data.n}, {data.p})"
            )

    def fitted_values(self) -> np.ndarray:
        """Posterior mean of the low-rank approximation, shape (n, p)."""
        return self.EL @ self.EF.T

    def copy(self) -> "FlashFit":
        """Return an independent deep copy of this state."""
        return copy.deepcopy(self)
