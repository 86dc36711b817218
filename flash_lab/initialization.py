"""
initialization.py - Building Initial Factorization States
=========================================================

The refinement loop only improves existing terms. These helpers create the
terms it starts from:
- fit_from_factors: wrap given loadings and factors
- init_from_svd: rank-k truncated SVD of the observed matrix
- add_fixed_loadings: append terms with prescribed loadings

Initial second moments are the squared means and KL corrections are zero,
so the first refinement update is what fits the priors.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import scipy.linalg
import scipy.sparse.linalg
from loguru import logger

from .types import FlashData, FlashFit


# =============================================================================
# HELPER: LOW-LEVEL SOLVERS
# =============================================================================

def _compute_svd(X: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Dispatches to the most efficient SVD solver.
    Uses Truncated SVD (ARPACK) for large k << min(n, p) problems.
    """
    min_dim = min(X.shape)

    if k < 0.1 * min_dim and min_dim > 500:
        logger.debug(f"Using Truncated SVD (ARPACK) | Shape: {X.shape}, k: {k}")
        # svds returns ascending order
        u, s, vt = scipy.sparse.linalg.svds(X, k=k)
        return u[:, ::-1], s[::-1], vt[::-1, :]

    logger.debug(f"Using Dense SVD (LAPACK) | Shape: {X.shape}, k: {k}")
    u, s, vt = scipy.linalg.svd(X, full_matrices=False)
    return u[:, :k], s[:k], vt[:k, :]


# =============================================================================
# CONSTRUCTORS
# =============================================================================

def fit_from_factors(
    EL: np.ndarray,
    EF: np.ndarray,
    fixl: Optional[np.ndarray] = None,
    fixf: Optional[np.ndarray] = None
) -> FlashFit:
    """
    Build a FlashFit from point estimates of loadings and factors.

    Parameters
    ----------
    EL : ndarray (n, K)
        Loadings. A 1D array is treated as a single term.
    EF : ndarray (p, K)
        Factors. A 1D array is treated as a single term.
    fixl, fixf : ndarray of bool, optional
        Fixed-entry masks; default to nothing fixed.

    Returns
    -------
    fit : FlashFit
        State with second moments EL**2, EF**2 and zero KL corrections.
    """
    EL = np.array(EL, dtype=float)
    EF = np.array(EF, dtype=float)
    if EL.ndim == 1:
        EL = EL[:, None]
    if EF.ndim == 1:
        EF = EF[:, None]

    k = EL.shape[1]
    fixl = np.zeros(EL.shape, dtype=bool) if fixl is None else np.array(fixl, dtype=bool)
    fixf = np.zeros(EF.shape, dtype=bool) if fixf is None else np.array(fixf, dtype=bool)
    if fixl.ndim == 1:
        fixl = fixl[:, None]
    if fixf.ndim == 1:
        fixf = fixf[:, None]

    return FlashFit(
        EL=EL,
        EL2=EL**2,
        EF=EF,
        EF2=EF**2,
        fixl=fixl,
        fixf=fixf,
        KL_l=np.zeros(k),
        KL_f=np.zeros(k),
    )


def init_from_svd(
    Y: np.ndarray,
    missing: Optional[np.ndarray] = None,
    k: int = 1
) -> FlashFit:
    """
    Initialize k terms from a truncated SVD of the observed matrix.

    Missing entries are set to zero before the decomposition. Each singular
    value is split evenly (as its square root) between loading and factor.

    Parameters
    ----------
    Y : ndarray (n, p)
        Observed matrix; NaN entries count as missing.
    missing : ndarray (n, p) of bool, optional
        Missingness mask.
    k : int, default=1
        Number of terms.

    Raises
    ------
    ValueError
        If k is out of range.
    """
    data = FlashData.from_array(Y, missing)
    max_k = min(data.n, data.p)
    if k < 1 or k > max_k:
        raise ValueError(f"k must be in range [1, {max_k}], got k={k}")

    logger.info(f"Starting SVD initialization: {data.n}x{data.p}, k={k}")

    try:
        U, s, Vt = _compute_svd(data.Y, k=k)
    except Exception:
        logger.exception("SVD solver failed. Check for infinite values in Y.")
        raise

    root_s = np.sqrt(s)
    return fit_from_factors(U * root_s, Vt.T * root_s)


def add_fixed_loadings(
    Y: np.ndarray,
    missing: Optional[np.ndarray],
    fit: Optional[FlashFit],
    LL: np.ndarray,
    fixl: Optional[np.ndarray] = None
) -> FlashFit:
    """
    Append terms with prescribed loadings to a fit.

    The factors of the new terms are initialized by least squares of the
    current residual on each loading column, over observed entries only.

    Parameters
    ----------
    Y : ndarray (n, p)
        Observed matrix.
    missing : ndarray (n, p) of bool, optional
        Missingness mask.
    fit : FlashFit or None
        Existing fit, or None to start a new one.
    LL : ndarray (n, m)
        Loadings of the m new terms. A 1D array is a single term.
    fixl : ndarray (n, m) of bool, optional
        Which loading entries stay fixed; all of them by default.

    Returns
    -------
    fit : FlashFit
        A new state containing the existing terms followed by the new ones.
    """
    data = FlashData.from_array(Y, missing)
    LL = np.array(LL, dtype=float)
    if LL.ndim == 1:
        LL = LL[:, None]
    if LL.shape[0] != data.n:
        raise ValueError(f"LL has {LL.shape[0]} rows but Y has {data.n}")

    m = LL.shape[1]
    if fixl is None:
        fixl = np.ones(LL.shape, dtype=bool)
    else:
        fixl = np.array(fixl, dtype=bool)
        if fixl.ndim == 1:
            fixl = fixl[:, None]
        if fixl.shape != LL.shape:
            raise ValueError(
                f"fixl shape mismatch: expected {LL.shape}, got {fixl.shape}"
            )

    if fit is not None:
        fit.check_data(data)
        resid = data.Y - fit.fitted_values()
    else:
        resid = data.Y.copy()

    observed = ~data.missing
    FF = np.zeros((data.p, m))
    for j in range(m):
        l = LL[:, j]
        denom = (l**2) @ observed
        num = l @ np.where(observed, resid, 0.0)
        FF[:, j] = np.divide(num, denom, out=np.zeros(data.p), where=denom > 0)
        resid = resid - np.outer(l, FF[:, j])

    new_terms = fit_from_factors(LL, FF, fixl=fixl)
    if fit is None:
        return new_terms

    logger.debug(f"Appending {m} fixed-loading terms to a {fit.k}-term fit")
    return FlashFit(
        EL=np.hstack([fit.EL, new_terms.EL]),
        EL2=np.hstack([fit.EL2, new_terms.EL2]),
        EF=np.hstack([fit.EF, new_terms.EF]),
        EF2=np.hstack([fit.EF2, new_terms.EF2]),
        fixl=np.hstack([fit.fixl, new_terms.fixl]),
        fixf=np.hstack([fit.fixf, new_terms.fixf]),
        KL_l=np.concatenate([fit.KL_l, new_terms.KL_l]),
        KL_f=np.concatenate([fit.KL_f, new_terms.KL_f]),
        gl=list(fit.gl) + list(new_terms.gl),
        gf=list(fit.gf) + list(new_terms.gf),
        eb_solvers=list(fit.eb_solvers) + list(new_terms.eb_solvers),
        eb_params=[dict(p) for p in fit.eb_params] + list(new_terms.eb_params),
    )
