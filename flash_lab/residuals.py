"""
residuals.py - Residual Bookkeeping, Precision and Expected Log-Likelihood
==========================================================================

Two residual matrices drive the refinement loop:

- R2: expected squared residuals under the current factorization,
      E[(Y - sum_k l_k f_k^T)^2] = (Y - EL EF^T)^2 + EL2 EF2^T - EL^2 (EF^2)^T
- Rk: residual with term k left out, Y - sum_{j != k} l_j f_j^T

Both are maintained incrementally through rank-1 identities by
ResidualTracker. The from-scratch functions are the reference path used to
seed the tracker and to check it.
"""

from __future__ import annotations

from typing import Union

import numpy as np

from .types import FlashData, FlashFit, VarType

# Smallest residual variance used when estimating the precision
_MIN_VARIANCE = 1e-12


def expected_squared_residuals(data: FlashData, fit: FlashFit) -> np.ndarray:
    """Expected squared residuals R2, computed from scratch."""
    resid = data.Y - fit.EL @ fit.EF.T
    return resid**2 + fit.EL2 @ fit.EF2.T - (fit.EL**2) @ (fit.EF**2).T


def residuals_excluding(data: FlashData, fit: FlashFit, k: int) -> np.ndarray:
    """Residual matrix with term k left out of the fit, computed from scratch."""
    return data.Y - fit.EL @ fit.EF.T + np.outer(fit.EL[:, k], fit.EF[:, k])


def compute_precision(
    R2: np.ndarray,
    missing: np.ndarray,
    var_type: Union[VarType, str] = VarType.CONSTANT
) -> np.ndarray:
    """
    Estimate the residual precision from expected squared residuals.

    Parameters
    ----------
    R2 : np.ndarray
        Expected squared residuals, shape (n, p).
    missing : np.ndarray
        Boolean missingness mask, shape (n, p).
    var_type : VarType or str
        'constant' for one shared precision, 'by_column' for one per column.

    Returns
    -------
    np.ndarray
        Precision matrix of shape (n, p), zero at missing entries and in
        columns without observed entries.
    """
    var_type = VarType(var_type)
    observed = ~missing
    R2_obs = np.where(observed, R2, 0.0)

    if var_type == VarType.CONSTANT:
        count = np.count_nonzero(observed)
        if count == 0:
            return np.zeros_like(R2, dtype=float)
        sigma2 = max(float(R2_obs.sum()) / count, _MIN_VARIANCE)
        tau = np.full(R2.shape, 1.0 / sigma2)
    else:
        count = observed.sum(axis=0)
        sigma2 = np.maximum(
            R2_obs.sum(axis=0) / np.maximum(count, 1), _MIN_VARIANCE
        )
        col_tau = np.where(count > 0, 1.0 / sigma2, 0.0)
        tau = np.broadcast_to(col_tau, R2.shape).copy()

    tau[missing] = 0.0
    return tau


def expected_loglik(R2: np.ndarray, tau: np.ndarray, missing: np.ndarray) -> float:
    """
    Expected Gaussian log-likelihood over observed entries.

        -0.5 * sum_{observed} ( log(2 pi / tau) + tau * R2 )

    Returns 0.0 when every entry is missing.
    """
    observed = ~missing
    if not np.any(observed):
        return 0.0
    t = tau[observed]
    return float(-0.5 * np.sum(np.log(2 * np.pi / t) + t * R2[observed]))


class ResidualTracker:
    """
    Incrementally maintained residuals for one refinement call.

    Parameters
    ----------
    data : FlashData
        Observed data.
    fit : FlashFit
        Factorization state; read when switching terms and recomputing.
    k : int
        Term initially excluded from Rk.

    Attributes
    ----------
    R2 : np.ndarray
        Expected squared residuals under the full fit.
    Rk : np.ndarray
        Residual with term `current` left out.
    current : int
        Index of the term currently excluded from Rk.

    Notes
    -----
    The tracker never copies the fit: callers must report every change of
    a term's moments through `apply_term_change` before touching Rk again.
    """

    def __init__(self, data: FlashData, fit: FlashFit, k: int):
        self.data = data
        self.fit = fit
        self.current = k
        self.recompute()

    def recompute(self) -> None:
        """Reset R2 and Rk from scratch."""
        self.R2 = expected_squared_residuals(self.data, self.fit)
        self.Rk = residuals_excluding(self.data, self.fit, self.current)

    def switch_to(self, k: int) -> None:
        """Put the current term back into the fit and leave term k out."""
        if k == self.current:
            return
        EL, EF = self.fit.EL, self.fit.EF
        self.Rk -= np.outer(EL[:, self.current], EF[:, self.current])
        self.Rk += np.outer(EL[:, k], EF[:, k])
        self.current = k

    def apply_term_change(
        self,
        l_old: np.ndarray,
        f_old: np.ndarray,
        l2_old: np.ndarray,
        f2_old: np.ndarray,
        l_new: np.ndarray,
        f_new: np.ndarray,
        l2_new: np.ndarray,
        f2_new: np.ndarray
    ) -> None:
        """
        Update R2 for an old -> new change of the current term's moments.

        For residual Rk - l f^T the current term contributes
        -2 Rk * (l f^T) + (l2 f2^T) to R2, so the old contribution is
        removed and the new one added.
        """
        self.R2 += 2 * self.Rk * np.outer(l_old, f_old) - np.outer(l2_old, f2_old)
        self.R2 -= 2 * self.Rk * np.outer(l_new, f_new) - np.outer(l2_new, f2_new)
