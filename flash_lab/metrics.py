"""Fit summaries: masked MSE and factor agreement."""

from __future__ import annotations

from typing import Optional

import numpy as np


def mse(Y: np.ndarray, Yhat: np.ndarray, missing: Optional[np.ndarray] = None) -> float:
    """Mean squared error over observed entries."""
    Y = np.asarray(Y, dtype=float)
    Yhat = np.asarray(Yhat, dtype=float)
    if Y.shape != Yhat.shape:
        raise ValueError(f"Shape mismatch: Y {Y.shape} vs Yhat {Yhat.shape}")

    observed = ~np.isnan(Y)
    if missing is not None:
        observed &= ~np.asarray(missing, dtype=bool)
    if not np.any(observed):
        raise ValueError("No observed entries to compare")
    return float(np.mean((Y[observed] - Yhat[observed]) ** 2))


def factor_correlation(a: np.ndarray, b: np.ndarray) -> float:
    """
    Absolute Pearson correlation between two vectors.

    Loadings and factors are identified only up to sign, so the sign of the
    correlation is dropped.
    """
    a = np.asarray(a, dtype=float).ravel()
    b = np.asarray(b, dtype=float).ravel()
    if a.shape != b.shape:
        raise ValueError(f"Shape mismatch: {a.shape} vs {b.shape}")
    if np.std(a) == 0 or np.std(b) == 0:
        return 0.0
    return float(abs(np.corrcoef(a, b)[0, 1]))
