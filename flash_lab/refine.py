"""
refine.py - Multi-Factor Refinement Loop
========================================

Block-coordinate variational ascent over the rank-1 terms of a FlashFit.
Each pass visits the selected terms in order; each term update re-estimates
the precision, then the factor and the loading through an EBNM solver, and
folds the change into the residuals with rank-1 identities.

The objective is the variational lower bound

    F = sum_k (KL_l[k] + KL_f[k]) + E[log p(Y | L, F, tau)]

and is non-decreasing under these updates.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Tuple, Union

import numpy as np
from loguru import logger

from .ebnm import find_solver_info, get_solver_info, normal_means_posterior_loglik
from .residuals import (
    ResidualTracker,
    compute_precision,
    expected_loglik,
    expected_squared_residuals,
)
from .types import EBSolver, FlashData, FlashFit, NormalMeansResult, VarType


# =============================================================================
# HELPERS
# =============================================================================

def _resolve_solver(eb_solver: Union[str, EBSolver]) -> Tuple[EBSolver, bool]:
    """Return the solver and whether it accepts the previous prior as g_init."""
    if isinstance(eb_solver, str):
        info = get_solver_info(eb_solver)
        return info.func, "g_init" in info.optional_params
    if callable(eb_solver):
        info = find_solver_info(eb_solver)
        return eb_solver, info is not None and "g_init" in info.optional_params
    raise TypeError(
        f"eb_solver must be a solver name or a callable, got {type(eb_solver).__name__}"
    )


def _side_params(
    params: Dict[str, Any], g_prev: Any, warm_start: bool
) -> Dict[str, Any]:
    if not warm_start or g_prev is None or "g_init" in params:
        return params
    return {**params, "g_init": g_prev}


def _posterior_update(
    R_tau: np.ndarray,
    tau: np.ndarray,
    other_mean: np.ndarray,
    other_second: np.ndarray,
    free: np.ndarray,
    solver: EBSolver,
    params: Dict[str, Any]
) -> Optional[Tuple[NormalMeansResult, float]]:
    """
    Posterior update of one side of a rank-1 term.

    Rows of `R_tau` and `tau` index the side being updated; `other_mean` and
    `other_second` are the moments of the opposite side. The factor update
    is this same routine applied to transposed matrices.

    Returns None when there is nothing to update: every entry is fixed, or
    no posterior variance is finite.
    """
    if not np.any(free):
        return None

    with np.errstate(divide="ignore", invalid="ignore"):
        s2 = 1.0 / (tau[free] @ other_second)
        x = (R_tau[free] @ other_mean) * s2

    finite = np.isfinite(s2)
    if not np.any(finite):
        return None

    x = np.where(finite, x, 0.0)
    s = np.sqrt(s2)

    res = solver(x, s, **params)
    kl = res.penloglik - normal_means_posterior_loglik(x, s, res.postmean, res.postmean2)
    return res, kl


# =============================================================================
# SINGLE TERM UPDATE
# =============================================================================

def update_single_term(
    data: FlashData,
    fit: FlashFit,
    tracker: ResidualTracker,
    k: int,
    var_type: Union[VarType, str],
    solver: EBSolver,
    params: Dict[str, Any],
    warm_start: bool = False
) -> Tuple[bool, float]:
    """
    One variational update of term k.

    The tracker must currently exclude term k. Updates the fit and the
    tracker's R2 in place and stores the precision used on the fit. With
    `warm_start`, each side's stored prior is passed to the solver as
    `g_init`, so a refitted prior is never less likely than the old one.

    Returns
    -------
    changed : bool
        Whether any of the term's moments changed.
    objective : float
        Objective after the update.
    """
    tau = compute_precision(tracker.R2, data.missing, var_type)
    R_tau = tracker.Rk * tau

    l_old, l2_old = fit.EL[:, k].copy(), fit.EL2[:, k].copy()
    f_old, f2_old = fit.EF[:, k].copy(), fit.EF2[:, k].copy()

    free_f = ~fit.fixf[:, k]
    out = _posterior_update(
        R_tau.T, tau.T, fit.EL[:, k], fit.EL2[:, k], free_f, solver,
        _side_params(params, fit.gf[k], warm_start),
    )
    if out is None:
        logger.debug(f"Term {k}: factor update skipped")
    else:
        res, kl = out
        fit.KL_f[k] = kl
        fit.EF[free_f, k] = res.postmean
        fit.EF2[free_f, k] = res.postmean2
        fit.gf[k] = res.fitted_g

    free_l = ~fit.fixl[:, k]
    out = _posterior_update(
        R_tau, tau, fit.EF[:, k], fit.EF2[:, k], free_l, solver,
        _side_params(params, fit.gl[k], warm_start),
    )
    if out is None:
        logger.debug(f"Term {k}: loading update skipped")
    else:
        res, kl = out
        fit.KL_l[k] = kl
        fit.EL[free_l, k] = res.postmean
        fit.EL2[free_l, k] = res.postmean2
        fit.gl[k] = res.fitted_g

    tracker.apply_term_change(
        l_old, f_old, l2_old, f2_old,
        fit.EL[:, k], fit.EF[:, k], fit.EL2[:, k], fit.EF2[:, k],
    )

    changed = not (
        np.array_equal(l_old, fit.EL[:, k])
        and np.array_equal(f_old, fit.EF[:, k])
        and np.array_equal(l2_old, fit.EL2[:, k])
        and np.array_equal(f2_old, fit.EF2[:, k])
    )

    fit.tau = tau
    objective = fit.kl_total + expected_loglik(tracker.R2, tau, data.missing)
    return changed, objective


# =============================================================================
# REFINEMENT LOOP
# =============================================================================

def _validate_kset(kset: Optional[Iterable[int]], n_terms: int) -> list:
    if kset is None:
        return list(range(n_terms))

    kset = [int(k) for k in kset]
    if len(set(kset)) != len(kset):
        raise ValueError(f"kset contains duplicate terms: {kset}")
    for k in kset:
        if k < 0 or k >= n_terms:
            raise ValueError(f"kset entries must be in range [0, {n_terms}), got {k}")
    return kset


def refine(
    Y: np.ndarray,
    missing: Optional[np.ndarray],
    fit: FlashFit,
    kset: Optional[Iterable[int]] = None,
    var_type: Union[VarType, str] = VarType.CONSTANT,
    tol: float = 1e-2,
    eb_solver: Union[str, EBSolver] = "point_normal",
    eb_params: Optional[Dict[str, Any]] = None,
    maxiter: int = 1000,
    maxiter_single_fl: int = 500,
    sequential: bool = False
) -> FlashFit:
    """
    Refine the loadings and factors of selected terms in place.

    Parameters
    ----------
    Y : ndarray (n, p)
        Observed matrix. NaN entries are treated as missing.
    missing : ndarray (n, p) of bool, optional
        Missingness mask.
    fit : FlashFit
        Initialized factorization state; mutated in place and returned.
    kset : iterable of int, optional
        Terms this call may modify, in update order. Defaults to all terms.
        Terms outside kset act as fixed background.
    var_type : VarType or str, default='constant'
        Residual variance structure: 'constant' or 'by_column'.
    tol : float, default=1e-2
        Absolute objective improvement below which iteration stops.
    eb_solver : str or callable, default='point_normal'
        EBNM solver, by registered name or as a callable.
    eb_params : dict, optional
        Keyword arguments forwarded to the solver.
    maxiter : int, default=1000
        Maximum number of passes over kset.
    maxiter_single_fl : int, default=500
        Maximum number of updates of one term within a pass.
    sequential : bool, default=False
        If True, update each term exactly once per pass.

    Returns
    -------
    fit : FlashFit
        The refined state, with tau, objective and objective_trace set.

    Raises
    ------
    ValueError
        If shapes disagree or a control parameter is invalid.
    KeyError
        If eb_solver names an unregistered solver.
    """
    data = FlashData.from_array(Y, missing)
    fit.check_data(data)
    kset = _validate_kset(kset, fit.k)
    var_type = VarType(var_type)

    if tol < 0:
        raise ValueError(f"tol must be non-negative, got {tol}")
    if maxiter < 1 or maxiter_single_fl < 1:
        raise ValueError(
            f"Iteration caps must be positive, got maxiter={maxiter}, "
            f"maxiter_single_fl={maxiter_single_fl}"
        )

    if not kset:
        logger.debug("Empty kset: nothing to refine")
        return fit

    solver, warm_start = _resolve_solver(eb_solver)
    params = dict(eb_params or {})
    inner_cap = 1 if sequential else maxiter_single_fl

    logger.info(
        f"Refining {len(kset)} of {fit.k} terms on {data.n}x{data.p} data "
        f"(var_type={var_type.value}, sequential={sequential})"
    )

    tracker = ResidualTracker(data, fit, kset[0])
    trace = []
    bootstrap = []
    objective = -np.inf
    pass_diff = np.inf
    any_change = True
    iteration = 0

    while any_change and pass_diff > tol and iteration < maxiter:
        iteration += 1
        pass_start = objective
        pass_bootstrapped = False
        any_change = False

        for k in kset:
            tracker.switch_to(k)

            single_iter = 0
            single_diff = np.inf
            while single_diff > tol and single_iter < inner_cap:
                single_iter += 1
                unfitted_l, unfitted_f = fit.gl[k] is None, fit.gf[k] is None
                changed, new_objective = update_single_term(
                    data, fit, tracker, k, var_type, solver, params, warm_start
                )
                any_change = any_change or changed

                # A prior fitted for the first time adds its KL correction to
                # the objective, so the previous value is no reference
                if (unfitted_l and fit.gl[k] is not None) or (
                    unfitted_f and fit.gf[k] is not None
                ):
                    bootstrap.append(len(trace))
                    pass_bootstrapped = True
                    single_diff = np.inf
                else:
                    single_diff = new_objective - objective
                objective = new_objective
                trace.append(objective)

            fit.eb_solvers[k] = solver
            fit.eb_params[k] = dict(params)

        pass_diff = np.inf if pass_bootstrapped else objective - pass_start

        logger.debug(
            f"Pass {iteration}: objective={objective:.6f}, change={pass_diff:.3g}"
        )

    fit.objective = objective
    fit.objective_trace = trace
    fit.bootstrap_updates = bootstrap

    if iteration >= maxiter and any_change and pass_diff > tol:
        logger.warning(
            f"Refinement stopped at maxiter={maxiter} before converging "
            f"(last change {pass_diff:.3g} > tol={tol})"
        )
    else:
        logger.success(
            f"Refinement converged after {iteration} passes. Objective: {objective:.4f}"
        )

    return fit


def flash_objective(
    Y: np.ndarray,
    missing: Optional[np.ndarray],
    fit: FlashFit,
    var_type: Union[VarType, str] = VarType.CONSTANT
) -> float:
    """
    Objective of a fit computed from scratch.

    Uses the stored KL corrections and the precision that is optimal for
    the fit's current expected squared residuals.
    """
    data = FlashData.from_array(Y, missing)
    fit.check_data(data)
    R2 = expected_squared_residuals(data, fit)
    tau = compute_precision(R2, data.missing, var_type)
    return fit.kl_total + expected_loglik(R2, tau, data.missing)
