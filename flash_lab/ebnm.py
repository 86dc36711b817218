"""
ebnm.py - Empirical-Bayes Normal Means Solvers
==============================================

Given noisy observations x_i ~ N(theta_i, s_i^2) with known standard errors,
an EBNM solver fits a prior g for theta by maximum marginal likelihood and
returns posterior first and second moments under the fitted prior.

Solvers follow one calling convention:

    solver(x, s, **params) -> NormalMeansResult

Entries with an infinite standard error carry no information: they receive
the prior moments and contribute nothing to the log-likelihood.

Built-in solvers:
- ebnm_normal: g = N(0, scale^2)
- ebnm_point_normal: g = pi0 * delta_0 + (1 - pi0) * N(0, scale^2)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import scipy.optimize
import scipy.special
from loguru import logger

from .types import NormalMeansResult


# =============================================================================
# PRIOR FAMILIES
# =============================================================================

@dataclass(frozen=True)
class NormalPrior:
    """Zero-mean normal prior N(0, scale^2)."""
    scale: float


@dataclass(frozen=True)
class PointNormalPrior:
    """Mixture of a point mass at zero (weight pi0) and N(0, scale^2)."""
    pi0: float
    scale: float


# =============================================================================
# HELPERS
# =============================================================================

def _log_normal_pdf(x: np.ndarray, var: np.ndarray) -> np.ndarray:
    return -0.5 * (np.log(2 * np.pi * var) + x**2 / var)


def _split_finite(
    x: np.ndarray, s: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Validate inputs and return (x, s, finite_mask)."""
    x = np.asarray(x, dtype=float)
    s = np.asarray(s, dtype=float)
    if x.shape != s.shape:
        raise ValueError(f"x and s shapes differ: {x.shape} vs {s.shape}")
    if x.ndim != 1:
        raise ValueError(f"x must be 1D, got shape {x.shape}")

    finite = np.isfinite(s)
    if not np.any(finite):
        raise ValueError("At least one standard error must be finite")
    if np.any(s[finite] <= 0):
        raise ValueError("Standard errors must be positive")
    if not np.all(np.isfinite(x[finite])):
        raise ValueError("Observations with finite standard errors must be finite")
    return x, s, finite


def normal_means_posterior_loglik(
    x: np.ndarray,
    s: np.ndarray,
    postmean: np.ndarray,
    postmean2: np.ndarray
) -> float:
    """
    Expected complete-data log-likelihood of the normal-means model.

    E_q[ sum_i log N(x_i; theta_i, s_i^2) ] for a posterior q with first
    moments `postmean` and second moments `postmean2`. Entries with an
    infinite standard error are skipped.
    """
    x = np.asarray(x, dtype=float)
    s = np.asarray(s, dtype=float)
    finite = np.isfinite(s)
    x, s2 = x[finite], s[finite] ** 2
    pm, pm2 = postmean[finite], postmean2[finite]
    return float(
        -0.5 * np.sum(np.log(2 * np.pi * s2) + (pm2 - 2 * x * pm + x**2) / s2)
    )


# =============================================================================
# NORMAL PRIOR
# =============================================================================

def _normal_loglik(x: np.ndarray, s2: np.ndarray, scale2: float) -> float:
    return float(np.sum(_log_normal_pdf(x, scale2 + s2)))


def _fit_normal_scale2(
    x: np.ndarray, s2: np.ndarray, g_init: Optional[NormalPrior] = None
) -> float:
    """Maximum marginal likelihood estimate of the prior variance."""
    if np.allclose(s2, s2[0]):
        return max(0.0, float(np.mean(x**2) - s2[0]))

    upper = float(np.max(x**2))
    if upper <= 0:
        return 0.0

    res = scipy.optimize.minimize_scalar(
        lambda log_v: -_normal_loglik(x, s2, np.exp(log_v)),
        bounds=(np.log(upper) - 25.0, np.log(upper)),
        method="bounded",
        options={"xatol": 1e-10},
    )
    scale2 = float(np.exp(res.x))

    # The optimum may sit on the boundary at zero
    candidates = [0.0]
    if isinstance(g_init, NormalPrior):
        candidates.append(g_init.scale**2)

    best, best_ll = scale2, _normal_loglik(x, s2, scale2)
    for cand in candidates:
        cand_ll = _normal_loglik(x, s2, cand)
        if cand_ll >= best_ll:
            best, best_ll = cand, cand_ll
    return best


def ebnm_normal(
    x: np.ndarray,
    s: np.ndarray,
    scale: Optional[float] = None,
    g_init: Optional[NormalPrior] = None
) -> NormalMeansResult:
    """
    EBNM solver with a zero-mean normal prior.

    Parameters
    ----------
    x : np.ndarray
        Observations, shape (m,).
    s : np.ndarray
        Standard errors, shape (m,). Infinite entries are uninformative.
    scale : float, optional
        Fix the prior standard deviation instead of estimating it.
    g_init : NormalPrior, optional
        Previously fitted prior, kept if it is at least as likely as the
        new estimate.

    Returns
    -------
    NormalMeansResult
        Posterior moments, the fitted NormalPrior and the marginal
        log-likelihood.
    """
    x, s, finite = _split_finite(x, s)
    xf, s2f = x[finite], s[finite] ** 2

    if scale is None:
        scale2 = _fit_normal_scale2(xf, s2f, g_init)
    else:
        if scale < 0:
            raise ValueError(f"scale must be non-negative, got {scale}")
        scale2 = float(scale) ** 2

    postmean = np.zeros_like(x)
    postmean2 = np.full_like(x, scale2)

    if scale2 > 0:
        shrink = scale2 / (scale2 + s2f)
        pm = shrink * xf
        postmean[finite] = pm
        postmean2[finite] = pm**2 + shrink * s2f
    else:
        postmean2[finite] = 0.0

    return NormalMeansResult(
        postmean=postmean,
        postmean2=postmean2,
        fitted_g=NormalPrior(scale=float(np.sqrt(scale2))),
        penloglik=_normal_loglik(xf, s2f, scale2),
    )


# =============================================================================
# POINT-NORMAL PRIOR
# =============================================================================

def _point_normal_log_parts(
    x: np.ndarray, s2: np.ndarray, pi0: float, scale2: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Return (log null component, log non-null component) per entry."""
    with np.errstate(divide="ignore"):
        log_null = np.log(pi0) + _log_normal_pdf(x, s2)
        log_slab = np.log1p(-pi0) + _log_normal_pdf(x, scale2 + s2)
    return log_null, log_slab


def _point_normal_loglik(
    x: np.ndarray, s2: np.ndarray, pi0: float, scale2: float
) -> float:
    log_null, log_slab = _point_normal_log_parts(x, s2, pi0, scale2)
    return float(np.sum(np.logaddexp(log_null, log_slab)))


def _fit_point_normal(
    x: np.ndarray,
    s2: np.ndarray,
    pi0: Optional[float],
    g_init: Optional[PointNormalPrior]
) -> Tuple[float, float]:
    """Maximum marginal likelihood (pi0, scale^2), pi0 optionally fixed."""
    null_pi0 = 1.0 if pi0 is None else pi0
    best = (null_pi0, 0.0)
    best_ll = _normal_loglik(x, s2, 0.0) if null_pi0 == 1.0 else -np.inf
    if pi0 == 1.0:
        return best

    m2 = float(np.mean(x**2))
    starts = [(0.5, max(m2 - float(np.mean(s2)), float(np.mean(s2)), 1e-8))]
    if isinstance(g_init, PointNormalPrior) and 0 < g_init.pi0 < 1 and g_init.scale > 0:
        starts.append((g_init.pi0, g_init.scale**2))

        # The previous prior stands unless the optimizer strictly beats it
        init = (g_init.pi0 if pi0 is None else float(pi0), g_init.scale**2)
        init_ll = _point_normal_loglik(x, s2, *init)
        if init_ll >= best_ll:
            best, best_ll = init, init_ll

    for start_pi0, start_scale2 in starts:
        if pi0 is None:
            theta0 = np.array([scipy.special.logit(start_pi0), np.log(start_scale2)])

            def objective(theta):
                return -_point_normal_loglik(
                    x, s2, scipy.special.expit(theta[0]), np.exp(theta[1])
                )
        else:
            theta0 = np.array([np.log(start_scale2)])

            def objective(theta):
                return -_point_normal_loglik(x, s2, pi0, np.exp(theta[0]))

        res = scipy.optimize.minimize(objective, theta0, method="L-BFGS-B")
        if not np.isfinite(res.fun):
            continue

        if pi0 is None:
            cand = (float(scipy.special.expit(res.x[0])), float(np.exp(res.x[1])))
        else:
            cand = (float(pi0), float(np.exp(res.x[0])))

        cand_ll = _point_normal_loglik(x, s2, *cand)
        if cand_ll > best_ll:
            best, best_ll = cand, cand_ll

    return best


def ebnm_point_normal(
    x: np.ndarray,
    s: np.ndarray,
    pi0: Optional[float] = None,
    g_init: Optional[PointNormalPrior] = None
) -> NormalMeansResult:
    """
    EBNM solver with a point-normal (spike and slab) prior.

    Parameters
    ----------
    x : np.ndarray
        Observations, shape (m,).
    s : np.ndarray
        Standard errors, shape (m,). Infinite entries are uninformative.
    pi0 : float, optional
        Fix the null weight in [0, 1] instead of estimating it.
    g_init : PointNormalPrior, optional
        Previously fitted prior. Used as an additional starting point and
        kept unless the optimizer finds a strictly more likely prior.
        Priors of other families are ignored.

    Returns
    -------
    NormalMeansResult
        Posterior moments, the fitted PointNormalPrior and the marginal
        log-likelihood.
    """
    x, s, finite = _split_finite(x, s)
    xf, s2f = x[finite], s[finite] ** 2

    if pi0 is not None and not 0.0 <= pi0 <= 1.0:
        raise ValueError(f"pi0 must be in [0, 1], got {pi0}")

    fit_pi0, scale2 = _fit_point_normal(xf, s2f, pi0, g_init)

    postmean = np.zeros_like(x)
    postmean2 = np.full_like(x, (1 - fit_pi0) * scale2)

    if scale2 > 0 and fit_pi0 < 1:
        log_null, log_slab = _point_normal_log_parts(xf, s2f, fit_pi0, scale2)
        w = np.exp(log_slab - np.logaddexp(log_null, log_slab))
        shrink = scale2 / (scale2 + s2f)
        mean_slab = shrink * xf
        postmean[finite] = w * mean_slab
        postmean2[finite] = w * (mean_slab**2 + shrink * s2f)
        loglik = _point_normal_loglik(xf, s2f, fit_pi0, scale2)
    else:
        postmean2[finite] = 0.0
        loglik = _normal_loglik(xf, s2f, 0.0)

    logger.debug(
        f"Point-normal fit: pi0={fit_pi0:.3f}, scale={np.sqrt(scale2):.4g}, "
        f"m={xf.size}"
    )

    return NormalMeansResult(
        postmean=postmean,
        postmean2=postmean2,
        fitted_g=PointNormalPrior(pi0=fit_pi0, scale=float(np.sqrt(scale2))),
        penloglik=loglik,
    )


# =============================================================================
# SOLVER REGISTRY
# =============================================================================

@dataclass
class SolverInfo:
    """
    Metadata about a registered EBNM solver.

    Attributes
    ----------
    name : str
        Canonical name of the solver (lowercase).
    func : Callable
        The solver. Signature: f(x, s, **params) -> NormalMeansResult.
    optional_params : Dict[str, Any]
        Parameter names with their default values.
    description : str
        Human-readable description of the prior family.
    """
    name: str
    func: Callable[..., NormalMeansResult]
    optional_params: Dict[str, Any]
    description: str = ""


class SolverRegistry:
    """
    Repository of available EBNM solvers.

    Examples
    --------
    >>> registry = SolverRegistry()
    >>> registry.list_solvers()
    ['normal', 'point_normal']
    >>> solver = registry.get("point_normal").func
    """

    def __init__(self):
        """Initialize with built-in solvers."""
        self._solvers: Dict[str, SolverInfo] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        self.register(
            name="normal",
            func=ebnm_normal,
            optional_params={"scale": None, "g_init": None},
            description="Zero-mean normal prior with estimated variance"
        )
        self.register(
            name="point_normal",
            func=ebnm_point_normal,
            optional_params={"pi0": None, "g_init": None},
            description="Point mass at zero mixed with a zero-mean normal"
        )

    def register(
        self,
        name: str,
        func: Callable[..., NormalMeansResult],
        optional_params: Optional[Dict[str, Any]] = None,
        description: str = ""
    ) -> None:
        """
        Register a new solver under a (case-insensitive) name.

        Parameters
        ----------
        name : str
            Name for the solver (will be lowercased).
        func : Callable
            Solver with signature f(x, s, **params) -> NormalMeansResult.
        optional_params : Dict[str, Any], optional
            Parameter names with default values.
        description : str, optional
            Human-readable description.
        """
        name_lower = name.lower()
        self._solvers[name_lower] = SolverInfo(
            name=name_lower,
            func=func,
            optional_params=optional_params or {},
            description=description
        )

    def get(self, name: str) -> SolverInfo:
        """
        Retrieve a registered solver.

        Raises
        ------
        KeyError
            If the solver is not registered.
        """
        name_lower = name.lower()

        if name_lower not in self._solvers:
            available = ", ".join(sorted(self._solvers.keys()))
            raise KeyError(f"Unknown EBNM solver '{name}'. Available: {available}")

        return self._solvers[name_lower]

    def find(self, func: Callable[..., NormalMeansResult]) -> Optional[SolverInfo]:
        """Return the registration of a solver function, or None."""
        for info in self._solvers.values():
            if info.func is func:
                return info
        return None

    def list_solvers(self) -> List[str]:
        """Sorted list of registered solver names."""
        return sorted(self._solvers.keys())


_default_registry = SolverRegistry()


def get_solver(name: str) -> Callable[..., NormalMeansResult]:
    """Look up a solver function in the default registry."""
    return _default_registry.get(name).func


def get_solver_info(name: str) -> SolverInfo:
    """Look up a solver's registration in the default registry."""
    return _default_registry.get(name)


def find_solver_info(func: Callable[..., NormalMeansResult]) -> Optional[SolverInfo]:
    """Registration of a solver function in the default registry, if any."""
    return _default_registry.find(func)
