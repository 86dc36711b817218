"""
conftest.py - Pytest Configuration and Shared Fixtures

This file contains fixtures used across all test modules. Fixtures are
organized by category:
- Random number generators (for reproducibility)
- Synthetic low-rank data
- Initialized fits
"""

import pytest
import numpy as np

from flash_lab import (
    add_fixed_loadings,
    init_from_svd,
)


# =============================================================================
# RANDOM NUMBER GENERATORS
# =============================================================================

@pytest.fixture
def rng():
    """
    Provide a seeded random number generator for reproducible tests.

    All tests should use this fixture (or derive from it) to ensure
    reproducibility across runs.
    """
    return np.random.default_rng(seed=42)


# =============================================================================
# SYNTHETIC DATA
# =============================================================================

@pytest.fixture
def rank_one_data(rng):
    """
    A 40 x 12 rank-1 signal plus small Gaussian noise.

    Returns (Y, true_L, true_F).
    """
    n, p = 40, 12
    true_L = rng.standard_normal(n)
    true_F = rng.standard_normal(p)
    Y = np.outer(true_L, true_F) + 0.1 * rng.standard_normal((n, p))
    return Y, true_L, true_F


def _simulate_rank_two(rng):
    n, p = 60, 15
    true_L = np.zeros((n, 2))
    true_L[:, 0] = 3.0 * rng.standard_normal(n)
    true_L[: n // 2, 1] = 1.5 * rng.standard_normal(n // 2)
    true_F = rng.standard_normal((p, 2))
    Y = true_L @ true_F.T + 0.2 * rng.standard_normal((n, p))
    return Y, true_L, true_F


@pytest.fixture
def rank_two_data(rng):
    """
    A 60 x 15 rank-2 signal with well separated strengths.

    Structure:
    - Term 0: dense loadings, scale 3
    - Term 1: loadings nonzero on the first half of the rows only
    - Noise sd 0.2

    Returns (Y, true_L, true_F) with true_L (60, 2) and true_F (15, 2).
    """
    return _simulate_rank_two(rng)


@pytest.fixture
def make_rank_two_data():
    """Factory for rank_two_data under other seeds."""
    def make(seed):
        return _simulate_rank_two(np.random.default_rng(seed=seed))
    return make


@pytest.fixture
def fixed_ones_problem(rng):
    """
    A 50 x 10 rank-1 signal with a fixed all-ones loading term added.

    Term 0 is initialized from the SVD; term 1 has an all-ones loading that
    stays fixed while its factor is free.

    Returns (Y, fit, true_L, true_F).
    """
    n, p = 50, 10
    true_L = rng.standard_normal(n)
    true_F = rng.standard_normal(p)
    Y = np.outer(true_L, true_F) + 0.1 * rng.standard_normal((n, p))

    fit = init_from_svd(Y, k=1)
    fit = add_fixed_loadings(Y, None, fit, np.ones(n))
    return Y, fit, true_L, true_F


# =============================================================================
# INITIALIZED FITS
# =============================================================================

@pytest.fixture
def rank_two_fit(rank_two_data):
    """SVD initialization of rank_two_data with two terms."""
    Y, _, _ = rank_two_data
    return init_from_svd(Y, k=2)
