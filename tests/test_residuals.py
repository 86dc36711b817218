"""
test_residuals.py - Tests for Residual Bookkeeping

Tests cover:
- Precision estimation (constant, by column, missing entries)
- Expected log-likelihood
- Expected squared residuals
- Incremental residual tracking
"""

import pytest
import numpy as np

from flash_lab import (
    FlashData,
    ResidualTracker,
    VarType,
    compute_precision,
    expected_loglik,
    expected_squared_residuals,
    fit_from_factors,
    residuals_excluding,
)


@pytest.fixture
def small_problem(rng):
    """A 20 x 8 matrix with a random two-term fit that has posterior variance."""
    Y = rng.standard_normal((20, 8))
    fit = fit_from_factors(rng.standard_normal((20, 2)), rng.standard_normal((8, 2)))
    fit.EL2 += 0.3
    fit.EF2 += 0.1
    return FlashData.from_array(Y), fit


class TestPrecision:
    """Tests for compute_precision."""

    def test_constant(self):
        R2 = np.array([[1.0, 3.0], [2.0, 2.0]])
        missing = np.zeros((2, 2), dtype=bool)

        tau = compute_precision(R2, missing, VarType.CONSTANT)

        assert np.allclose(tau, 0.5)

    def test_by_column(self):
        R2 = np.array([[1.0, 3.0], [3.0, 5.0]])
        missing = np.zeros((2, 2), dtype=bool)

        tau = compute_precision(R2, missing, "by_column")

        assert np.allclose(tau[:, 0], 0.5)
        assert np.allclose(tau[:, 1], 0.25)

    def test_missing_entries_ignored(self):
        R2 = np.array([[1.0, 100.0], [1.0, 1.0]])
        missing = np.array([[False, True], [False, False]])

        tau = compute_precision(R2, missing)

        assert tau[0, 1] == 0.0
        assert np.allclose(tau[~missing], 1.0)

    def test_empty_column(self):
        R2 = np.ones((3, 2))
        missing = np.zeros((3, 2), dtype=bool)
        missing[:, 1] = True

        tau = compute_precision(R2, missing, VarType.BY_COLUMN)

        assert np.all(tau[:, 1] == 0)
        assert np.allclose(tau[:, 0], 1.0)

    def test_all_missing(self):
        R2 = np.ones((2, 2))
        tau = compute_precision(R2, np.ones((2, 2), dtype=bool))

        assert np.all(tau == 0)

    def test_variance_floor(self):
        R2 = np.zeros((3, 3))
        tau = compute_precision(R2, np.zeros((3, 3), dtype=bool))

        assert np.all(np.isfinite(tau))
        assert np.allclose(tau, 1e12)

    def test_invalid_var_type(self):
        with pytest.raises(ValueError):
            compute_precision(np.ones((2, 2)), np.zeros((2, 2), dtype=bool), "by_row")


class TestExpectedLoglik:
    """Tests for expected_loglik."""

    def test_formula(self):
        R2 = np.array([[1.0, 2.0], [0.5, 4.0]])
        tau = np.array([[2.0, 2.0], [1.0, 1.0]])
        missing = np.zeros((2, 2), dtype=bool)

        expected = -0.5 * np.sum(np.log(2 * np.pi / tau) + tau * R2)
        assert expected_loglik(R2, tau, missing) == pytest.approx(expected)

    def test_skips_missing(self):
        R2 = np.array([[1.0, 50.0]])
        tau = np.array([[1.0, 0.0]])
        missing = np.array([[False, True]])

        expected = -0.5 * (np.log(2 * np.pi) + 1.0)
        assert expected_loglik(R2, tau, missing) == pytest.approx(expected)

    def test_all_missing_is_zero(self):
        R2 = np.ones((2, 3))
        missing = np.ones((2, 3), dtype=bool)

        assert expected_loglik(R2, np.zeros((2, 3)), missing) == 0.0

    def test_optimal_precision_maximizes(self, small_problem):
        data, fit = small_problem
        R2 = expected_squared_residuals(data, fit)
        tau = compute_precision(R2, data.missing)

        best = expected_loglik(R2, tau, data.missing)
        for factor in (0.8, 1.25):
            assert best >= expected_loglik(R2, tau * factor, data.missing)


class TestExpectedSquaredResiduals:
    """Tests for expected_squared_residuals and residuals_excluding."""

    def test_point_estimates(self, rng):
        """With second moments equal to squared means R2 is the squared residual."""
        Y = rng.standard_normal((10, 6))
        fit = fit_from_factors(rng.standard_normal((10, 3)), rng.standard_normal((6, 3)))
        data = FlashData.from_array(Y)

        R2 = expected_squared_residuals(data, fit)

        assert np.allclose(R2, (Y - fit.EL @ fit.EF.T) ** 2)

    def test_variance_inflates(self, small_problem):
        data, fit = small_problem
        R2 = expected_squared_residuals(data, fit)

        assert np.all(R2 >= (data.Y - fit.fitted_values()) ** 2 - 1e-12)

    def test_excluding_term(self, small_problem):
        data, fit = small_problem

        Rk = residuals_excluding(data, fit, 1)

        assert np.allclose(Rk, data.Y - np.outer(fit.EL[:, 0], fit.EF[:, 0]))


class TestResidualTracker:
    """Tests for incremental residual updates."""

    def test_initial_state(self, small_problem):
        data, fit = small_problem
        tracker = ResidualTracker(data, fit, 0)

        assert tracker.current == 0
        assert np.allclose(tracker.R2, expected_squared_residuals(data, fit))
        assert np.allclose(tracker.Rk, residuals_excluding(data, fit, 0))

    def test_switch_to(self, small_problem):
        data, fit = small_problem
        tracker = ResidualTracker(data, fit, 0)

        tracker.switch_to(1)

        assert tracker.current == 1
        assert np.allclose(tracker.Rk, residuals_excluding(data, fit, 1))

    def test_switch_to_same_term(self, small_problem):
        data, fit = small_problem
        tracker = ResidualTracker(data, fit, 1)
        before = tracker.Rk.copy()

        tracker.switch_to(1)

        assert np.array_equal(tracker.Rk, before)

    def test_apply_term_change(self, small_problem, rng):
        data, fit = small_problem
        tracker = ResidualTracker(data, fit, 1)

        l_old, l2_old = fit.EL[:, 1].copy(), fit.EL2[:, 1].copy()
        f_old, f2_old = fit.EF[:, 1].copy(), fit.EF2[:, 1].copy()

        fit.EL[:, 1] = rng.standard_normal(data.n)
        fit.EL2[:, 1] = fit.EL[:, 1] ** 2 + 0.2
        fit.EF[:, 1] = rng.standard_normal(data.p)
        fit.EF2[:, 1] = fit.EF[:, 1] ** 2 + 0.05

        tracker.apply_term_change(
            l_old, f_old, l2_old, f2_old,
            fit.EL[:, 1], fit.EF[:, 1], fit.EL2[:, 1], fit.EF2[:, 1],
        )

        assert np.allclose(tracker.R2, expected_squared_residuals(data, fit))
        # Rk excludes the changed term, so it is unaffected
        assert np.allclose(tracker.Rk, residuals_excluding(data, fit, 1))

    def test_recompute(self, small_problem):
        data, fit = small_problem
        tracker = ResidualTracker(data, fit, 0)
        tracker.R2 += 1.0

        tracker.recompute()

        assert np.allclose(tracker.R2, expected_squared_residuals(data, fit))
