"""Tests for fuseclf.core.drift: pure statistical drift functions."""

from __future__ import annotations

import math

import numpy as np
import pytest

from fuseclf.core.drift import (
    DriftTestResult,
    PageHinkleyResult,
    cusum,
    effect_size,
    kolmogorov_smirnov,
    linear_trend,
    mann_whitney_u,
    page_hinkley,
    periodicity_strength,
    welch_t_test,
)


# ---------------------------------------------------------------------------
# Two-sample tests
# ---------------------------------------------------------------------------


class TestWelchTTest:
    def test_identical_windows_not_significant(self) -> None:
        rng = np.random.default_rng(42)
        data = rng.integers(0, 2, size=40).astype(float)
        result = welch_t_test(data, data)
        assert isinstance(result, DriftTestResult)
        assert result.p_value == pytest.approx(1.0)
        assert not result.is_significant()

    def test_constant_shift_resolved_directly(self) -> None:
        result = welch_t_test([0.0] * 30, [1.0] * 30)
        assert result.p_value == 0.0
        assert math.isinf(result.statistic)
        assert result.is_significant()

    def test_constant_equal_windows_neutral(self) -> None:
        result = welch_t_test([1.0] * 10, [1.0] * 10)
        assert result.p_value == 1.0
        assert result.statistic == 0.0

    def test_short_window_neutral(self) -> None:
        result = welch_t_test([1.0], [0.0, 1.0, 0.0])
        assert result.p_value == 1.0

    def test_nans_dropped(self) -> None:
        rng = np.random.default_rng(42)
        ref = rng.normal(0, 1, size=50)
        cur = np.concatenate([rng.normal(0, 1, size=45), np.full(5, np.nan)])
        result = welch_t_test(ref, cur)
        assert 0.0 <= result.p_value <= 1.0


class TestMannWhitneyU:
    def test_shift_significant(self) -> None:
        rng = np.random.default_rng(42)
        ref = rng.normal(0, 1, size=60)
        cur = rng.normal(3, 1, size=60)
        assert mann_whitney_u(ref, cur).is_significant()

    def test_constant_equal_windows_neutral(self) -> None:
        assert mann_whitney_u([0.0] * 20, [0.0] * 20).p_value == 1.0


class TestKolmogorovSmirnov:
    def test_identical_distributions(self) -> None:
        rng = np.random.default_rng(42)
        data = rng.normal(0, 1, size=200)
        result = kolmogorov_smirnov(data, data)
        assert result.statistic == pytest.approx(0.0)
        assert result.p_value == pytest.approx(1.0)

    def test_different_distributions(self) -> None:
        rng = np.random.default_rng(42)
        result = kolmogorov_smirnov(rng.normal(0, 1, 300), rng.normal(5, 1, 300))
        assert result.statistic > 0.5
        assert result.p_value < 0.001

    def test_empty_not_significant(self) -> None:
        assert not kolmogorov_smirnov([], [1.0, 2.0]).is_significant()


# ---------------------------------------------------------------------------
# Sequential detectors
# ---------------------------------------------------------------------------


class TestPageHinkley:
    def test_fires_on_drop(self) -> None:
        result = page_hinkley([1.0] * 30, [0.0] * 30)
        assert isinstance(result, PageHinkleyResult)
        assert result.fired
        assert result.direction == "decrease"
        assert result.statistic == pytest.approx(27.0)

    def test_fires_on_rise(self) -> None:
        result = page_hinkley([0.0] * 30, [1.0] * 30)
        assert result.fired
        assert result.direction == "increase"

    def test_quiet_on_same_level(self) -> None:
        result = page_hinkley([1.0] * 30, [1.0] * 30)
        assert not result.fired
        assert result.statistic == 0.0
        assert result.p_value == 1.0

    def test_short_window(self) -> None:
        result = page_hinkley([1.0], [0.0])
        assert not result.fired
        assert result.direction == "none"


class TestCusum:
    def test_shift_detected(self) -> None:
        result = cusum([0.0, 1.0] * 15, [1.0] * 30)
        assert result.statistic > 2.0
        assert result.is_significant(0.05)

    def test_no_variance_neutral(self) -> None:
        assert cusum([1.0] * 10, [1.0] * 10).p_value == 1.0


# ---------------------------------------------------------------------------
# Shape descriptors
# ---------------------------------------------------------------------------


class TestShape:
    def test_linear_trend_slope(self) -> None:
        assert linear_trend([0.0, 1.0, 2.0, 3.0]) == pytest.approx(1.0)
        assert linear_trend([5.0]) == 0.0

    def test_periodicity_of_alternating_series(self) -> None:
        series = [0.0, 1.0] * 20
        assert periodicity_strength(series) > 0.8

    def test_periodicity_short_or_constant(self) -> None:
        assert periodicity_strength([0.0, 1.0] * 5) == 0.0
        assert periodicity_strength([1.0] * 40) == 0.0

    def test_effect_size(self) -> None:
        assert effect_size([0.0] * 10, [1.0] * 10) == math.inf
        assert effect_size([1.0] * 10, [1.0] * 10) == 0.0
        assert effect_size([0.0, 1.0] * 10, [0.0, 1.0] * 10) == pytest.approx(0.0)
        assert effect_size([], [1.0]) == 0.0
