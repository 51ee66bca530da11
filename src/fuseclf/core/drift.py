"""Pure statistical functions for concept-drift detection.

Every function compares a *reference* (baseline) window with a *current*
(recent) window of per-outcome performance values, typically 0/1
correctness.  Non-finite entries are dropped, windows with fewer than two
usable samples yield a neutral result (statistic 0, p-value 1), and a
p-value scipy reports as NaN (e.g. both windows constant) is mapped to 1.0
so that a degenerate comparison can never be read as evidence of change.
"""

from __future__ import annotations

import math

import numpy as np
from pydantic import BaseModel

from fuseclf.core.defaults import DEFAULT_DRIFT_ALPHA, DEFAULT_PH_DELTA, DEFAULT_PH_LAMBDA

_EPS = 1e-8


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class DriftTestResult(BaseModel):
    """Outcome of one two-sample drift test."""

    name: str
    statistic: float
    p_value: float

    def is_significant(self, alpha: float = DEFAULT_DRIFT_ALPHA) -> bool:
        return self.p_value < alpha


class PageHinkleyResult(DriftTestResult):
    """Page-Hinkley detector output; ``fired`` when the excursion exceeds lambda."""

    fired: bool
    direction: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clean(values: np.ndarray | list[float]) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    return arr[np.isfinite(arr)]


def _safe_p(p: float) -> float:
    p = float(p)
    if not math.isfinite(p):
        return 1.0
    return min(1.0, max(0.0, p))


def _neutral(name: str) -> DriftTestResult:
    return DriftTestResult(name=name, statistic=0.0, p_value=1.0)


def _both_constant(ref: np.ndarray, cur: np.ndarray) -> bool:
    return float(np.std(ref)) < _EPS and float(np.std(cur)) < _EPS


# ---------------------------------------------------------------------------
# Two-sample tests
# ---------------------------------------------------------------------------


def welch_t_test(reference: np.ndarray | list[float], current: np.ndarray | list[float]) -> DriftTestResult:
    """Welch's two-sample t-test for a shift in mean.

    Two constant windows carry no variance for the test to use; they are
    resolved directly: identical means give p=1, different means p=0.
    """
    from scipy.stats import ttest_ind

    ref, cur = _clean(reference), _clean(current)
    if len(ref) < 2 or len(cur) < 2:
        return _neutral("t_test")

    if _both_constant(ref, cur):
        diff = float(cur.mean() - ref.mean())
        if abs(diff) < _EPS:
            return _neutral("t_test")
        return DriftTestResult(name="t_test", statistic=math.copysign(math.inf, diff), p_value=0.0)

    stat, p = ttest_ind(cur, ref, equal_var=False)
    stat = float(stat) if math.isfinite(float(stat)) else 0.0
    return DriftTestResult(name="t_test", statistic=round(stat, 6), p_value=_safe_p(p))


def mann_whitney_u(reference: np.ndarray | list[float], current: np.ndarray | list[float]) -> DriftTestResult:
    """Two-sided Mann-Whitney U test for a rank (location) shift."""
    from scipy.stats import mannwhitneyu

    ref, cur = _clean(reference), _clean(current)
    if len(ref) < 2 or len(cur) < 2:
        return _neutral("mann_whitney_u")

    if _both_constant(ref, cur) and abs(float(cur.mean() - ref.mean())) < _EPS:
        return _neutral("mann_whitney_u")

    stat, p = mannwhitneyu(cur, ref, alternative="two-sided")
    return DriftTestResult(name="mann_whitney_u", statistic=round(float(stat), 6), p_value=_safe_p(p))


def kolmogorov_smirnov(reference: np.ndarray | list[float], current: np.ndarray | list[float]) -> DriftTestResult:
    """Two-sample Kolmogorov-Smirnov test for a change in distribution."""
    from scipy.stats import ks_2samp

    ref, cur = _clean(reference), _clean(current)
    if len(ref) < 2 or len(cur) < 2:
        return _neutral("kolmogorov_smirnov")

    stat, p = ks_2samp(ref, cur)
    return DriftTestResult(
        name="kolmogorov_smirnov",
        statistic=round(float(stat), 6),
        p_value=_safe_p(p),
    )


# ---------------------------------------------------------------------------
# Sequential detectors
# ---------------------------------------------------------------------------


def page_hinkley(
    reference: np.ndarray | list[float],
    current: np.ndarray | list[float],
    *,
    delta: float = DEFAULT_PH_DELTA,
    threshold: float = DEFAULT_PH_LAMBDA,
) -> PageHinkleyResult:
    """Two-sided Page-Hinkley test of *current* against the reference mean.

    Accumulates ``x_t - mean_ref - delta`` (upward) and
    ``mean_ref - x_t - delta`` (downward); the statistic is the largest
    excursion of either sum above its running minimum.  The p-value is the
    Hoeffding maximal-inequality bound ``exp(-2 * PH^2 / n)`` for values
    bounded in a unit range.

    Args:
        reference: Baseline window; only its mean is used.
        current: Window scanned sequentially.
        delta: Magnitude of change tolerated before accumulation.
        threshold: Lambda; the detector fires when the excursion exceeds it.

    Returns:
        A :class:`PageHinkleyResult`.
    """
    ref, cur = _clean(reference), _clean(current)
    if len(ref) < 2 or len(cur) < 2:
        return PageHinkleyResult(
            name="page_hinkley", statistic=0.0, p_value=1.0, fired=False, direction="none",
        )

    mean_ref = float(ref.mean())
    up = np.cumsum(cur - mean_ref - delta)
    down = np.cumsum(mean_ref - cur - delta)
    ph_up = float(np.max(up - np.minimum.accumulate(np.minimum(up, 0.0))))
    ph_down = float(np.max(down - np.minimum.accumulate(np.minimum(down, 0.0))))

    stat = max(ph_up, ph_down, 0.0)
    direction = "none"
    if stat > 0:
        direction = "increase" if ph_up >= ph_down else "decrease"
    p = math.exp(-2.0 * stat * stat / len(cur))
    return PageHinkleyResult(
        name="page_hinkley",
        statistic=round(stat, 6),
        p_value=_safe_p(p),
        fired=stat > threshold,
        direction=direction,
    )


def cusum(reference: np.ndarray | list[float], current: np.ndarray | list[float]) -> DriftTestResult:
    """CUSUM changepoint test on standardized deviations from the reference mean.

    Deviations of *current* from the reference mean are standardized by the
    pooled standard deviation and accumulated; the statistic is
    ``max_k |S_k| / sqrt(n)``.  Its p-value uses the reflection-principle
    bound for Brownian motion, ``4 * (1 - Phi(stat))``.
    """
    from scipy.stats import norm

    ref, cur = _clean(reference), _clean(current)
    if len(ref) < 2 or len(cur) < 2:
        return _neutral("cusum")

    sd = float(np.std(np.concatenate([ref, cur])))
    if sd < _EPS:
        return _neutral("cusum")

    z = (cur - float(ref.mean())) / sd
    stat = float(np.max(np.abs(np.cumsum(z)))) / math.sqrt(len(cur))
    p = 4.0 * float(norm.sf(stat))
    return DriftTestResult(name="cusum", statistic=round(stat, 6), p_value=_safe_p(p))


# ---------------------------------------------------------------------------
# Shape descriptors
# ---------------------------------------------------------------------------


def linear_trend(values: np.ndarray | list[float]) -> float:
    """Least-squares slope of *values* against their index; 0 for < 2 points."""
    y = _clean(values)
    if len(y) < 2:
        return 0.0
    x = np.arange(len(y), dtype=np.float64)
    slope = np.polyfit(x, y, 1)[0]
    return float(slope)


def periodicity_strength(values: np.ndarray | list[float], *, min_length: int = 24) -> float:
    """Largest autocorrelation over lags ``2..n//2``.

    Returns 0.0 for windows shorter than *min_length* or with no variance.
    """
    y = _clean(values)
    if len(y) < min_length:
        return 0.0
    centered = y - y.mean()
    denom = float(np.dot(centered, centered))
    if denom < _EPS:
        return 0.0
    best = 0.0
    for lag in range(2, len(y) // 2 + 1):
        r = float(np.dot(centered[:-lag], centered[lag:])) / denom
        best = max(best, r)
    return best


def effect_size(reference: np.ndarray | list[float], current: np.ndarray | list[float]) -> float:
    """Absolute Cohen's d with pooled standard deviation.

    When both windows are constant the pooled deviation is zero; a mean
    difference then counts as an unbounded effect (``inf``) and no
    difference as 0.
    """
    ref, cur = _clean(reference), _clean(current)
    if len(ref) == 0 or len(cur) == 0:
        return 0.0
    diff = abs(float(cur.mean() - ref.mean()))
    pooled = math.sqrt((float(np.var(ref)) + float(np.var(cur))) / 2.0)
    if pooled < _EPS:
        return math.inf if diff > _EPS else 0.0
    return diff / pooled
