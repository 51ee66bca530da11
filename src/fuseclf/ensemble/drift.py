"""Concept-drift detection for individual predictors.

Ties together the pure statistics in :mod:`fuseclf.core.drift`: runs the
test battery on a baseline and a recent outcome window, classifies the
change, scores its strength and confidence, recommends an action and
estimates recovery time from the predictor's own drift history.

A drift is declared only when at least one order-insensitive two-sample
test (t-test, Mann-Whitney U, Kolmogorov-Smirnov) is significant at the
configured alpha.  The sequential detectors (Page-Hinkley, CUSUM) add
evidence to strength, confidence and classification but cannot declare a
drift on their own, so two identical windows never produce a signal.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import StrEnum
from typing import Sequence

import numpy as np
from pydantic import BaseModel, Field

from fuseclf.core.config import DriftConfig
from fuseclf.core.defaults import (
    DEFAULT_RECOVERY_HOURS,
    DEFAULT_RECURRENCE_STRENGTH,
    DEFAULT_SIMILAR_STRENGTH,
)
from fuseclf.core.drift import (
    DriftTestResult,
    cusum,
    effect_size,
    kolmogorov_smirnov,
    linear_trend,
    mann_whitney_u,
    page_hinkley,
    periodicity_strength,
    welch_t_test,
)
from fuseclf.core.types import PredictionContext, Volatility

logger = logging.getLogger(__name__)

_DECLARING_TESTS = frozenset({"t_test", "mann_whitney_u", "kolmogorov_smirnov"})
_N_TESTS = 5


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class DriftType(StrEnum):
    gradual = "gradual"
    sudden = "sudden"
    recurring = "recurring"
    seasonal = "seasonal"


class DriftAction(StrEnum):
    monitor = "monitor"
    reduce_weight = "reduce_weight"
    temporary_disable = "temporary_disable"
    retrain = "retrain"


class Severity(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


class DriftEvent(BaseModel):
    """A past drift, kept in bounded per-predictor history."""

    event_id: str
    predictor_id: str
    drift_type: DriftType
    strength: float
    detected_at: datetime
    recovery_hours: float
    recovered: bool = False


class DriftSignal(BaseModel, frozen=True):
    """A detected behavioral change of one predictor."""

    predictor_id: str
    drift_type: DriftType
    strength: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    performance_before: float
    performance_after: float
    performance_drop: float
    severity: Severity
    recommended_action: DriftAction
    recovery_estimate_hours: float
    detected_at: datetime
    tests: list[DriftTestResult]
    significant_tests: list[str]
    context_factors: list[str] = Field(default_factory=list)
    similar_past_events: list[DriftEvent] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def classify_severity(performance_drop: float) -> Severity:
    if performance_drop > 0.3:
        return Severity.high
    if performance_drop > 0.15:
        return Severity.medium
    return Severity.low


def recommend_action(
    strength: float,
    confidence: float,
    performance_drop: float,
) -> DriftAction:
    """Severity matrix over (strength x performance drop), gated by confidence.

    Only a high-severity drop with a strong, highly confident signal
    justifies ``temporary_disable``.  A change that did not lower
    performance is only monitored.
    """
    if performance_drop <= 0:
        return DriftAction.monitor
    severity = classify_severity(performance_drop)
    if severity is Severity.high and strength > 0.7 and confidence >= 0.8:
        return DriftAction.temporary_disable
    if strength > 0.7 and confidence >= 0.5:
        return DriftAction.retrain
    if strength > 0.4 or severity is not Severity.low:
        return DriftAction.reduce_weight
    return DriftAction.monitor


def drift_confidence(significant: Sequence[DriftTestResult], alpha: float) -> float:
    """Agreement across the battery times how far p-values fall below *alpha*."""
    if not significant:
        return 0.0
    agreement = len(significant) / _N_TESTS
    margin = float(np.mean([1.0 - t.p_value / alpha for t in significant]))
    return min(1.0, math.sqrt(agreement) * margin)


def context_factors(
    variance: float,
    trend: float,
    periodic: bool,
    context: PredictionContext | None,
    *,
    variance_threshold: float,
    trend_threshold: float,
) -> list[str]:
    """Tags describing conditions that may explain a drift."""
    factors: list[str] = []
    if variance > variance_threshold:
        factors.append("high_variability")
    if abs(trend) > trend_threshold:
        factors.append("positive_trend" if trend > 0 else "negative_trend")
    if periodic:
        factors.append("temporal_pattern")
    if context is not None:
        if context.volatility is Volatility.high:
            factors.append("high_volatility")
        if context.pattern_strength < 0.3:
            factors.append("weak_pattern")
        if context.anomaly_score > 0.7:
            factors.append("anomaly")
        if context.hour_of_day < 6:
            factors.append("off_hours")
    return factors


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class DriftDetector:
    """Battery of statistical tests flagging behavioral change per predictor.

    Detection itself is a pure function of the supplied windows; only the
    bounded per-predictor event history is shared state, guarded by a lock.

    Args:
        config: Drift thresholds.  ``alpha`` is the single significance
            level used for every test.
    """

    def __init__(self, config: DriftConfig | None = None) -> None:
        self._config = config or DriftConfig()
        self._history: dict[str, deque[DriftEvent]] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> DriftConfig:
        return self._config

    def history(self, predictor_id: str) -> list[DriftEvent]:
        with self._lock:
            return list(self._history.get(predictor_id, ()))

    def run_tests(
        self,
        baseline: Sequence[float],
        recent: Sequence[float],
    ) -> list[DriftTestResult]:
        """Run the full battery without any sample-size gate."""
        cfg = self._config
        return [
            welch_t_test(baseline, recent),
            mann_whitney_u(baseline, recent),
            kolmogorov_smirnov(baseline, recent),
            page_hinkley(baseline, recent, delta=cfg.ph_delta, threshold=cfg.ph_lambda),
            cusum(baseline, recent),
        ]

    def detect(
        self,
        predictor_id: str,
        recent_outcomes: Sequence[float],
        baseline_outcomes: Sequence[float],
        *,
        context: PredictionContext | None = None,
        now: datetime | None = None,
    ) -> DriftSignal | None:
        """Compare a recent outcome window against a baseline window.

        Args:
            predictor_id: Predictor under investigation.
            recent_outcomes: Newest performance values (oldest first).
            baseline_outcomes: Reference values preceding the recent window.
            context: Current context, used only for ``context_factors``.
            now: Detection timestamp; defaults to the current UTC time.

        Returns:
            A :class:`DriftSignal`, or ``None`` when either window holds
            fewer than ``min_samples`` values (insufficient evidence) or no
            declaring test is significant.
        """
        cfg = self._config
        recent = np.asarray(recent_outcomes, dtype=np.float64)
        baseline = np.asarray(baseline_outcomes, dtype=np.float64)
        if len(recent) < cfg.min_samples or len(baseline) < cfg.min_samples:
            logger.debug(
                "Drift check for %s skipped: %d recent / %d baseline samples (< %d)",
                predictor_id, len(recent), len(baseline), cfg.min_samples,
            )
            return None

        tests = self.run_tests(baseline, recent)
        significant = [t for t in tests if t.is_significant(cfg.alpha)]
        if not any(t.name in _DECLARING_TESTS for t in significant):
            return None

        ph = tests[3]
        variance = float(np.var(recent))
        trend = linear_trend(recent)
        periodic = periodicity_strength(recent) > cfg.periodicity_threshold

        if getattr(ph, "fired", False):
            drift_type = DriftType.sudden
        elif variance > cfg.recurring_variance:
            drift_type = DriftType.recurring
        elif abs(trend) > cfg.trend_epsilon:
            drift_type = DriftType.gradual
        elif periodic:
            drift_type = DriftType.seasonal
        else:
            drift_type = DriftType.gradual

        d = effect_size(baseline, recent)
        normalized_effect = 1.0 if math.isinf(d) else min(1.0, d / 2.0)
        test_strength = float(np.mean([1.0 - t.p_value for t in significant]))
        strength = (normalized_effect + test_strength) / 2.0
        if variance > cfg.recurring_variance:
            strength *= 1.2
        if abs(trend) > 2 * cfg.trend_epsilon:
            strength *= 1.1
        strength = min(1.0, strength)

        confidence = drift_confidence(significant, cfg.alpha)
        before = float(baseline.mean())
        after = float(recent.mean())
        drop = before - after
        action = recommend_action(strength, confidence, drop)

        detected_at = now or datetime.now(tz=timezone.utc)
        recovery = self.estimate_recovery_hours(predictor_id, drift_type, strength)
        similar = self.similar_events(predictor_id, drift_type, strength)

        signal = DriftSignal(
            predictor_id=predictor_id,
            drift_type=drift_type,
            strength=round(strength, 6),
            confidence=round(confidence, 6),
            performance_before=round(before, 6),
            performance_after=round(after, 6),
            performance_drop=round(drop, 6),
            severity=classify_severity(drop),
            recommended_action=action,
            recovery_estimate_hours=recovery,
            detected_at=detected_at,
            tests=tests,
            significant_tests=[t.name for t in significant],
            context_factors=context_factors(
                variance, trend, periodic, context,
                variance_threshold=cfg.recurring_variance,
                trend_threshold=2 * cfg.trend_epsilon,
            ),
            similar_past_events=similar,
        )
        self._record(signal)
        logger.info(
            "Drift detected for %s: type=%s strength=%.3f confidence=%.3f action=%s",
            predictor_id, drift_type, strength, confidence, action,
        )
        return signal

    # -- history ---------------------------------------------------------------

    def _record(self, signal: DriftSignal) -> None:
        event = DriftEvent(
            event_id=uuid.uuid4().hex,
            predictor_id=signal.predictor_id,
            drift_type=signal.drift_type,
            strength=signal.strength,
            detected_at=signal.detected_at,
            recovery_hours=signal.recovery_estimate_hours,
        )
        with self._lock:
            events = self._history.setdefault(
                signal.predictor_id, deque(maxlen=self._config.history_size)
            )
            events.append(event)

    def record_recovery(self, predictor_id: str, recovered_at: datetime) -> DriftEvent | None:
        """Close the latest open drift event with the observed recovery time.

        Returns:
            The closed event, or ``None`` if the predictor has no open event.
        """
        with self._lock:
            events = self._history.get(predictor_id)
            if not events or events[-1].recovered:
                return None
            event = events[-1]
            hours = max(0.0, (recovered_at - event.detected_at).total_seconds() / 3600.0)
            closed = event.model_copy(update={"recovery_hours": hours, "recovered": True})
            events[-1] = closed
        logger.info("Predictor %s recovered from %s drift after %.2fh", predictor_id, closed.drift_type, hours)
        return closed

    def has_open_event(self, predictor_id: str) -> bool:
        with self._lock:
            events = self._history.get(predictor_id)
            return bool(events) and not events[-1].recovered

    def estimate_recovery_hours(self, predictor_id: str, drift_type: DriftType, strength: float) -> float:
        """Nearest past event of the same type and similar strength, else a fixed table."""
        with self._lock:
            events = list(self._history.get(predictor_id, ()))
        candidates = [
            e for e in events
            if e.drift_type == drift_type and abs(e.strength - strength) < DEFAULT_SIMILAR_STRENGTH
        ]
        if candidates:
            nearest = min(candidates, key=lambda e: abs(e.strength - strength))
            return nearest.recovery_hours
        return DEFAULT_RECOVERY_HOURS[str(drift_type)]

    def similar_events(self, predictor_id: str, drift_type: DriftType, strength: float) -> list[DriftEvent]:
        """Up to three most recent past events of the same type within 0.4 strength."""
        with self._lock:
            events = list(self._history.get(predictor_id, ()))
        matches = [
            e for e in events
            if e.drift_type == drift_type and abs(e.strength - strength) < DEFAULT_RECURRENCE_STRENGTH
        ]
        return matches[-3:]
