"""Dynamic per-predictor weighting.

A predictor's weight blends four bounded components with fixed
coefficients (historical accuracy, a recent-outcome window, context-match
EMAs and confidence calibration), decays exponentially with the hours
since its last graded outcome at a category-specific rate, occasionally
receives an exploration bonus while weak, and is clamped to
``[min_algorithm_weight, 1]``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from enum import StrEnum
from typing import Mapping

import numpy as np
from pydantic import BaseModel, Field

from fuseclf.core.config import PredictorOverride, WeightingConfig
from fuseclf.core.defaults import (
    DEFAULT_CALIBRATION_BINS,
    DEFAULT_CONTEXT_EMA_ALPHA,
    DEFAULT_ERROR_THRESHOLD,
    DEFAULT_HIGH_ACCURACY,
    DEFAULT_MAX_ERROR_PENALTY,
    DEFAULT_MIN_CALIBRATION_SAMPLES,
    DEFAULT_MIN_DECAY_FACTOR,
    DEFAULT_MODERATE_PATTERN,
    DEFAULT_NEUTRAL_WEIGHT,
    DEFAULT_OVERCONFIDENCE_THRESHOLD,
    DEFAULT_STABILITY_CENTER,
    DEFAULT_STRONG_PATTERN,
    DEFAULT_UNDERCONFIDENCE_THRESHOLD,
)
from fuseclf.core.metrics import expected_calibration_error
from fuseclf.core.types import CATEGORY_PROFILES, Category, PredictionContext, clamp
from fuseclf.ensemble.state import AccuracyRecord, PredictorStateStore

logger = logging.getLogger(__name__)


class WeightSource(StrEnum):
    """Component that dominates a weight; ``hybrid`` on a tie."""

    historical = "historical"
    recent = "recent"
    context = "context"
    hybrid = "hybrid"


class DynamicWeight(BaseModel, frozen=True):
    """Derived trust assigned to one predictor for one inference."""

    predictor_id: str
    category: Category
    base_weight: float = Field(description="Historical component.")
    recent_weight: float
    context_weight: float
    confidence_weight: float
    final_weight: float
    decay_factor: float
    exploration_bonus: float = 0.0
    weight_source: WeightSource
    confidence_level: float = Field(description="How much evidence backs this weight, in [0, 1].")
    computed_at: datetime

    def with_final_weight(self, weight: float) -> DynamicWeight:
        """Copy with a replaced ``final_weight`` (drift actions, pruning)."""
        return self.model_copy(update={"final_weight": weight})


def weight_value(
    weights: Mapping[str, DynamicWeight | float],
    predictor_id: str,
    default: float = DEFAULT_NEUTRAL_WEIGHT,
) -> float:
    """Final weight of *predictor_id* from a mapping of weights or floats."""
    w = weights.get(predictor_id, default)
    return w.final_weight if isinstance(w, DynamicWeight) else float(w)


def context_keys(context: PredictionContext) -> dict[str, str]:
    """Context factor keys for *context*, keyed by the sensitivity that applies."""
    if context.pattern_strength > DEFAULT_STRONG_PATTERN:
        pattern = "strong"
    elif context.pattern_strength > DEFAULT_MODERATE_PATTERN:
        pattern = "moderate"
    else:
        pattern = "weak"
    return {
        "time": f"hour:{context.hour_of_day}",
        "trend": f"trend:{context.trend}",
        "volatility": f"volatility:{context.volatility}",
        "pattern": f"pattern:{pattern}",
    }


# ---------------------------------------------------------------------------
# Component functions
# ---------------------------------------------------------------------------


def historical_weight(record: AccuracyRecord | None, min_samples: int) -> float:
    """Lifetime accuracy plus a data-volume boost of up to 0.1, in ``[0.1, 1]``."""
    if record is None or record.total < min_samples:
        return DEFAULT_NEUTRAL_WEIGHT
    boost = min(record.total / 100.0, 1.0) * 0.1
    return clamp(record.accuracy_rate + boost, 0.1, 1.0)


def recent_weight(record: AccuracyRecord | None, recent_window: int, min_samples: int) -> float:
    """Weight from the recent-outcome window, in ``[0.1, 0.8]``.

    Falls back to :func:`historical_weight` until the window is half full.
    Error rates above 0.4 are penalized by a logistic factor capped at
    30%; accuracy above 0.8 earns a logarithmic boost; a stabilization
    multiplier in ``(0.9, 1]`` peaks at an error rate of 0.3.
    """
    if record is None or len(record.recent) < recent_window / 2:
        return historical_weight(record, min_samples)

    accuracy = record.recent_accuracy
    error = 1.0 - accuracy
    weight = accuracy

    if error > DEFAULT_ERROR_THRESHOLD:
        penalty = 1.0 / (1.0 + math.exp(-(error - 0.5) * 3.0))
        weight *= 1.0 - penalty * DEFAULT_MAX_ERROR_PENALTY

    if accuracy > DEFAULT_HIGH_ACCURACY:
        weight += 0.05 * math.log(1.0 + (accuracy - DEFAULT_HIGH_ACCURACY))

    stabilization = 0.9 + 0.1 * math.exp(-abs(error - DEFAULT_STABILITY_CENTER))
    return clamp(weight * stabilization, 0.1, 0.8)


def context_weight(
    record: AccuracyRecord | None,
    context: PredictionContext,
    sensitivities: Mapping[str, float],
) -> float:
    """Context-match weight around a neutral 0.5, in ``[0.1, 1]``.

    Each known context factor shifts the weight by
    ``(ema - 0.5) * sensitivity``; the summed shift is damped by
    ``1 + 0.5 * n_factors``.  No known factor yields exactly 0.5.
    """
    if record is None or not record.context_ema:
        return DEFAULT_NEUTRAL_WEIGHT

    shift = 0.0
    factors = 0
    for kind, key in context_keys(context).items():
        ema = record.context_ema.get(key)
        if ema is None:
            continue
        shift += (ema - 0.5) * sensitivities[kind]
        factors += 1

    if factors == 0:
        return DEFAULT_NEUTRAL_WEIGHT
    return clamp(DEFAULT_NEUTRAL_WEIGHT + shift / (1.0 + factors * 0.5), 0.1, 1.0)


def confidence_weight(
    record: AccuracyRecord | None,
    *,
    overconfidence_penalty: float,
    underconfidence_boost: float,
) -> float:
    """Calibration weight ``max(0.1, 1 - ECE)`` with over/under-confidence adjustment, in ``[0.05, 1]``."""
    if record is None or len(record.calibration) < DEFAULT_MIN_CALIBRATION_SAMPLES:
        return DEFAULT_NEUTRAL_WEIGHT

    confidences = np.array([c for c, _ in record.calibration], dtype=np.float64)
    correct = np.array([ok for _, ok in record.calibration], dtype=np.float64)
    ece = expected_calibration_error(confidences, correct, DEFAULT_CALIBRATION_BINS)
    weight = max(0.1, 1.0 - ece)

    mean_conf = float(confidences.mean())
    if mean_conf > DEFAULT_OVERCONFIDENCE_THRESHOLD:
        weight *= overconfidence_penalty
    elif mean_conf < DEFAULT_UNDERCONFIDENCE_THRESHOLD:
        weight *= underconfidence_boost
    return clamp(weight, 0.05, 1.0)


def decay_factor(record: AccuracyRecord | None, category: Category, now: datetime) -> float:
    """``rate ** hours_since_update`` for the category, floored at 0.1."""
    if record is None or record.last_updated is None:
        return 1.0
    hours = max(0.0, (now - record.last_updated).total_seconds() / 3600.0)
    rate = CATEGORY_PROFILES[category].decay_rate
    return max(DEFAULT_MIN_DECAY_FACTOR, rate**hours)


def weight_source(base: float, recent: float, ctx: float) -> WeightSource:
    components = {
        WeightSource.historical: base,
        WeightSource.recent: recent,
        WeightSource.context: ctx,
    }
    top = max(components.values())
    dominant = [src for src, value in components.items() if math.isclose(value, top, abs_tol=1e-12)]
    return dominant[0] if len(dominant) == 1 else WeightSource.hybrid


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class WeightCalculator:
    """Computes :class:`DynamicWeight` objects and folds graded outcomes into state.

    Args:
        store: Injected per-predictor state.
        config: Weighting knobs.
        overrides: Optional per-predictor weight bands.
        rng: Random generator driving the exploration bonus.  Pass a seeded
            generator for reproducible weights.
    """

    def __init__(
        self,
        store: PredictorStateStore,
        config: WeightingConfig | None = None,
        *,
        overrides: Mapping[str, PredictorOverride] | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._store = store
        self._config = config or WeightingConfig()
        self._overrides = dict(overrides or {})
        self._rng = rng or np.random.default_rng()
        self._sensitivities = {
            "time": self._config.time_sensitivity,
            "trend": self._config.trend_sensitivity,
            "volatility": self._config.context_sensitivity,
            "pattern": self._config.context_sensitivity,
        }

    @property
    def store(self) -> PredictorStateStore:
        return self._store

    def _bounds(self, predictor_id: str) -> tuple[float, float]:
        lo, hi = self._config.min_algorithm_weight, 1.0
        override = self._overrides.get(predictor_id)
        if override is not None:
            lo = max(lo, override.min_weight)
            hi = max(lo, min(hi, override.max_weight))
        return lo, hi

    def calculate_weight(
        self,
        predictor_id: str,
        context: PredictionContext,
        category: Category,
    ) -> DynamicWeight:
        """Compute the current dynamic weight of *predictor_id*.

        Args:
            predictor_id: Predictor to weigh.
            context: Current situational context; its timestamp is "now"
                for decay purposes.
            category: Predictor family, selecting the decay rate.

        Returns:
            A :class:`DynamicWeight` whose ``final_weight`` lies in
            ``[min_algorithm_weight, 1]`` (narrowed by any override band).
        """
        cfg = self._config
        with self._store.lock(predictor_id):
            record = self._store.get(predictor_id)
            base = historical_weight(record, cfg.min_historical_samples)
            recent = recent_weight(record, cfg.recent_window, cfg.min_historical_samples)
            ctx = context_weight(record, context, self._sensitivities)
            conf = confidence_weight(
                record,
                overconfidence_penalty=cfg.overconfidence_penalty,
                underconfidence_boost=cfg.underconfidence_boost,
            )
            decay = decay_factor(record, category, context.timestamp)
            total = record.total if record else 0
            accuracy = record.accuracy_rate if record else 0.0

        bonus = 0.0
        if self._rng.random() < cfg.exploration_rate and base < cfg.exploration_ceiling:
            bonus = cfg.exploration_bonus
            logger.debug("Exploration bonus %.2f applied to %s", bonus, predictor_id)

        fused = (
            cfg.historical_coef * base
            + cfg.recent_coef * recent
            + cfg.context_coef * ctx
            + cfg.confidence_coef * conf
        )
        lo, hi = self._bounds(predictor_id)
        final = clamp(fused * decay + bonus, lo, hi)

        logger.debug(
            "Weight %s: final=%.3f (historical=%.2f recent=%.2f context=%.2f confidence=%.2f decay=%.3f)",
            predictor_id, final, base, recent, ctx, conf, decay,
        )
        return DynamicWeight(
            predictor_id=predictor_id,
            category=category,
            base_weight=base,
            recent_weight=recent,
            context_weight=ctx,
            confidence_weight=conf,
            final_weight=final,
            decay_factor=decay,
            exploration_bonus=bonus,
            weight_source=weight_source(base, recent, ctx),
            confidence_level=(min(total / 100.0, 1.0) + accuracy) / 2.0,
            computed_at=context.timestamp,
        )

    def update_outcome(
        self,
        predictor_id: str,
        was_correct: bool,
        confidence: float,
        context: PredictionContext,
        category: Category | None = None,
    ) -> AccuracyRecord:
        """Fold one graded outcome into the predictor's record.

        Updates the counters, the recent window and long outcome history
        (FIFO), the per-context-factor EMAs (``0.9 * old + 0.1 * outcome``,
        starting from 0.5) and the calibration history.

        Returns:
            The updated record.
        """
        alpha = DEFAULT_CONTEXT_EMA_ALPHA
        outcome = 1.0 if was_correct else 0.0
        with self._store.lock(predictor_id):
            record = self._store.get_or_create(predictor_id)
            record.total += 1
            record.correct += int(was_correct)
            record.recent.append(bool(was_correct))
            record.outcomes.append(bool(was_correct))
            for key in context_keys(context).values():
                old = record.context_ema.get(key, DEFAULT_NEUTRAL_WEIGHT)
                record.context_ema[key] = (1.0 - alpha) * old + alpha * outcome
            record.calibration.append((clamp(float(confidence)), bool(was_correct)))
            if record.last_updated is None or context.timestamp > record.last_updated:
                record.last_updated = context.timestamp
            if category is not None:
                record.category = category
        return record
