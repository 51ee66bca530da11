"""Ensemble orchestration: the two public operations.

``generate_prediction`` runs, in order: input validation, dynamic
weighting, drift investigation of low-weight predictors (with the
recommended action applied to their weight before voting), optional
diversity pruning, hierarchical voting, Bayesian weight fusion and
post-hoc confidence recalibration.  The result is appended to a bounded
history and handed to the persistence dispatcher without waiting.

``update_with_outcome`` grades a stored prediction against the actual
outcome and feeds every predictor's correctness back into the weight
state, the category outcome history and the rolling ensemble metrics.

Example::

    orchestrator = EnsembleOrchestrator(config=load_config(path))
    result = orchestrator.generate_prediction(predictions, context)
    ...
    orchestrator.update_with_outcome(result.prediction.prediction_id, "red", 3)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import numpy as np
from pydantic import ValidationError

from fuseclf.core.config import EnsembleConfig
from fuseclf.core.defaults import (
    DEFAULT_LOW_WEIGHT_WARNING,
    DEFAULT_METRICS_EMA_ALPHA,
    DEFAULT_STRONG_DRIFT_WARNING,
    DRIFT_CONFIDENCE_PENALTY,
    FUSION_DISSENT_PENALTY,
    HIGH_UNCERTAINTY_THRESHOLD,
    LOW_CONSENSUS_PENALTY,
    LOW_CONSENSUS_THRESHOLD,
    LOW_STABILITY_PENALTY,
    LOW_STABILITY_THRESHOLD,
    UNCERTAINTY_PENALTY,
)
from fuseclf.core.types import Label, PredictionContext, PredictorPrediction, clamp, clamp_value
from fuseclf.ensemble.calibration import CalibratorStore
from fuseclf.ensemble.diversity import DiversityAnalyzer
from fuseclf.ensemble.drift import DriftAction, DriftDetector, DriftSignal
from fuseclf.ensemble.fusion import BayesianWeightFusion, FusedWeight
from fuseclf.ensemble.persistence import FireAndForget, NullSink, PersistenceSink
from fuseclf.ensemble.prediction import (
    Diagnostics,
    EnsembleMetrics,
    EnsemblePrediction,
    EnsembleResult,
)
from fuseclf.ensemble.state import PredictorStateStore
from fuseclf.ensemble.voting import HierarchicalVotingEngine
from fuseclf.ensemble.weights import DynamicWeight, WeightCalculator

logger = logging.getLogger(__name__)


class InsufficientInputError(ValueError):
    """No usable prediction was supplied."""

    def __init__(self, message: str, *, failed: int = 0, skipped: int = 0) -> None:
        super().__init__(message)
        self.failed = failed
        self.skipped = skipped


@dataclass
class _Round:
    prediction: EnsemblePrediction
    inputs: list[PredictorPrediction]
    context: PredictionContext
    graded: bool = False


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def apply_drift_action(weight: float, signal: DriftSignal, floor: float) -> float:
    """Adjust a predictor's weight according to ``signal.recommended_action``."""
    action = signal.recommended_action
    if action == DriftAction.reduce_weight:
        weight *= 1.0 - signal.strength * 0.5
    elif action == DriftAction.temporary_disable:
        weight = floor
    elif action == DriftAction.retrain:
        weight *= 0.7
    return max(floor, weight)


def fused_support(prediction: EnsemblePrediction, fused: Mapping[str, FusedWeight]) -> float:
    """Share of fused weight held by predictors that back the final label."""
    total = sum(f.weight for f in fused.values())
    if total <= 0:
        return 1.0
    backing = sum(
        fused[c.predictor_id].weight
        for c in prediction.contributions
        if c.label == prediction.label and c.predictor_id in fused
    )
    return backing / total


def recalibrate_confidence(
    prediction: EnsemblePrediction,
    signals: Sequence[DriftSignal],
    *,
    support: float = 1.0,
    floor: float = 0.1,
) -> float:
    """Bounded multiplicative penalties on the voted confidence.

    Low consensus, detected drift, low stability, high uncertainty and
    fused-weight dissent each shrink the confidence; the result is
    clamped to ``[floor, 1]``.
    """
    factor = 1.0
    if prediction.consensus_strength < LOW_CONSENSUS_THRESHOLD:
        factor *= LOW_CONSENSUS_PENALTY
    if signals:
        factor *= 1.0 - float(np.mean([s.strength for s in signals])) * DRIFT_CONFIDENCE_PENALTY
    if prediction.stability < LOW_STABILITY_THRESHOLD:
        factor *= LOW_STABILITY_PENALTY
    if prediction.uncertainty > HIGH_UNCERTAINTY_THRESHOLD:
        factor *= 1.0 - prediction.uncertainty * UNCERTAINTY_PENALTY
    factor *= 1.0 - FUSION_DISSENT_PENALTY * (1.0 - clamp(support))
    return clamp(prediction.confidence * factor, floor, 1.0)


def _ema(old: float, new: float, alpha: float = DEFAULT_METRICS_EMA_ALPHA) -> float:
    return (1.0 - alpha) * old + alpha * new


def _running_mean(old: float, new: float, n: int) -> float:
    return old + (new - old) / n


def _as_aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class EnsembleOrchestrator:
    """Composes weighting, drift, diversity, voting and fusion.

    Args:
        config: Full ensemble configuration.
        store: Injected per-predictor state; a fresh store sized from
            *config* when omitted.
        sink: Persistence collaborator; :class:`NullSink` when omitted.
        rng: Random generator for the exploration bonus.
    """

    def __init__(
        self,
        config: EnsembleConfig | None = None,
        *,
        store: PredictorStateStore | None = None,
        sink: PersistenceSink | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._config = config or EnsembleConfig()
        cfg = self._config
        self._store = store or PredictorStateStore(
            recent_window=cfg.weighting.recent_window,
            outcome_history=cfg.weighting.outcome_history,
            calibration_history=cfg.weighting.calibration_history,
        )
        self.weights = WeightCalculator(self._store, cfg.weighting, overrides=cfg.predictors, rng=rng)
        self.drift = DriftDetector(cfg.drift)
        self.diversity = DiversityAnalyzer(cfg.diversity)
        self.voting = HierarchicalVotingEngine(cfg.voting)
        self.fusion = BayesianWeightFusion(cfg.fusion)
        self.calibrators = CalibratorStore(method=cfg.orchestrator.calibration_method)
        self._dispatcher = FireAndForget(
            sink or NullSink(),
            timeout=cfg.orchestrator.persistence_timeout_seconds,
            max_pending=cfg.orchestrator.persistence_max_pending,
        )
        self._history: deque[_Round] = deque(maxlen=cfg.orchestrator.history_size)
        self._metrics = EnsembleMetrics()
        self._lock = threading.Lock()

    @property
    def config(self) -> EnsembleConfig:
        return self._config

    @property
    def store(self) -> PredictorStateStore:
        return self._store

    @property
    def dispatcher(self) -> FireAndForget:
        return self._dispatcher

    @property
    def metrics(self) -> EnsembleMetrics:
        with self._lock:
            return self._metrics.model_copy()

    @property
    def history(self) -> list[EnsemblePrediction]:
        with self._lock:
            return [r.prediction for r in self._history]

    def close(self) -> None:
        """Wait briefly for pending persistence calls, then stop the dispatcher."""
        self._dispatcher.drain()
        self._dispatcher.shutdown()

    # -- generate ----------------------------------------------------------------

    def _validate(self, raw_predictions: Sequence[Any]) -> tuple[list[PredictorPrediction], int, int]:
        valid: list[PredictorPrediction] = []
        seen: set[str] = set()
        failed = skipped = 0
        for i, raw in enumerate(raw_predictions):
            try:
                p = raw if isinstance(raw, PredictorPrediction) else PredictorPrediction.model_validate(raw)
            except ValidationError as exc:
                failed += 1
                logger.warning("Rejected prediction #%d: %d validation error(s)", i, exc.error_count())
                continue
            if p.id in seen:
                failed += 1
                logger.warning("Rejected duplicate prediction from %s", p.id)
                continue
            seen.add(p.id)
            if not self._config.override_for(p.id).enabled:
                skipped += 1
                logger.debug("Skipping disabled predictor %s", p.id)
                continue
            valid.append(p)

        if not valid:
            raise InsufficientInputError(
                f"no usable predictions ({len(raw_predictions)} supplied, {failed} invalid, {skipped} disabled)",
                failed=failed,
                skipped=skipped,
            )
        return valid, failed, skipped

    def _investigate_drift(
        self,
        weights: dict[str, DynamicWeight],
        context: PredictionContext,
    ) -> list[DriftSignal]:
        cfg = self._config
        signals: list[DriftSignal] = []
        for pid, w in list(weights.items()):
            if w.final_weight >= cfg.orchestrator.low_weight_trigger:
                if self.drift.has_open_event(pid):
                    self.drift.record_recovery(pid, context.timestamp)
                continue

            with self._store.lock(pid):
                record = self._store.get(pid)
                outcomes = [float(x) for x in record.outcomes] if record else []
            if len(outcomes) < cfg.orchestrator.drift_min_outcomes:
                continue

            window = cfg.drift.recent_window
            recent = outcomes[-window:]
            baseline = outcomes[:-window][-cfg.drift.baseline_window:]
            signal = self.drift.detect(pid, recent, baseline, context=context, now=context.timestamp)
            if signal is None:
                continue
            adjusted = apply_drift_action(w.final_weight, signal, cfg.weighting.min_algorithm_weight)
            weights[pid] = w.with_final_weight(adjusted)
            signals.append(signal)
        return signals

    def _warnings(self, weights: Mapping[str, DynamicWeight], signals: Sequence[DriftSignal]) -> list[str]:
        warnings = [
            f"strong_drift: {s.predictor_id} (strength {s.strength:.2f})"
            for s in signals
            if s.strength > DEFAULT_STRONG_DRIFT_WARNING
        ]
        low = sorted(pid for pid, w in weights.items() if w.final_weight < DEFAULT_LOW_WEIGHT_WARNING)
        if low:
            warnings.append(f"low_weight: {len(low)} predictor(s) below {DEFAULT_LOW_WEIGHT_WARNING:.2f}")
        return warnings

    def generate_prediction(
        self,
        raw_predictions: Sequence[PredictorPrediction | Mapping[str, Any]],
        context: PredictionContext | None = None,
    ) -> EnsembleResult:
        """Produce the ensemble decision for one inference.

        Args:
            raw_predictions: Predictor outputs, as models or plain dicts.
                Invalid entries are dropped and counted as ``failed``.
            context: Situational metadata; defaults to "now" with neutral
                scores.

        Returns:
            An :class:`EnsembleResult`.  ``success`` is false only when no
            usable prediction remains, in which case no state is written.
        """
        started = time.perf_counter()
        context = context or PredictionContext()
        cfg = self._config
        orch = cfg.orchestrator

        try:
            inputs, failed, skipped = self._validate(raw_predictions)
        except InsufficientInputError as exc:
            logger.warning("Prediction refused: %s", exc)
            return EnsembleResult(
                success=False,
                error=str(exc),
                diagnostics=Diagnostics(
                    failed=exc.failed,
                    skipped=exc.skipped,
                    elapsed_ms=(time.perf_counter() - started) * 1000.0,
                    warnings=[str(exc)],
                ),
            )

        voters = inputs
        if orch.calibrate_inputs:
            voters = [
                p.model_copy(update={"confidence": clamp(self.calibrators.calibrate(p.id, p.confidence))})
                for p in inputs
            ]

        weights = {p.id: self.weights.calculate_weight(p.id, context, p.category) for p in voters}
        signals = self._investigate_drift(weights, context) if orch.drift_detection_enabled else []

        selected = voters
        if orch.diversity_pruning_enabled:
            selected = self.diversity.optimize_selection(voters, weights)
        kept_ids = {p.id for p in selected}
        pruned = [p.id for p in voters if p.id not in kept_ids]
        diversity = self.diversity.compute_diversity(selected)

        warnings = self._warnings(weights, signals)
        total = sum(weights[p.id].final_weight for p in selected)
        if total < orch.total_weight_floor:
            message = f"degenerate_weights: total weight {total:.3f} below {orch.total_weight_floor:.3f}"
            logger.warning("%s; voting proceeds", message)
            warnings.append(message)

        selected_weights = {p.id: weights[p.id] for p in selected}
        prediction = self.voting.vote(selected, selected_weights, created_at=context.timestamp)

        support = 1.0
        if orch.bayesian_fusion_enabled:
            records = {pid: self._store.get(pid) for pid in selected_weights}
            support = fused_support(prediction, self.fusion.fuse(selected_weights, records))

        confidence = recalibrate_confidence(prediction, signals, support=support, floor=orch.confidence_floor)
        prediction = prediction.model_copy(update={"confidence": confidence})

        with self._lock:
            self._history.append(_Round(prediction=prediction, inputs=list(inputs), context=context))
            m = self._metrics
            m.total_predictions += 1
            m.mean_consensus_strength = _running_mean(
                m.mean_consensus_strength, prediction.consensus_strength, m.total_predictions
            )
            m.mean_stability = _running_mean(m.mean_stability, prediction.stability, m.total_predictions)
            m.last_updated = datetime.now(timezone.utc)

        self._dispatcher.record_prediction(prediction)
        for signal in signals:
            self._dispatcher.record_drift_event(signal)

        diagnostics = Diagnostics(
            processed=len(inputs),
            failed=failed,
            skipped=skipped,
            pruned=pruned,
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
            consensus_achieved=prediction.consensus_strength > orch.consensus_threshold,
            drift_detected=bool(signals),
            drifted_predictors=[s.predictor_id for s in signals],
            diversity_score=diversity.diversity_score,
            warnings=warnings,
        )
        logger.debug(
            "Prediction %s: %s/%d confidence=%.3f (%d voters, %d pruned)",
            prediction.prediction_id, prediction.label, prediction.value,
            prediction.confidence, len(selected), len(pruned),
        )
        return EnsembleResult(success=True, prediction=prediction, diagnostics=diagnostics)

    # -- outcome -------------------------------------------------------------------

    def _match(self, prediction_ref: str | datetime | None) -> _Round | None:
        """Locate the round for *prediction_ref*; caller holds ``self._lock``."""
        if not self._history:
            return None
        tolerance = self._config.orchestrator.outcome_match_tolerance_seconds

        if isinstance(prediction_ref, str):
            for rnd in reversed(self._history):
                if rnd.prediction.prediction_id == prediction_ref:
                    return rnd
        elif isinstance(prediction_ref, datetime):
            ref = _as_aware(prediction_ref)
            best = min(
                self._history,
                key=lambda r: abs((_as_aware(r.prediction.created_at) - ref).total_seconds()),
            )
            gap = abs((_as_aware(best.prediction.created_at) - ref).total_seconds())
            if gap <= tolerance:
                return best

        latest = self._history[-1]
        self._metrics.lenient_matches += 1
        logger.info(
            "No prediction matches reference %s; falling back to latest prediction %s",
            prediction_ref, latest.prediction.prediction_id,
        )
        return latest

    def update_with_outcome(
        self,
        prediction_ref: str | datetime | None,
        actual_label: Label | str,
        actual_value: int,
    ) -> EnsemblePrediction | None:
        """Grade a stored prediction and learn from it.

        Args:
            prediction_ref: A ``prediction_id`` or the prediction's
                timestamp (matched within the configured tolerance).  When
                nothing matches, the latest prediction is used and the
                fallback is logged.
            actual_label: Observed label.
            actual_value: Observed value; clamped into the value domain.

        Returns:
            The graded prediction, or ``None`` when there is no history.
            A prediction is graded at most once; later calls return it
            unchanged.

        Raises:
            ValueError: If *actual_label* is not a known label.
        """
        label = Label(actual_label)
        value = clamp_value(actual_value)

        with self._lock:
            rnd = self._match(prediction_ref)
            if rnd is None:
                logger.info("Outcome %s/%d ignored: no prediction history", label, value)
                return None
            if rnd.graded:
                logger.info("Prediction %s already graded; outcome ignored", rnd.prediction.prediction_id)
                return rnd.prediction
            rnd.graded = True

        prediction = rnd.prediction
        individual: list[bool] = []
        for p in rnd.inputs:
            correct = p.label == label
            individual.append(correct)
            record = self.weights.update_outcome(p.id, correct, p.confidence, rnd.context, p.category)
            self.voting.record_category_outcome(p.category, correct)
            self._dispatcher.record_outcome(p.id, correct)
            if self._config.orchestrator.calibrate_inputs:
                with self._store.lock(p.id):
                    pairs = list(record.calibration)
                self.calibrators.refit(p.id, pairs)

        label_ok = prediction.label == label
        value_ok = prediction.value == value
        ensemble = 1.0 if label_ok else 0.0
        with self._lock:
            m = self._metrics
            m.graded_predictions += 1
            m.correct_predictions += int(label_ok and value_ok)
            m.accuracy_rate = m.correct_predictions / m.graded_predictions
            m.label_accuracy = _running_mean(m.label_accuracy, float(label_ok), m.graded_predictions)
            m.value_accuracy = _running_mean(m.value_accuracy, float(value_ok), m.graded_predictions)
            if individual:
                m.improvement_over_average = _ema(m.improvement_over_average, ensemble - float(np.mean(individual)))
                m.improvement_over_best = _ema(m.improvement_over_best, ensemble - float(max(individual)))
            m.last_updated = datetime.now(timezone.utc)

        logger.debug(
            "Graded %s against %s/%d: label %s, %d/%d predictors correct",
            prediction.prediction_id, label, value,
            "hit" if label_ok else "miss", sum(individual), len(individual),
        )
        return prediction
