"""Ensemble diversity: pairwise disagreement, correlation and redundancy pruning.

An ensemble only adds value when its members disagree more than they
individually err.  :class:`DiversityAnalyzer` scores that ratio and, when
diversity is too low, drops the weaker member of the most correlated pair
until no pair is above the correlation bound or only the minimum ensemble
size remains.
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
from collections import deque
from typing import Mapping, Sequence

import numpy as np
from pydantic import BaseModel

from fuseclf.core.config import DiversityConfig
from fuseclf.core.types import PredictorPrediction
from fuseclf.ensemble.weights import DynamicWeight, weight_value

logger = logging.getLogger(__name__)


class DiversityReport(BaseModel):
    """Diversity of one set of predictions."""

    predictor_ids: list[str]
    disagreement_rate: float
    estimated_error_rate: float
    diversity_score: float
    correlation_matrix: list[list[float]]
    predicted_gain: float


class PairCorrelation(BaseModel):
    predictor_a: str
    predictor_b: str
    correlation: float
    disagreement: float


def pair_disagreement(
    a: PredictorPrediction,
    b: PredictorPrediction,
    *,
    value_tolerance: int = 0,
    confidence_gap: float = 0.2,
) -> float:
    """Label mismatch 1.0, value mismatch 0.5, confidence gap 0.3; capped at 1."""
    score = 0.0
    if a.label != b.label:
        score += 1.0
    if abs(a.value - b.value) > value_tolerance:
        score += 0.5
    if abs(a.confidence - b.confidence) > confidence_gap:
        score += 0.3
    return min(1.0, score)


def pair_correlation(a: PredictorPrediction, b: PredictorPrediction, *, value_tolerance: int = 0) -> float:
    """Similarity of two predictions: ``0.6 label + 0.3 value + 0.1 confidence``."""
    label_eq = 1.0 if a.label == b.label else 0.0
    value_eq = 1.0 if abs(a.value - b.value) <= value_tolerance else 0.0
    conf_sim = 1.0 - abs(a.confidence - b.confidence)
    return 0.6 * label_eq + 0.3 * value_eq + 0.1 * conf_sim


def diversity_score(disagreement_rate: float, error_rate: float) -> float:
    """Logistic transform of ``disagreement / error``; exactly 0 without disagreement."""
    if disagreement_rate <= 0.0 or error_rate <= 0.0:
        return 0.0
    ratio = disagreement_rate / error_rate
    return 1.0 / (1.0 + math.exp(-2.0 * (ratio - 1.0)))


def predicted_gain(disagreement_rate: float, error_rate: float) -> float:
    """Expected ensemble improvement ``err * (1 - err) * min(1, dis / err)``."""
    if error_rate <= 0.0:
        return 0.0
    return error_rate * (1.0 - error_rate) * min(1.0, disagreement_rate / error_rate)


class DiversityAnalyzer:
    """Measures disagreement between predictors and prunes redundant ones.

    Args:
        config: Diversity thresholds.
    """

    def __init__(self, config: DiversityConfig | None = None) -> None:
        self._config = config or DiversityConfig()
        self._history: dict[tuple[str, str], deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> DiversityConfig:
        return self._config

    def _disagreement(self, a: PredictorPrediction, b: PredictorPrediction) -> float:
        return pair_disagreement(
            a, b,
            value_tolerance=self._config.value_tolerance,
            confidence_gap=self._config.confidence_gap,
        )

    def _correlation(self, a: PredictorPrediction, b: PredictorPrediction) -> float:
        return pair_correlation(a, b, value_tolerance=self._config.value_tolerance)

    def correlation_matrix(self, predictions: Sequence[PredictorPrediction]) -> np.ndarray:
        n = len(predictions)
        matrix = np.eye(n, dtype=np.float64)
        for i, j in itertools.combinations(range(n), 2):
            c = self._correlation(predictions[i], predictions[j])
            matrix[i, j] = matrix[j, i] = c
        return matrix

    def compute_diversity(self, predictions: Sequence[PredictorPrediction]) -> DiversityReport:
        """Score the diversity of *predictions*.

        Returns:
            A :class:`DiversityReport`.  Fewer than two predictions yield
            zero disagreement, an error estimate of 0.5 and no matrix.
        """
        ids = [p.id for p in predictions]
        if len(predictions) < 2:
            return DiversityReport(
                predictor_ids=ids,
                disagreement_rate=0.0,
                estimated_error_rate=0.5,
                diversity_score=0.0,
                correlation_matrix=[],
                predicted_gain=0.0,
            )

        pairs = list(itertools.combinations(predictions, 2))
        disagreement = float(np.mean([self._disagreement(a, b) for a, b in pairs]))
        avg_conf = float(np.mean([p.confidence for p in predictions]))
        error = max(0.01, 1.0 - avg_conf)

        return DiversityReport(
            predictor_ids=ids,
            disagreement_rate=round(disagreement, 6),
            estimated_error_rate=round(error, 6),
            diversity_score=round(diversity_score(disagreement, error), 6),
            correlation_matrix=self.correlation_matrix(predictions).round(6).tolist(),
            predicted_gain=round(predicted_gain(disagreement, error), 6),
        )

    def analyze_correlations(self, predictions: Sequence[PredictorPrediction]) -> list[PairCorrelation]:
        """Pairwise correlations sorted strongest first; also appended to history."""
        results: list[PairCorrelation] = []
        for a, b in itertools.combinations(predictions, 2):
            corr = self._correlation(a, b)
            results.append(
                PairCorrelation(
                    predictor_a=a.id,
                    predictor_b=b.id,
                    correlation=round(corr, 6),
                    disagreement=round(self._disagreement(a, b), 6),
                )
            )
            key = tuple(sorted((a.id, b.id)))
            with self._lock:
                self._history.setdefault(
                    key, deque(maxlen=self._config.correlation_history)  # type: ignore[arg-type]
                ).append(corr)
        results.sort(key=lambda r: (-r.correlation, r.predictor_a, r.predictor_b))
        return results

    def correlation_history(self, predictor_a: str, predictor_b: str) -> list[float]:
        key = tuple(sorted((predictor_a, predictor_b)))
        with self._lock:
            return list(self._history.get(key, ()))  # type: ignore[arg-type]

    def highly_correlated_pairs(self, predictions: Sequence[PredictorPrediction]) -> list[PairCorrelation]:
        return [
            c for c in self.analyze_correlations(predictions)
            if c.correlation > self._config.max_correlation
        ]

    def optimize_selection(
        self,
        predictions: Sequence[PredictorPrediction],
        weights: Mapping[str, DynamicWeight | float],
    ) -> list[PredictorPrediction]:
        """Drop redundant predictors when ensemble diversity is too low.

        While the diversity score is under the threshold, repeatedly remove
        the lower-weighted member of the single most correlated pair (the
        later one on an exact tie) until the strongest correlation is at or
        below ``max_correlation`` or only ``min_ensemble_size`` remain.

        Args:
            predictions: Candidate predictions, in input order.
            weights: Predictor id mapped to a :class:`DynamicWeight` or a
                plain weight; missing ids count as 0.5.

        Returns:
            The retained predictions, in input order.
        """
        cfg = self._config
        kept = list(predictions)
        if len(kept) <= cfg.min_ensemble_size:
            return kept
        if self.compute_diversity(kept).diversity_score >= cfg.diversity_threshold:
            return kept

        while len(kept) > cfg.min_ensemble_size:
            matrix = self.correlation_matrix(kept)
            np.fill_diagonal(matrix, -np.inf)
            flat = int(np.argmax(matrix))
            i, j = divmod(flat, len(kept))
            i, j = min(i, j), max(i, j)
            if matrix[i, j] <= cfg.max_correlation:
                break
            drop = i if weight_value(weights, kept[i].id) < weight_value(weights, kept[j].id) else j
            logger.info(
                "Pruning correlated predictor %s (correlation %.3f with %s)",
                kept[drop].id, matrix[i, j], kept[j if drop == i else i].id,
            )
            del kept[drop]
        return kept
