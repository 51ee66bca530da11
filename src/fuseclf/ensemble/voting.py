"""Two-tier hierarchical voting.

Tier 1 reaches a consensus inside each predictor category; category
weights are then re-estimated from that consensus (agreement, confidence,
representativeness and recent category accuracy) and normalized to sum
to 1; Tier 2 votes across categories with those weights.

Empty categories get a neutral placeholder with zero agreement, so their
Tier-2 vote weight is zero and they cannot bias the decision.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Mapping, Sequence

import numpy as np

from fuseclf.core.config import VotingConfig
from fuseclf.core.defaults import (
    DEFAULT_CATEGORY_PERFORMANCE_WINDOW,
    DEFAULT_EMPTY_REPRESENTATIVENESS,
    DEFAULT_PLACEHOLDER_CONFIDENCE,
    DEFAULT_PLACEHOLDER_VALUE,
    VALUE_MAX,
)
from fuseclf.core.types import (
    CATEGORY_PROFILES,
    Category,
    Label,
    PredictorPrediction,
    clamp,
    clamp_value,
)
from fuseclf.ensemble.prediction import (
    CategoryConsensus,
    EnsemblePrediction,
    PredictorContribution,
    Tier2Consensus,
)
from fuseclf.ensemble.weights import DynamicWeight, weight_value

logger = logging.getLogger(__name__)

_LABEL_ORDER: dict[Label, int] = {label: i for i, label in enumerate(Label)}


def _argmax_label(scores: Mapping[Label, float]) -> Label:
    """Highest-scoring label; exact ties go to the earliest label in :class:`Label` order."""
    return max(scores, key=lambda label: (scores[label], -_LABEL_ORDER[label]))


def placeholder_consensus(category: Category) -> CategoryConsensus:
    return CategoryConsensus(
        category=category,
        label=Label.black,
        value=DEFAULT_PLACEHOLDER_VALUE,
        confidence=DEFAULT_PLACEHOLDER_CONFIDENCE,
        count=0,
        weight_sum=0.0,
        agreement=0.0,
    )


def category_consensus(
    category: Category,
    predictions: Sequence[PredictorPrediction],
    weights: Mapping[str, DynamicWeight | float],
    *,
    value_tolerance: int = 1,
) -> CategoryConsensus:
    """Tier-1 consensus of one category.

    The label is the weighted majority with vote mass
    ``weight * confidence``; value and confidence are weight-weighted
    means.  Agreement averages the fraction of members on the majority
    label and the fraction within *value_tolerance* of the consensus value.
    """
    if not predictions:
        return placeholder_consensus(category)

    w = np.array([weight_value(weights, p.id) for p in predictions], dtype=np.float64)
    conf = np.array([p.confidence for p in predictions], dtype=np.float64)
    values = np.array([p.value for p in predictions], dtype=np.float64)

    votes: dict[Label, float] = {label: 0.0 for label in Label}
    for p, mass in zip(predictions, w * conf):
        votes[p.label] += float(mass)
    label = _argmax_label(votes)

    if w.sum() > 0:
        value = clamp_value(float(np.average(values, weights=w)))
        confidence = clamp(float(np.average(conf, weights=w)))
    else:
        value = clamp_value(float(values.mean()))
        confidence = clamp(float(conf.mean()))

    label_share = float(np.mean([p.label == label for p in predictions]))
    value_share = float(np.mean(np.abs(values - value) <= value_tolerance))

    return CategoryConsensus(
        category=category,
        label=label,
        value=value,
        confidence=confidence,
        count=len(predictions),
        weight_sum=float(w.sum()),
        agreement=(label_share + value_share) / 2.0,
        label_votes=votes,
    )


def adapt_category_weights(
    tier1: Mapping[Category, CategoryConsensus],
    performance: Mapping[Category, Sequence[bool]] | None = None,
) -> dict[Category, float]:
    """Re-estimate category weights from Tier-1 results; they sum to 1.

    Each category scores ``agreement * confidence * representativeness *
    performance``.  Representativeness is ``min(1, n / 3)``, multiplied by
    the category's boost once it has enough members, and a flat 0.1 for an
    empty category.  Performance is ``0.5 + mean(last 5 outcomes)`` once
    more than five category outcomes exist, else 1.
    """
    performance = performance or {}
    factors: dict[Category, float] = {}
    for category in Category:
        consensus = tier1[category]
        profile = CATEGORY_PROFILES[category]
        if consensus.is_empty:
            factor = DEFAULT_EMPTY_REPRESENTATIVENESS
        else:
            rep = min(1.0, consensus.count / profile.boost_min_members)
            if consensus.count >= profile.boost_min_members:
                rep *= profile.representativeness_boost
            factor = consensus.agreement * consensus.confidence * rep

        history = list(performance.get(category, ()))
        window = DEFAULT_CATEGORY_PERFORMANCE_WINDOW
        if len(history) > window:
            factor *= 0.5 + float(np.mean(history[-window:]))
        factors[category] = factor

    total = sum(factors.values())
    if total <= 0:
        return {category: 1.0 / len(factors) for category in factors}
    return {category: f / total for category, f in factors.items()}


def tier2_vote(
    tier1: Mapping[Category, CategoryConsensus],
    category_weights: Mapping[Category, float],
    *,
    tie_epsilon: float = 1e-9,
    tie_penalty: float = 0.9,
) -> tuple[Label, int, float, Tier2Consensus]:
    """Cross-category vote.

    Each category votes with ``category_weight * agreement``; label mass
    accumulates ``vote_weight * confidence``.  Labels within *tie_epsilon*
    of the top mass are tied and resolved by the summed
    ``confidence * category_weight`` of the categories backing each; a tie
    always multiplies the confidence by *tie_penalty*.

    Returns:
        ``(label, value, confidence, tier2)`` where *confidence* already
        carries any tie penalty and ``tier2.weighted_confidence`` does not.
    """
    votes: dict[Label, float] = {label: 0.0 for label in Label}
    vote_weights: dict[Category, float] = {}
    for category, consensus in tier1.items():
        vw = category_weights.get(category, 0.0) * consensus.agreement
        vote_weights[category] = vw
        votes[consensus.label] += vw * consensus.confidence

    total = sum(vote_weights.values())
    if total <= 0:
        vote_weights = {c: category_weights.get(c, 0.0) for c in tier1}
        total = sum(vote_weights.values()) or 1.0

    weighted_value = sum(tier1[c].value * vw for c, vw in vote_weights.items()) / total
    weighted_conf = sum(tier1[c].confidence * vw for c, vw in vote_weights.items()) / total

    top = max(votes.values())
    tied = [label for label in Label if top - votes[label] <= tie_epsilon]
    confidence = clamp(weighted_conf)
    tie_broken = False

    if len(tied) > 1:
        scores = {
            label: sum(
                tier1[c].confidence * category_weights.get(c, 0.0)
                for c in tier1
                if tier1[c].label == label and not tier1[c].is_empty
            )
            for label in tied
        }
        label = _argmax_label(scores)
        confidence = clamp(confidence * tie_penalty)
        tie_broken = True
        logger.debug("Tie between %s resolved to %s", [str(t) for t in tied], label)
    else:
        label = tied[0]

    tier2 = Tier2Consensus(
        label_votes=votes,
        weighted_value=weighted_value,
        weighted_confidence=clamp(weighted_conf),
        tie_broken=tie_broken,
        tied_labels=tied if tie_broken else [],
    )
    return label, clamp_value(weighted_value), confidence, tier2


def _alignment(p: PredictorPrediction, label: Label, value: int) -> float:
    label_match = 1.0 if p.label == label else 0.0
    return (label_match + 1.0 - abs(p.value - value) / VALUE_MAX) / 2.0


class HierarchicalVotingEngine:
    """Two-tier weighted vote with adaptive category weights.

    The engine keeps a bounded history of its own outputs (for
    ``prediction_stability``) and per-category outcome histories fed by
    :meth:`record_category_outcome`.

    Args:
        config: Voting knobs.
    """

    def __init__(self, config: VotingConfig | None = None) -> None:
        self._config = config or VotingConfig()
        self._history: deque[tuple[Label, int]] = deque(maxlen=self._config.history_size)
        self._category_outcomes: dict[Category, deque[bool]] = {
            c: deque(maxlen=self._config.category_history) for c in Category
        }
        self._category_weights: dict[Category, float] = {c: 1.0 / len(Category) for c in Category}
        self._lock = threading.Lock()

    @property
    def config(self) -> VotingConfig:
        return self._config

    @property
    def category_weights(self) -> dict[Category, float]:
        with self._lock:
            return dict(self._category_weights)

    def category_accuracy(self, category: Category) -> float | None:
        with self._lock:
            outcomes = list(self._category_outcomes[category])
        return float(np.mean(outcomes)) if outcomes else None

    def record_category_outcome(self, category: Category, correct: bool) -> None:
        with self._lock:
            self._category_outcomes[category].append(bool(correct))

    def stability(self, label: Label, value: int) -> float:
        """Agreement of ``(label, value)`` with the last outputs; 1.0 without history."""
        with self._lock:
            recent = list(self._history)[-self._config.stability_window:]
        if len(recent) < 2:
            return 1.0
        tol = self._config.value_tolerance
        scores = [
            ((1.0 if past_label == label else 0.0) + (1.0 if abs(past_value - value) <= tol else 0.0)) / 2.0
            for past_label, past_value in recent
        ]
        return float(np.mean(scores))

    def vote(
        self,
        predictions: Sequence[PredictorPrediction],
        weights: Mapping[str, DynamicWeight | float],
        *,
        created_at: datetime | None = None,
    ) -> EnsemblePrediction:
        """Run both tiers and build the :class:`EnsemblePrediction`.

        Args:
            predictions: Non-empty list of validated predictions.
            weights: Predictor id mapped to its dynamic weight (or a
                plain float); missing ids count as 0.5.
            created_at: Timestamp stamped on the prediction.

        Raises:
            ValueError: If *predictions* is empty.
        """
        if not predictions:
            raise ValueError("Cannot vote on an empty prediction list")
        cfg = self._config

        grouped: dict[Category, list[PredictorPrediction]] = {c: [] for c in Category}
        for p in predictions:
            grouped[p.category].append(p)

        tier1 = {
            c: category_consensus(c, members, weights, value_tolerance=cfg.value_tolerance)
            for c, members in grouped.items()
        }

        with self._lock:
            performance = {c: list(h) for c, h in self._category_outcomes.items()}
        category_weights = adapt_category_weights(tier1, performance)
        with self._lock:
            self._category_weights = dict(category_weights)

        label, value, confidence, tier2 = tier2_vote(
            tier1,
            category_weights,
            tie_epsilon=cfg.tie_epsilon,
            tie_penalty=cfg.tie_penalty,
        )

        populated = [c for c in tier1.values() if not c.is_empty]
        consensus_strength = sum(1 for c in populated if c.label == label) / max(1, len(populated))
        uncertainty = clamp(1.0 - float(np.mean([c.confidence * c.agreement for c in populated])))
        stability = self.stability(label, value)

        contributions = []
        for p in predictions:
            w = weight_value(weights, p.id)
            alignment = _alignment(p, label, value)
            own = tier1[p.category]
            contributions.append(
                PredictorContribution(
                    predictor_id=p.id,
                    category=p.category,
                    label=p.label,
                    value=p.value,
                    confidence=p.confidence,
                    weight=w,
                    contribution_score=w * alignment * p.confidence,
                    alignment=alignment,
                    category_alignment=_alignment(p, own.label, own.value),
                )
            )
        contributions.sort(key=lambda c: (-c.contribution_score, c.predictor_id))

        with self._lock:
            self._history.append((label, value))

        extra = {"created_at": created_at} if created_at is not None else {}
        return EnsemblePrediction(
            label=label,
            value=value,
            confidence=confidence,
            raw_confidence=confidence,
            tier1=tier1,
            tier2=tier2,
            category_weights=category_weights,
            contributions=contributions,
            consensus_strength=consensus_strength,
            stability=stability,
            uncertainty=uncertainty,
            predictors_used=[p.id for p in predictions],
            total_weight=sum(weight_value(weights, p.id) for p in predictions),
            **extra,
        )
