"""Result models produced by the ensemble.

These are plain pydantic containers.  :class:`EnsemblePrediction` is
created once per inference by the voting engine; the orchestrator may
replace its confidence exactly once (post-hoc recalibration) via
``model_copy`` and wraps it in an :class:`EnsembleResult`.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from fuseclf.core.defaults import ENSEMBLE_VERSION
from fuseclf.core.types import Category, Label


def _new_prediction_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CategoryConsensus(BaseModel, frozen=True):
    """Tier-1 result for one category.

    An empty category is represented by a placeholder with ``count == 0``,
    a neutral label/value, low confidence and zero agreement.
    """

    category: Category
    label: Label
    value: int
    confidence: float = Field(ge=0.0, le=1.0)
    count: int = Field(ge=0)
    weight_sum: float = 0.0
    agreement: float = Field(ge=0.0, le=1.0)
    label_votes: dict[Label, float] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.count == 0


class Tier2Consensus(BaseModel, frozen=True):
    """Cross-category vote masses and weighted means before recalibration."""

    label_votes: dict[Label, float]
    weighted_value: float
    weighted_confidence: float
    tie_broken: bool = False
    tied_labels: list[Label] = Field(default_factory=list)


class PredictorContribution(BaseModel, frozen=True):
    """How much one predictor shaped the final decision."""

    predictor_id: str
    category: Category
    label: Label
    value: int
    confidence: float
    weight: float
    contribution_score: float
    alignment: float = Field(description="Agreement with the final label/value, in [0, 1].")
    category_alignment: float


class EnsemblePrediction(BaseModel, frozen=True):
    """The ensemble's decision for one inference."""

    prediction_id: str = Field(default_factory=_new_prediction_id)
    label: Label
    value: int
    confidence: float = Field(ge=0.0, le=1.0)
    raw_confidence: float = Field(ge=0.0, le=1.0, description="Tier-2 confidence before recalibration.")
    tier1: dict[Category, CategoryConsensus]
    tier2: Tier2Consensus
    category_weights: dict[Category, float]
    contributions: list[PredictorContribution]
    consensus_strength: float = Field(ge=0.0, le=1.0)
    stability: float = Field(ge=0.0, le=1.0)
    uncertainty: float = Field(ge=0.0, le=1.0)
    predictors_used: list[str]
    total_weight: float
    created_at: datetime = Field(default_factory=_utcnow)


class Diagnostics(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    pruned: list[str] = Field(default_factory=list)
    elapsed_ms: float = 0.0
    consensus_achieved: bool = False
    drift_detected: bool = False
    drifted_predictors: list[str] = Field(default_factory=list)
    diversity_score: float | None = None
    warnings: list[str] = Field(default_factory=list)


class EnsembleResult(BaseModel):
    """Envelope returned by ``EnsembleOrchestrator.generate_prediction``."""

    success: bool
    prediction: EnsemblePrediction | None = None
    error: str | None = None
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)
    version: str = ENSEMBLE_VERSION
    timestamp: datetime = Field(default_factory=_utcnow)


class EnsembleMetrics(BaseModel):
    """Rolling ensemble performance.

    ``improvement_over_best`` and ``improvement_over_average`` are EMAs of
    the ensemble's label correctness minus, respectively, the best and the
    mean individual predictor correctness on the same round.
    """

    total_predictions: int = 0
    graded_predictions: int = 0
    correct_predictions: int = 0
    accuracy_rate: float = 0.0
    label_accuracy: float = 0.0
    value_accuracy: float = 0.0
    improvement_over_best: float = 0.0
    improvement_over_average: float = 0.0
    mean_consensus_strength: float = 0.0
    mean_stability: float = 0.0
    lenient_matches: int = 0
    last_updated: datetime | None = None
