"""Centralised default constants for fuseclf.

Every project-wide magic number / string lives here.
Import these instead of hard-coding values in function signatures or CLI options.
"""

from __future__ import annotations

from typing import Final

# ── Versioning ──
ENSEMBLE_VERSION: Final[str] = "1.0.0"

# ── Prediction domain ──
VALUE_MIN: Final[int] = 0
VALUE_MAX: Final[int] = 14
VALUE_TOLERANCE: Final[int] = 1

# ── Weight blending ──
HISTORICAL_COEF: Final[float] = 0.25
RECENT_COEF: Final[float] = 0.40
CONTEXT_COEF: Final[float] = 0.25
CONFIDENCE_COEF: Final[float] = 0.10
DEFAULT_MIN_ALGORITHM_WEIGHT: Final[float] = 0.01
DEFAULT_NEUTRAL_WEIGHT: Final[float] = 0.5
DEFAULT_MIN_DECAY_FACTOR: Final[float] = 0.1

# ── Reliability windows ──
DEFAULT_RECENT_WINDOW: Final[int] = 20
DEFAULT_OUTCOME_HISTORY: Final[int] = 200
DEFAULT_MIN_HISTORICAL_SAMPLES: Final[int] = 10
DEFAULT_CALIBRATION_HISTORY: Final[int] = 100
DEFAULT_MIN_CALIBRATION_SAMPLES: Final[int] = 10
DEFAULT_CALIBRATION_BINS: Final[int] = 10

# ── Recent-weight shaping ──
DEFAULT_ERROR_THRESHOLD: Final[float] = 0.4
DEFAULT_MAX_ERROR_PENALTY: Final[float] = 0.3
DEFAULT_HIGH_ACCURACY: Final[float] = 0.8
DEFAULT_STABILITY_CENTER: Final[float] = 0.3

# ── Context sensitivity ──
DEFAULT_CONTEXT_SENSITIVITY: Final[float] = 0.3
DEFAULT_TIME_SENSITIVITY: Final[float] = 0.2
DEFAULT_TREND_SENSITIVITY: Final[float] = 0.3
DEFAULT_CONTEXT_EMA_ALPHA: Final[float] = 0.1
DEFAULT_STRONG_PATTERN: Final[float] = 0.7
DEFAULT_MODERATE_PATTERN: Final[float] = 0.4

# ── Confidence calibration ──
DEFAULT_OVERCONFIDENCE_THRESHOLD: Final[float] = 0.9
DEFAULT_UNDERCONFIDENCE_THRESHOLD: Final[float] = 0.6
DEFAULT_OVERCONFIDENCE_PENALTY: Final[float] = 0.9
DEFAULT_UNDERCONFIDENCE_BOOST: Final[float] = 1.1
DEFAULT_CALIBRATION_METHOD: Final[str] = "isotonic"

# ── Exploration ──
DEFAULT_EXPLORATION_RATE: Final[float] = 0.05
DEFAULT_EXPLORATION_BONUS: Final[float] = 0.3
DEFAULT_EXPLORATION_CEILING: Final[float] = 0.4

# ── Drift ──
DEFAULT_DRIFT_ALPHA: Final[float] = 0.01
DEFAULT_DRIFT_MIN_SAMPLES: Final[int] = 10
DEFAULT_DRIFT_RECENT_WINDOW: Final[int] = 20
DEFAULT_DRIFT_BASELINE_WINDOW: Final[int] = 50
DEFAULT_PH_DELTA: Final[float] = 0.1
DEFAULT_PH_LAMBDA: Final[float] = 5.0
DEFAULT_RECURRING_VARIANCE: Final[float] = 0.25
DEFAULT_TREND_EPSILON: Final[float] = 0.05
DEFAULT_PERIODICITY_THRESHOLD: Final[float] = 0.5
DEFAULT_DRIFT_HISTORY: Final[int] = 50
DEFAULT_SIMILAR_STRENGTH: Final[float] = 0.3
DEFAULT_RECURRENCE_STRENGTH: Final[float] = 0.4
DEFAULT_RECOVERY_HOURS: Final[dict[str, float]] = {
    "sudden": 2.0,
    "gradual": 6.0,
    "recurring": 1.0,
    "seasonal": 24.0,
}

# ── Diversity ──
DEFAULT_DIVERSITY_THRESHOLD: Final[float] = 0.3
DEFAULT_MAX_CORRELATION: Final[float] = 0.8
DEFAULT_MIN_ENSEMBLE_SIZE: Final[int] = 2
DEFAULT_CORRELATION_HISTORY: Final[int] = 100
DEFAULT_CONFIDENCE_GAP: Final[float] = 0.2

# ── Voting ──
DEFAULT_TIE_EPSILON: Final[float] = 1e-9
DEFAULT_TIE_PENALTY: Final[float] = 0.9
DEFAULT_STABILITY_WINDOW: Final[int] = 10
DEFAULT_VOTING_HISTORY: Final[int] = 50
DEFAULT_CATEGORY_HISTORY: Final[int] = 100
DEFAULT_CATEGORY_PERFORMANCE_WINDOW: Final[int] = 5
DEFAULT_EMPTY_REPRESENTATIVENESS: Final[float] = 0.1
DEFAULT_PLACEHOLDER_CONFIDENCE: Final[float] = 0.3
DEFAULT_PLACEHOLDER_VALUE: Final[int] = 7

# ── Bayesian fusion ──
DEFAULT_PRIOR_MEAN: Final[float] = 0.5
DEFAULT_PRIOR_VARIANCE: Final[float] = 0.25
DEFAULT_EVIDENCE_STRENGTH: Final[float] = 2.0
DEFAULT_MAX_EVIDENCE_STRENGTH: Final[float] = 10.0
DEFAULT_MIN_PRIOR_VARIANCE: Final[float] = 0.01
DEFAULT_INCONSISTENCY_PENALTY: Final[float] = 5.0
DEFAULT_KERNEL_BANDWIDTH: Final[float] = 0.2
DEFAULT_KERNEL_HISTORY: Final[int] = 10
DEFAULT_UNCERTAINTY_THRESHOLD: Final[float] = 0.3
DEFAULT_UNCERTAINTY_SHRINK: Final[float] = 0.5
DEFAULT_MAX_FUSED_WEIGHT: Final[float] = 0.8
DEFAULT_MIN_FUSED_WEIGHT: Final[float] = 0.01
DEFAULT_WEIGHT_HISTORY: Final[int] = 50
DEFAULT_EVIDENCE_DECAY: Final[float] = 0.95
DEFAULT_PRIOR_LEARNING_RATE: Final[float] = 0.1
DEFAULT_KERNEL_INFLUENCE: Final[float] = 0.7
DEFAULT_MAX_NORMALIZATION: Final[float] = 1.5
DEFAULT_LEADER_PRESERVATION: Final[float] = 1.1

# ── Confidence recalibration ──
LOW_CONSENSUS_THRESHOLD: Final[float] = 0.5
LOW_CONSENSUS_PENALTY: Final[float] = 0.8
DRIFT_CONFIDENCE_PENALTY: Final[float] = 0.3
LOW_STABILITY_THRESHOLD: Final[float] = 0.6
LOW_STABILITY_PENALTY: Final[float] = 0.9
HIGH_UNCERTAINTY_THRESHOLD: Final[float] = 0.5
UNCERTAINTY_PENALTY: Final[float] = 0.2
FUSION_DISSENT_PENALTY: Final[float] = 0.2

# ── Orchestration ──
DEFAULT_LOW_WEIGHT_TRIGGER: Final[float] = 0.3
DEFAULT_DRIFT_MIN_OUTCOMES: Final[int] = DEFAULT_DRIFT_RECENT_WINDOW + DEFAULT_DRIFT_MIN_SAMPLES
DEFAULT_PREDICTION_HISTORY: Final[int] = 100
DEFAULT_OUTCOME_TOLERANCE_SECONDS: Final[float] = 60.0
DEFAULT_CONFIDENCE_FLOOR: Final[float] = 0.1
DEFAULT_TOTAL_WEIGHT_FLOOR: Final[float] = 0.1
DEFAULT_LOW_WEIGHT_WARNING: Final[float] = 0.2
DEFAULT_STRONG_DRIFT_WARNING: Final[float] = 0.7
DEFAULT_CONSENSUS_THRESHOLD: Final[float] = 0.6
DEFAULT_METRICS_EMA_ALPHA: Final[float] = 0.1
DEFAULT_PERSISTENCE_TIMEOUT_SECONDS: Final[float] = 2.0
DEFAULT_PERSISTENCE_WORKERS: Final[int] = 2
DEFAULT_PERSISTENCE_MAX_PENDING: Final[int] = 64

# ── Paths ──
DEFAULT_PERSISTENCE_DIR: Final[str] = "artifacts/persistence"
