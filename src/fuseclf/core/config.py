"""Ensemble configuration: validated tunables with YAML/JSON persistence.

Every component reads its knobs from one sub-model of
:class:`EnsembleConfig`.  Defaults come from :mod:`fuseclf.core.defaults`,
so an empty file (or no file at all) yields the reference behaviour.

Typical flow::

    config = load_config(Path("configs/ensemble.yaml"))
    orchestrator = EnsembleOrchestrator(config=config)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from fuseclf.core import defaults as d

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------


class WeightingConfig(BaseModel, frozen=True):
    """Dynamic weight blending, decay and exploration."""

    historical_coef: float = Field(default=d.HISTORICAL_COEF, ge=0.0, le=1.0)
    recent_coef: float = Field(default=d.RECENT_COEF, ge=0.0, le=1.0)
    context_coef: float = Field(default=d.CONTEXT_COEF, ge=0.0, le=1.0)
    confidence_coef: float = Field(default=d.CONFIDENCE_COEF, ge=0.0, le=1.0)
    min_algorithm_weight: float = Field(default=d.DEFAULT_MIN_ALGORITHM_WEIGHT, gt=0.0, lt=1.0)
    recent_window: int = Field(default=d.DEFAULT_RECENT_WINDOW, ge=2)
    outcome_history: int = Field(default=d.DEFAULT_OUTCOME_HISTORY, ge=10)
    calibration_history: int = Field(default=d.DEFAULT_CALIBRATION_HISTORY, ge=10)
    min_historical_samples: int = Field(default=d.DEFAULT_MIN_HISTORICAL_SAMPLES, ge=1)
    context_sensitivity: float = Field(default=d.DEFAULT_CONTEXT_SENSITIVITY, ge=0.0, le=1.0)
    time_sensitivity: float = Field(default=d.DEFAULT_TIME_SENSITIVITY, ge=0.0, le=1.0)
    trend_sensitivity: float = Field(default=d.DEFAULT_TREND_SENSITIVITY, ge=0.0, le=1.0)
    overconfidence_penalty: float = Field(default=d.DEFAULT_OVERCONFIDENCE_PENALTY, gt=0.0, le=1.0)
    underconfidence_boost: float = Field(default=d.DEFAULT_UNDERCONFIDENCE_BOOST, ge=1.0, le=2.0)
    exploration_rate: float = Field(default=d.DEFAULT_EXPLORATION_RATE, ge=0.0, le=1.0)
    exploration_bonus: float = Field(default=d.DEFAULT_EXPLORATION_BONUS, ge=0.0, le=1.0)
    exploration_ceiling: float = Field(default=d.DEFAULT_EXPLORATION_CEILING, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _validate_coefficients(self) -> WeightingConfig:
        total = self.historical_coef + self.recent_coef + self.context_coef + self.confidence_coef
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Blend coefficients must sum to 1.0, got {total:.6f}")
        return self


class DriftConfig(BaseModel, frozen=True):
    """Drift test battery and classification thresholds."""

    alpha: float = Field(default=d.DEFAULT_DRIFT_ALPHA, gt=0.0, lt=0.5)
    min_samples: int = Field(default=d.DEFAULT_DRIFT_MIN_SAMPLES, ge=2)
    recent_window: int = Field(default=d.DEFAULT_DRIFT_RECENT_WINDOW, ge=2)
    baseline_window: int = Field(default=d.DEFAULT_DRIFT_BASELINE_WINDOW, ge=2)
    ph_delta: float = Field(default=d.DEFAULT_PH_DELTA, ge=0.0)
    ph_lambda: float = Field(default=d.DEFAULT_PH_LAMBDA, gt=0.0)
    recurring_variance: float = Field(default=d.DEFAULT_RECURRING_VARIANCE, gt=0.0)
    trend_epsilon: float = Field(default=d.DEFAULT_TREND_EPSILON, gt=0.0)
    periodicity_threshold: float = Field(default=d.DEFAULT_PERIODICITY_THRESHOLD, gt=0.0, le=1.0)
    history_size: int = Field(default=d.DEFAULT_DRIFT_HISTORY, ge=1)

    @model_validator(mode="after")
    def _validate_windows(self) -> DriftConfig:
        if self.min_samples > min(self.recent_window, self.baseline_window):
            raise ValueError(
                f"min_samples ({self.min_samples}) exceeds a comparison window "
                f"(recent={self.recent_window}, baseline={self.baseline_window})"
            )
        return self


class DiversityConfig(BaseModel, frozen=True):
    diversity_threshold: float = Field(default=d.DEFAULT_DIVERSITY_THRESHOLD, ge=0.0, le=1.0)
    max_correlation: float = Field(default=d.DEFAULT_MAX_CORRELATION, gt=0.0, le=1.0)
    min_ensemble_size: int = Field(default=d.DEFAULT_MIN_ENSEMBLE_SIZE, ge=2)
    value_tolerance: int = Field(default=d.VALUE_TOLERANCE, ge=0)
    confidence_gap: float = Field(default=d.DEFAULT_CONFIDENCE_GAP, ge=0.0, le=1.0)
    correlation_history: int = Field(default=d.DEFAULT_CORRELATION_HISTORY, ge=1)


class VotingConfig(BaseModel, frozen=True):
    tie_epsilon: float = Field(default=d.DEFAULT_TIE_EPSILON, ge=0.0)
    tie_penalty: float = Field(default=d.DEFAULT_TIE_PENALTY, gt=0.0, lt=1.0)
    stability_window: int = Field(default=d.DEFAULT_STABILITY_WINDOW, ge=1)
    history_size: int = Field(default=d.DEFAULT_VOTING_HISTORY, ge=1)
    category_history: int = Field(default=d.DEFAULT_CATEGORY_HISTORY, ge=1)
    value_tolerance: int = Field(default=d.VALUE_TOLERANCE, ge=0)


class FusionConfig(BaseModel, frozen=True):
    prior_mean: float = Field(default=d.DEFAULT_PRIOR_MEAN, gt=0.0, lt=1.0)
    prior_variance: float = Field(default=d.DEFAULT_PRIOR_VARIANCE, gt=0.0)
    evidence_strength: float = Field(default=d.DEFAULT_EVIDENCE_STRENGTH, gt=0.0)
    kernel_bandwidth: float = Field(default=d.DEFAULT_KERNEL_BANDWIDTH, gt=0.0)
    uncertainty_threshold: float = Field(default=d.DEFAULT_UNCERTAINTY_THRESHOLD, gt=0.0)
    uncertainty_shrink: float = Field(default=d.DEFAULT_UNCERTAINTY_SHRINK, gt=0.0, le=1.0)
    max_weight: float = Field(default=d.DEFAULT_MAX_FUSED_WEIGHT, gt=0.0, le=1.0)
    min_weight: float = Field(default=d.DEFAULT_MIN_FUSED_WEIGHT, gt=0.0, le=1.0)
    history_size: int = Field(default=d.DEFAULT_WEIGHT_HISTORY, ge=3)


class PredictorOverride(BaseModel, frozen=True):
    """Per-predictor switches and weight band."""

    enabled: bool = True
    min_weight: float = Field(default=0.0, ge=0.0, le=1.0)
    max_weight: float = Field(default=1.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _validate_band(self) -> PredictorOverride:
        if self.min_weight > self.max_weight:
            raise ValueError(
                f"min_weight ({self.min_weight}) must be <= max_weight ({self.max_weight})"
            )
        return self


class OrchestratorConfig(BaseModel, frozen=True):
    drift_detection_enabled: bool = True
    diversity_pruning_enabled: bool = True
    bayesian_fusion_enabled: bool = True
    calibrate_inputs: bool = False
    calibration_method: Literal["temperature", "isotonic"] = d.DEFAULT_CALIBRATION_METHOD  # type: ignore[assignment]
    low_weight_trigger: float = Field(default=d.DEFAULT_LOW_WEIGHT_TRIGGER, ge=0.0, le=1.0)
    drift_min_outcomes: int = Field(default=d.DEFAULT_DRIFT_MIN_OUTCOMES, ge=1)
    history_size: int = Field(default=d.DEFAULT_PREDICTION_HISTORY, ge=1)
    outcome_match_tolerance_seconds: float = Field(default=d.DEFAULT_OUTCOME_TOLERANCE_SECONDS, ge=0.0)
    confidence_floor: float = Field(default=d.DEFAULT_CONFIDENCE_FLOOR, ge=0.0, le=1.0)
    total_weight_floor: float = Field(default=d.DEFAULT_TOTAL_WEIGHT_FLOOR, ge=0.0)
    consensus_threshold: float = Field(default=d.DEFAULT_CONSENSUS_THRESHOLD, ge=0.0, le=1.0)
    persistence_timeout_seconds: float = Field(default=d.DEFAULT_PERSISTENCE_TIMEOUT_SECONDS, gt=0.0)
    persistence_max_pending: int = Field(default=d.DEFAULT_PERSISTENCE_MAX_PENDING, ge=1)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class EnsembleConfig(BaseModel, frozen=True):
    """Full ensemble configuration."""

    version: str = "1.0"
    weighting: WeightingConfig = Field(default_factory=WeightingConfig)
    drift: DriftConfig = Field(default_factory=DriftConfig)
    diversity: DiversityConfig = Field(default_factory=DiversityConfig)
    voting: VotingConfig = Field(default_factory=VotingConfig)
    fusion: FusionConfig = Field(default_factory=FusionConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    predictors: dict[str, PredictorOverride] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_drift_gate(self) -> EnsembleConfig:
        # detect() needs a full recent window plus min_samples of baseline.
        needed = self.drift.recent_window + self.drift.min_samples
        if self.orchestrator.drift_min_outcomes < needed:
            raise ValueError(
                f"drift_min_outcomes ({self.orchestrator.drift_min_outcomes}) is below "
                f"recent_window + min_samples ({needed})"
            )
        return self

    def override_for(self, predictor_id: str) -> PredictorOverride:
        """Return the override for *predictor_id*, or the permissive default."""
        return self.predictors.get(predictor_id, _DEFAULT_OVERRIDE)


_DEFAULT_OVERRIDE = PredictorOverride()


# ---------------------------------------------------------------------------
# I/O
# ---------------------------------------------------------------------------


def load_config(path: Path) -> EnsembleConfig:
    """Load and validate an ensemble config from YAML or JSON.

    Args:
        path: ``.yaml``/``.yml`` or ``.json`` file.

    Returns:
        Validated ``EnsembleConfig``.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError / ValidationError: If the suffix is unsupported or the
            content is invalid.
    """
    suffix = path.suffix.lower()
    text = path.read_text("utf-8")
    if suffix in (".yaml", ".yml"):
        raw = yaml.safe_load(text)
    elif suffix == ".json":
        raw = json.loads(text)
    else:
        raise ValueError(f"Unsupported config format {suffix!r}; use .yaml, .yml or .json")

    if raw is None:
        raw = {}
    if isinstance(raw, dict) and "version" in raw:
        raw["version"] = str(raw["version"])
    config = EnsembleConfig.model_validate(raw)
    logger.debug("Loaded ensemble config from %s", path)
    return config


def save_config(config: EnsembleConfig, path: Path) -> Path:
    """Serialize a config to YAML (or JSON when *path* ends in ``.json``).

    Returns:
        The *path* that was written.
    """
    data = config.model_dump(mode="json")
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(data, indent=2) + "\n", "utf-8")
    else:
        path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False), "utf-8")
    return path
