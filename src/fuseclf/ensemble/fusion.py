"""Bayesian smoothing and uncertainty quantification of dynamic weights.

For every predictor :class:`BayesianWeightFusion` keeps a Beta-like prior
(mean, variance, observation count, evidence strength) and a bounded
history of its own fused weights.  One :meth:`BayesianWeightFusion.fuse`
cycle:

1. likelihood: Beta PDF of the recent accuracy under a Beta centred on the
   historical accuracy, discounted by ``exp(-5 * |historical - recent|)``;
2. evidence: ``likelihood * evidence_strength / marginal`` with a
   Laplace-approximated marginal, clipped to ``[0.01, 10]``; the prior is
   then updated;
3. mean-field variational update of prior and dynamic weight;
4. RBF-kernel smoothing over the predictor's recent fused weights;
5. conservative shrink when the posterior standard error is too wide;
6. normalization that keeps the ordering, caps at 0.8 and floors at 0.01.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Mapping

import numpy as np
from pydantic import BaseModel

from fuseclf.core.config import FusionConfig
from fuseclf.core.defaults import (
    DEFAULT_EVIDENCE_DECAY,
    DEFAULT_INCONSISTENCY_PENALTY,
    DEFAULT_KERNEL_HISTORY,
    DEFAULT_KERNEL_INFLUENCE,
    DEFAULT_LEADER_PRESERVATION,
    DEFAULT_MAX_EVIDENCE_STRENGTH,
    DEFAULT_MAX_NORMALIZATION,
    DEFAULT_MIN_PRIOR_VARIANCE,
    DEFAULT_NEUTRAL_WEIGHT,
    DEFAULT_PRIOR_LEARNING_RATE,
)
from fuseclf.core.types import clamp
from fuseclf.ensemble.state import AccuracyRecord
from fuseclf.ensemble.weights import DynamicWeight

logger = logging.getLogger(__name__)

_MIN_EVIDENCE = 0.01
_MAX_EVIDENCE = 10.0
_Z95 = 1.96


@dataclass
class WeightPrior:
    """Mutable per-predictor prior."""

    predictor_id: str
    mean: float
    variance: float
    observations: int = 1
    evidence_strength: float = 2.0


class FusedWeight(BaseModel, frozen=True):
    """Outcome of fusing one predictor's dynamic weight."""

    predictor_id: str
    input_weight: float
    evidence: float
    posterior_weight: float
    smoothed_weight: float
    weight: float
    uncertainty: float
    interval: tuple[float, float]
    shrunk: bool = False


class FusionMetrics(BaseModel):
    total_weight: float
    entropy: float
    diversity_index: float
    coherence: float
    mean_uncertainty: float
    fusion_confidence: float


def likelihood(record: AccuracyRecord | None) -> float:
    """Beta-PDF likelihood of the recent accuracy given the historical one."""
    from scipy.stats import beta

    if record is None or record.total == 0:
        historical = recent = DEFAULT_NEUTRAL_WEIGHT
    else:
        historical = record.accuracy_rate
        recent = record.recent_accuracy if record.recent else historical

    consistency = math.exp(-abs(historical - recent) * DEFAULT_INCONSISTENCY_PENALTY)
    a = historical * 10.0 + 1.0
    b = (1.0 - historical) * 10.0 + 1.0
    x = min(max(recent, 1e-3), 1.0 - 1e-3)
    return float(beta.pdf(x, a, b)) * consistency


def marginal_likelihood(lik: float, prior: WeightPrior) -> float:
    """Laplace approximation of the marginal likelihood."""
    spread = lik * math.sqrt(2.0 * math.pi * prior.variance)
    return spread * math.exp(-0.5 * (lik - prior.mean) ** 2 / prior.variance)


def rbf_smooth(history: list[float], current: float, *, bandwidth: float, influence: float) -> float:
    """Blend *current* with an RBF-weighted average of the newest *history* entries."""
    if len(history) < 3:
        return current
    n = len(history)
    recent = history[::-1][:DEFAULT_KERNEL_HISTORY]
    lags = np.arange(len(recent), dtype=np.float64) / n
    kernel = np.exp(-(lags**2) / (2.0 * bandwidth**2))
    smoothed = float(np.dot(recent, kernel) / kernel.sum())
    return influence * smoothed + (1.0 - influence) * current


class BayesianWeightFusion:
    """Per-predictor Bayesian smoothing of dynamic weights.

    Args:
        config: Fusion knobs.
    """

    def __init__(self, config: FusionConfig | None = None) -> None:
        self._config = config or FusionConfig()
        self._priors: dict[str, WeightPrior] = {}
        self._history: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> FusionConfig:
        return self._config

    def prior(self, predictor_id: str) -> WeightPrior:
        with self._lock:
            prior = self._priors.get(predictor_id)
            if prior is None:
                prior = WeightPrior(
                    predictor_id=predictor_id,
                    mean=self._config.prior_mean,
                    variance=self._config.prior_variance,
                    evidence_strength=self._config.evidence_strength,
                )
                self._priors[predictor_id] = prior
            return prior

    def weight_history(self, predictor_id: str) -> list[float]:
        with self._lock:
            return list(self._history.get(predictor_id, ()))

    def _update_prior(self, prior: WeightPrior, lik: float, evidence: float) -> None:
        lr = DEFAULT_PRIOR_LEARNING_RATE
        with self._lock:
            prior.mean = clamp(lr * clamp(lik) + (1.0 - lr) * prior.mean, 0.01, 0.99)
            prior.observations += 1
            prior.evidence_strength = min(
                DEFAULT_MAX_EVIDENCE_STRENGTH, prior.evidence_strength + evidence * 0.1
            )
            prior.variance = max(DEFAULT_MIN_PRIOR_VARIANCE, prior.variance * DEFAULT_EVIDENCE_DECAY)

    def _record(self, predictor_id: str, weight: float) -> None:
        with self._lock:
            self._history.setdefault(
                predictor_id, deque(maxlen=self._config.history_size)
            ).append(weight)

    def _fuse_one(self, weight: DynamicWeight, record: AccuracyRecord | None) -> FusedWeight:
        cfg = self._config
        pid = weight.predictor_id
        w = weight.final_weight
        prior = self.prior(pid)

        lik = likelihood(record)
        evidence = lik * prior.evidence_strength / (marginal_likelihood(lik, prior) + 1e-8)
        evidence = min(_MAX_EVIDENCE, max(_MIN_EVIDENCE, evidence))
        self._update_prior(prior, lik, evidence)

        precision = 1.0 / prior.variance + evidence
        mean = (prior.mean / prior.variance + w * evidence) / precision
        certainty = math.exp(-1.0 / math.sqrt(precision))
        posterior = clamp(mean * certainty + w * (1.0 - certainty), 0.01, 1.0)

        history = self.weight_history(pid)
        smoothed = rbf_smooth(
            history, posterior, bandwidth=cfg.kernel_bandwidth, influence=DEFAULT_KERNEL_INFLUENCE
        )

        historical_var = max(0.01, float(np.var(history, ddof=1))) if len(history) > 1 else 0.1
        total_var = 0.7 / (evidence + prior.evidence_strength) + 0.3 * historical_var
        std = math.sqrt(total_var)
        center = history[-1] if history else DEFAULT_NEUTRAL_WEIGHT
        interval = (max(0.0, center - _Z95 * std), min(1.0, center + _Z95 * std))

        shrunk = std > cfg.uncertainty_threshold
        fused = smoothed * (cfg.uncertainty_shrink if shrunk else 1.0)
        self._record(pid, fused)

        return FusedWeight(
            predictor_id=pid,
            input_weight=w,
            evidence=evidence,
            posterior_weight=posterior,
            smoothed_weight=smoothed,
            weight=clamp(fused, 0.01, 1.0),
            uncertainty=min(0.5, std),
            interval=interval,
            shrunk=shrunk,
        )

    def fuse(
        self,
        weights: Mapping[str, DynamicWeight],
        records: Mapping[str, AccuracyRecord | None],
    ) -> dict[str, FusedWeight]:
        """Fuse a set of dynamic weights.

        Args:
            weights: Predictor id mapped to its current dynamic weight.
            records: Predictor id mapped to its accuracy record (``None``
                or missing for predictors without graded outcomes).

        Returns:
            Predictor id mapped to :class:`FusedWeight`, in input order.
            Weights are rescaled by ``min(1.5, 1 / total)``, the largest is
            boosted by 10%, and all are clamped to ``[min_weight, max_weight]``.
        """
        cfg = self._config
        raw = {pid: self._fuse_one(w, records.get(pid)) for pid, w in weights.items()}
        if not raw:
            return {}

        total = sum(f.weight for f in raw.values())
        factor = min(DEFAULT_MAX_NORMALIZATION, 1.0 / total) if total > 0 else 1.0
        leader = max(f.weight for f in raw.values())

        fused: dict[str, FusedWeight] = {}
        for pid, f in raw.items():
            scaled = f.weight * factor
            if f.weight == leader:
                scaled *= DEFAULT_LEADER_PRESERVATION
            fused[pid] = f.model_copy(update={"weight": clamp(scaled, cfg.min_weight, cfg.max_weight)})
            logger.debug(
                "Fused %s: input=%.3f evidence=%.3f posterior=%.3f weight=%.3f%s",
                pid, f.input_weight, f.evidence, f.posterior_weight,
                fused[pid].weight, " (shrunk)" if f.shrunk else "",
            )
        return fused

    @staticmethod
    def fusion_metrics(fused: Mapping[str, FusedWeight]) -> FusionMetrics:
        """Concentration and coherence of a fused weight set."""
        if not fused:
            return FusionMetrics(
                total_weight=0.0,
                entropy=0.0,
                diversity_index=0.0,
                coherence=1.0,
                mean_uncertainty=0.0,
                fusion_confidence=1.0,
            )
        w = np.array([f.weight for f in fused.values()], dtype=np.float64)
        total = float(w.sum())
        p = w / total if total > 0 else np.full_like(w, 1.0 / len(w))
        nz = p[p > 0]
        entropy = float(-(nz * np.log2(nz)).sum())
        max_entropy = math.log2(len(w)) if len(w) > 1 else 0.0
        mean = float(w.mean())
        cv = float(w.std()) / mean if mean > 0 else 0.0
        return FusionMetrics(
            total_weight=total,
            entropy=entropy,
            diversity_index=float(1.0 - (p**2).sum()),
            coherence=clamp(1.0 - cv),
            mean_uncertainty=float(np.mean([f.uncertainty for f in fused.values()])),
            fusion_confidence=1.0 - entropy / max_entropy if max_entropy > 0 else 1.0,
        )
