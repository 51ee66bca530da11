"""Offline replay of recorded rounds through an orchestrator.

A round is a mapping::

    {
        "predictions": [{"id": ..., "category": ..., "label": ..., ...}, ...],
        "context": {"timestamp": "...", "trend": "bullish", ...},   # optional
        "actual": {"label": "red", "value": 3}                       # optional
    }

Each round is predicted and, when ``actual`` is present, graded right
away, so later rounds see the learned weights.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

import pandas as pd
from pydantic import BaseModel

from fuseclf.core.metrics import CalibrationMetrics, calibration_metrics, compute_metrics, predictor_summary_df
from fuseclf.core.types import Label, PredictionContext, clamp_value
from fuseclf.ensemble.orchestrator import EnsembleOrchestrator

logger = logging.getLogger(__name__)

ROUND_COLUMNS = [
    "round",
    "success",
    "prediction_id",
    "label",
    "value",
    "confidence",
    "consensus_strength",
    "stability",
    "uncertainty",
    "actual_label",
    "actual_value",
    "label_correct",
    "value_correct",
    "drift_detected",
    "pruned",
    "failed",
]


class ReplaySummary(BaseModel):
    rounds: int
    successful: int
    graded: int
    label_accuracy: float
    value_accuracy: float
    macro_f1: float
    confusion_matrix: list[list[int]]
    label_names: list[str]
    mean_confidence: float
    calibration: CalibrationMetrics
    drift_rounds: int
    lenient_matches: int


def read_rounds_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield rounds from a JSONL file, skipping blank lines."""
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{lineno}: invalid JSON ({exc.msg})") from exc


def replay_rounds(
    rounds: Iterable[Mapping[str, Any]],
    orchestrator: EnsembleOrchestrator,
) -> tuple[pd.DataFrame, ReplaySummary, pd.DataFrame]:
    """Drive *orchestrator* through *rounds*.

    Returns:
        ``(rounds_df, summary, predictors_df)``: one row per round (see
        :data:`ROUND_COLUMNS`), aggregate metrics with macro-F1 over
        graded rounds, and a per-predictor label-accuracy table.
    """
    rows: list[dict[str, Any]] = []
    predictor_flags: dict[str, list[bool]] = {}

    for i, rnd in enumerate(rounds):
        context = PredictionContext.model_validate(rnd.get("context") or {})
        result = orchestrator.generate_prediction(rnd.get("predictions") or [], context)
        row: dict[str, Any] = {col: None for col in ROUND_COLUMNS}
        row.update(round=i, success=result.success, failed=result.diagnostics.failed)

        pred = result.prediction
        if pred is not None:
            row.update(
                prediction_id=pred.prediction_id,
                label=str(pred.label),
                value=pred.value,
                confidence=round(pred.confidence, 4),
                consensus_strength=round(pred.consensus_strength, 4),
                stability=round(pred.stability, 4),
                uncertainty=round(pred.uncertainty, 4),
                drift_detected=result.diagnostics.drift_detected,
                pruned=len(result.diagnostics.pruned),
            )

        actual = rnd.get("actual")
        if pred is not None and actual:
            actual_label = Label(actual["label"])
            actual_value = clamp_value(actual["value"])
            orchestrator.update_with_outcome(pred.prediction_id, actual_label, actual_value)
            row.update(
                actual_label=str(actual_label),
                actual_value=actual_value,
                label_correct=pred.label == actual_label,
                value_correct=pred.value == actual_value,
            )
            for c in pred.contributions:
                predictor_flags.setdefault(c.predictor_id, []).append(c.label == actual_label)
        rows.append(row)

    df = pd.DataFrame(rows, columns=ROUND_COLUMNS)
    graded = df[df["actual_label"].notna()]
    label_names = [str(label) for label in Label]
    scores = compute_metrics(
        graded["actual_label"].tolist(), graded["label"].tolist(), label_names
    )
    successful = df[df["success"].astype(bool)]
    summary = ReplaySummary(
        rounds=len(df),
        successful=len(successful),
        graded=len(graded),
        label_accuracy=scores["accuracy"],
        value_accuracy=round(float(graded["value_correct"].astype(bool).mean()), 4) if len(graded) else 0.0,
        macro_f1=scores["macro_f1"],
        confusion_matrix=scores["confusion_matrix"],
        label_names=scores["label_names"],
        mean_confidence=round(float(successful["confidence"].astype(float).mean()), 4) if len(successful) else 0.0,
        calibration=calibration_metrics(
            graded["confidence"].astype(float).tolist(), graded["label_correct"].astype(bool).tolist()
        ),
        drift_rounds=int(successful["drift_detected"].astype(bool).sum()),
        lenient_matches=orchestrator.metrics.lenient_matches,
    )
    logger.info(
        "Replayed %d rounds (%d graded): accuracy=%.3f macro_f1=%.3f",
        summary.rounds, summary.graded, summary.label_accuracy, summary.macro_f1,
    )
    return df, summary, predictor_summary_df(predictor_flags)


def write_replay_outputs(
    df: pd.DataFrame,
    summary: ReplaySummary,
    predictors: pd.DataFrame,
    out_dir: Path,
) -> dict[str, Path]:
    """Write ``replay_rounds.csv``, ``replay_summary.json`` and ``replay_predictors.csv``."""
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = {
        "rounds": out_dir / "replay_rounds.csv",
        "summary": out_dir / "replay_summary.json",
        "predictors": out_dir / "replay_predictors.csv",
    }
    df.to_csv(paths["rounds"], index=False)
    paths["summary"].write_text(json.dumps(summary.model_dump(mode="json"), indent=2), "utf-8")
    predictors.to_csv(paths["predictors"])
    return paths
