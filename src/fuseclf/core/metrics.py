"""Evaluation metrics: calibration error, label macro-F1 and per-predictor summaries."""

from __future__ import annotations

from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from pydantic import BaseModel
from sklearn.metrics import confusion_matrix, f1_score

from fuseclf.core.defaults import DEFAULT_CALIBRATION_BINS


class CalibrationMetrics(BaseModel):
    """Calibration quality of stated confidences against observed correctness."""

    expected_calibration_error: float
    maximum_calibration_error: float
    average_confidence: float
    average_accuracy: float
    n_samples: int


def _bin_stats(
    confidences: np.ndarray,
    correct: np.ndarray,
    n_bins: int,
) -> list[tuple[int, float, float]]:
    """Return ``(count, mean_confidence, accuracy)`` for every non-empty bin.

    Bins are uniform over ``[0, 1]``; a confidence of exactly 1.0 falls in
    the last bin.
    """
    edges = np.linspace(0.0, 1.0, n_bins + 1)
    ids = np.clip(np.searchsorted(edges[1:-1], confidences, side="right"), 0, n_bins - 1)
    stats: list[tuple[int, float, float]] = []
    for b in range(n_bins):
        mask = ids == b
        count = int(mask.sum())
        if count == 0:
            continue
        stats.append((count, float(confidences[mask].mean()), float(correct[mask].mean())))
    return stats


def expected_calibration_error(
    confidences: Sequence[float] | np.ndarray,
    correct: Sequence[bool] | np.ndarray,
    n_bins: int = DEFAULT_CALIBRATION_BINS,
) -> float:
    """Expected Calibration Error: count-weighted mean of per-bin ``|accuracy - confidence|``.

    Args:
        confidences: Stated confidences in ``[0, 1]``.
        correct: Whether each prediction turned out correct.
        n_bins: Number of uniform confidence bins.

    Returns:
        ECE in ``[0, 1]``; 0.0 for empty input.
    """
    conf = np.clip(np.asarray(confidences, dtype=np.float64), 0.0, 1.0)
    hits = np.asarray(correct, dtype=np.float64)
    if len(conf) == 0:
        return 0.0
    if len(conf) != len(hits):
        raise ValueError(
            f"confidences and correct must have the same length, got {len(conf)} and {len(hits)}"
        )
    total = len(conf)
    return float(
        sum(count * abs(acc - mean_conf) for count, mean_conf, acc in _bin_stats(conf, hits, n_bins))
        / total
    )


def calibration_metrics(
    confidences: Sequence[float] | np.ndarray,
    correct: Sequence[bool] | np.ndarray,
    n_bins: int = DEFAULT_CALIBRATION_BINS,
) -> CalibrationMetrics:
    """ECE, maximum calibration error, and mean confidence/accuracy."""
    conf = np.clip(np.asarray(confidences, dtype=np.float64), 0.0, 1.0)
    hits = np.asarray(correct, dtype=np.float64)
    if len(conf) != len(hits):
        raise ValueError("confidences and correct must have the same length")
    if len(conf) == 0:
        return CalibrationMetrics(
            expected_calibration_error=0.0,
            maximum_calibration_error=0.0,
            average_confidence=0.0,
            average_accuracy=0.0,
            n_samples=0,
        )
    bins = _bin_stats(conf, hits, n_bins)
    return CalibrationMetrics(
        expected_calibration_error=round(expected_calibration_error(conf, hits, n_bins), 6),
        maximum_calibration_error=round(max(abs(acc - mc) for _, mc, acc in bins), 6),
        average_confidence=round(float(conf.mean()), 6),
        average_accuracy=round(float(hits.mean()), 6),
        n_samples=len(conf),
    )


def compute_metrics(
    y_true: Sequence[str],
    y_pred: Sequence[str],
    label_names: Sequence[str],
) -> dict:
    """Return accuracy, macro-F1 and a nested confusion matrix for label predictions.

    Args:
        y_true: Actual labels.
        y_pred: Ensemble labels.
        label_names: Ordered label vocabulary (defines row/column order
            of the matrix).

    Returns:
        Dict with keys ``accuracy``, ``macro_f1`` (floats),
        ``confusion_matrix`` (list of lists), and ``label_names``.
    """
    labels_list = list(label_names)
    if len(y_true) == 0:
        return {
            "accuracy": 0.0,
            "macro_f1": 0.0,
            "confusion_matrix": [[0] * len(labels_list) for _ in labels_list],
            "label_names": labels_list,
        }
    macro_f1 = float(
        f1_score(y_true, y_pred, labels=labels_list, average="macro", zero_division=0)
    )
    cm: np.ndarray = confusion_matrix(y_true, y_pred, labels=labels_list)
    accuracy = float(np.mean([t == p for t, p in zip(y_true, y_pred)]))
    return {
        "accuracy": round(accuracy, 4),
        "macro_f1": round(macro_f1, 4),
        "confusion_matrix": cm.tolist(),
        "label_names": labels_list,
    }


def predictor_summary_df(outcomes: Mapping[str, Sequence[bool]]) -> pd.DataFrame:
    """Per-predictor graded-outcome summary suitable for CSV export.

    Args:
        outcomes: Predictor id mapped to its sequence of correctness flags.

    Returns:
        DataFrame indexed by predictor id with ``n``, ``correct`` and
        ``accuracy`` columns, sorted by accuracy descending.
    """
    rows = [
        {
            "predictor_id": pid,
            "n": len(flags),
            "correct": int(sum(bool(f) for f in flags)),
            "accuracy": round(float(np.mean(flags)), 4) if len(flags) else 0.0,
        }
        for pid, flags in outcomes.items()
    ]
    df = pd.DataFrame(rows, columns=["predictor_id", "n", "correct", "accuracy"])
    return df.sort_values(["accuracy", "predictor_id"], ascending=[False, True]).set_index(
        "predictor_id"
    )
