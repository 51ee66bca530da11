"""Tests for fuseclf.ensemble.replay: offline replay of recorded rounds."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from fuseclf.core.config import EnsembleConfig, WeightingConfig
from fuseclf.ensemble.orchestrator import EnsembleOrchestrator
from fuseclf.ensemble.replay import (
    ROUND_COLUMNS,
    ReplaySummary,
    read_rounds_jsonl,
    replay_rounds,
    write_replay_outputs,
)


def _round(minute: int, *, actual: bool = True, predictions: list | None = None) -> dict[str, Any]:
    rnd: dict[str, Any] = {
        "predictions": predictions if predictions is not None else [
            {"id": "good", "category": "mathematical", "label": "black", "value": 7, "confidence": 0.8},
            {"id": "bad", "category": "mathematical", "label": "red", "value": 2, "confidence": 0.8},
        ],
        "context": {"timestamp": f"2025-06-15T10:{minute:02d}:00+00:00", "hour_of_day": 10},
    }
    if actual:
        rnd["actual"] = {"label": "black", "value": 7}
    return rnd


@pytest.fixture()
def rounds() -> list[dict[str, Any]]:
    """Six graded rounds, one empty round and one ungraded round."""
    return [_round(i) for i in range(6)] + [_round(6, predictions=[]), _round(7, actual=False)]


@pytest.fixture()
def orchestrator() -> EnsembleOrchestrator:
    return EnsembleOrchestrator(EnsembleConfig(weighting=WeightingConfig(exploration_rate=0.0)))


# ---------------------------------------------------------------------------
# replay_rounds
# ---------------------------------------------------------------------------


class TestReplayRounds:
    def test_rounds_frame(self, rounds: list[dict[str, Any]], orchestrator: EnsembleOrchestrator) -> None:
        df, _, _ = replay_rounds(rounds, orchestrator)
        orchestrator.close()
        assert list(df.columns) == ROUND_COLUMNS
        assert len(df) == 8
        assert df["round"].tolist() == list(range(8))
        assert not bool(df.loc[6, "success"])
        assert pd.isna(df.loc[6, "label"])
        assert pd.isna(df.loc[7, "actual_label"])
        assert bool(df.loc[5, "label_correct"])

    def test_summary(self, rounds: list[dict[str, Any]], orchestrator: EnsembleOrchestrator) -> None:
        _, summary, _ = replay_rounds(rounds, orchestrator)
        orchestrator.close()
        assert isinstance(summary, ReplaySummary)
        assert summary.rounds == 8
        assert summary.successful == 7
        assert summary.graded == 6
        assert summary.label_accuracy >= 0.5
        assert summary.label_names == ["red", "black", "white"]
        assert sum(sum(row) for row in summary.confusion_matrix) == 6
        assert summary.lenient_matches == 0
        assert 0.0 < summary.mean_confidence <= 1.0
        assert summary.calibration.n_samples == 6
        assert 0.0 <= summary.calibration.expected_calibration_error <= 1.0

    def test_learning_carries_across_rounds(
        self, rounds: list[dict[str, Any]], orchestrator: EnsembleOrchestrator,
    ) -> None:
        replay_rounds(rounds, orchestrator)
        orchestrator.close()
        assert orchestrator.metrics.graded_predictions == 6
        good = orchestrator.store.get("good")
        bad = orchestrator.store.get("bad")
        assert good is not None and bad is not None
        assert (good.total, good.correct) == (6, 6)
        assert (bad.total, bad.correct) == (6, 0)

    def test_predictor_table(self, rounds: list[dict[str, Any]], orchestrator: EnsembleOrchestrator) -> None:
        _, _, predictors = replay_rounds(rounds, orchestrator)
        orchestrator.close()
        assert predictors.index.tolist() == ["good", "bad"]
        assert predictors.loc["good", "n"] == 6
        assert predictors.loc["good", "accuracy"] == 1.0
        assert predictors.loc["bad", "accuracy"] == 0.0

    def test_no_graded_rounds(self, orchestrator: EnsembleOrchestrator) -> None:
        df, summary, predictors = replay_rounds([_round(0, actual=False)], orchestrator)
        orchestrator.close()
        assert summary.graded == 0
        assert summary.label_accuracy == 0.0
        assert summary.value_accuracy == 0.0
        assert predictors.empty


# ---------------------------------------------------------------------------
# I/O
# ---------------------------------------------------------------------------


class TestReplayIO:
    def test_write_outputs(
        self, tmp_path: Path, rounds: list[dict[str, Any]], orchestrator: EnsembleOrchestrator,
    ) -> None:
        df, summary, predictors = replay_rounds(rounds, orchestrator)
        orchestrator.close()
        paths = write_replay_outputs(df, summary, predictors, tmp_path / "out")

        assert set(paths) == {"rounds", "summary", "predictors"}
        assert all(p.exists() for p in paths.values())
        assert len(pd.read_csv(paths["rounds"])) == 8
        data = json.loads(paths["summary"].read_text("utf-8"))
        assert data["graded"] == 6
        table = pd.read_csv(paths["predictors"])
        assert set(table["predictor_id"]) == {"good", "bad"}

    def test_read_rounds_jsonl(self, tmp_path: Path, rounds: list[dict[str, Any]]) -> None:
        path = tmp_path / "rounds.jsonl"
        path.write_text("\n".join(json.dumps(r) for r in rounds[:3]) + "\n\n", "utf-8")
        assert list(read_rounds_jsonl(path)) == rounds[:3]

    def test_read_rounds_jsonl_bad_line(self, tmp_path: Path) -> None:
        path = tmp_path / "rounds.jsonl"
        path.write_text('{"predictions": []}\n\n{not json\n', "utf-8")
        with pytest.raises(ValueError, match=r"rounds\.jsonl:3"):
            list(read_rounds_jsonl(path))
