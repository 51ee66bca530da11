"""End-to-end CLI tests for fuseclf commands.

Tests invoke the Typer CLI via CliRunner in temp directories and verify
exit codes, printed output and written artifacts.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from fuseclf.cli.main import app

runner = CliRunner()


def _predictions() -> list[dict]:
    return [
        {"id": "m1", "category": "mathematical", "label": "black", "value": 7, "confidence": 0.8},
        {"id": "m2", "category": "mathematical", "label": "black", "value": 7, "confidence": 0.7},
        {"id": "l1", "category": "machine_learning", "label": "black", "value": 8, "confidence": 0.6},
    ]


@pytest.fixture()
def round_file(tmp_path: Path) -> Path:
    f = tmp_path / "round.json"
    f.write_text(json.dumps({
        "predictions": _predictions(),
        "context": {"timestamp": "2025-06-15T10:00:00+00:00", "trend": "bullish"},
    }))
    return f


@pytest.fixture()
def rounds_file(tmp_path: Path) -> Path:
    f = tmp_path / "rounds.jsonl"
    lines = [
        json.dumps({
            "predictions": _predictions(),
            "context": {"timestamp": f"2025-06-15T10:0{i}:00+00:00"},
            "actual": {"label": "black", "value": 7},
        })
        for i in range(3)
    ]
    f.write_text("\n".join(lines) + "\n")
    return f


# ---------------------------------------------------------------------------
# predict
# ---------------------------------------------------------------------------


class TestPredict:
    def test_success(self, round_file: Path) -> None:
        result = runner.invoke(app, ["predict", "--input", str(round_file)])
        assert result.exit_code == 0, result.output
        assert '"success": true' in result.output
        assert '"label": "black"' in result.output

    def test_missing_input(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["predict", "--input", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_no_usable_predictions(self, tmp_path: Path) -> None:
        f = tmp_path / "empty.json"
        f.write_text(json.dumps({"predictions": []}))
        result = runner.invoke(app, ["predict", "--input", str(f)])
        assert result.exit_code == 1
        assert '"success": false' in result.output

    def test_missing_config(self, round_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(app, [
            "predict", "--input", str(round_file), "--config", str(tmp_path / "missing.yaml"),
        ])
        assert result.exit_code == 1
        assert "Config not found" in result.output

    def test_with_state_from_replay(self, round_file: Path, rounds_file: Path, tmp_path: Path) -> None:
        out_dir = tmp_path / "replay"
        replay = runner.invoke(app, ["replay", "--input", str(rounds_file), "--out-dir", str(out_dir)])
        assert replay.exit_code == 0, replay.output
        result = runner.invoke(app, [
            "predict", "--input", str(round_file), "--state", str(out_dir / "state.json"),
        ])
        assert result.exit_code == 0, result.output


# ---------------------------------------------------------------------------
# replay
# ---------------------------------------------------------------------------


class TestReplay:
    def test_writes_artifacts(self, rounds_file: Path, tmp_path: Path) -> None:
        out_dir = tmp_path / "replay"
        result = runner.invoke(app, [
            "replay", "--input", str(rounds_file), "--out-dir", str(out_dir), "--seed", "7",
        ])
        assert result.exit_code == 0, result.output
        assert "Replayed 3 rounds (3 graded)" in result.output
        for name in ("replay_rounds.csv", "replay_summary.json", "replay_predictors.csv", "state.json"):
            assert (out_dir / name).exists(), name
        summary = json.loads((out_dir / "replay_summary.json").read_text())
        assert summary["rounds"] == 3
        state = json.loads((out_dir / "state.json").read_text())
        assert "records" in state

    def test_default_out_dir(self, rounds_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(app, ["replay", "--input", str(rounds_file)])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "artifacts" / "replay_summary.json").exists()

    def test_missing_input(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["replay", "--input", str(tmp_path / "nope.jsonl")])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# drift
# ---------------------------------------------------------------------------


class TestDrift:
    def test_no_drift(self, tmp_path: Path) -> None:
        f = tmp_path / "windows.json"
        f.write_text(json.dumps({"baseline": [1, 0] * 15, "recent": [1, 0] * 15}))
        result = runner.invoke(app, ["drift", "--input", str(f)])
        assert result.exit_code == 0, result.output
        assert "no drift" in result.output

    def test_collapse(self, tmp_path: Path) -> None:
        f = tmp_path / "windows.json"
        f.write_text(json.dumps({"baseline": [1.0] * 30, "recent": [0.0] * 30}))
        result = runner.invoke(app, ["drift", "--input", str(f), "--predictor-id", "m7"])
        assert result.exit_code == 0, result.output
        assert '"predictor_id": "m7"' in result.output
        assert '"recommended_action": "temporary_disable"' in result.output


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


class TestConfig:
    def test_init_and_show(self, tmp_path: Path) -> None:
        path = tmp_path / "configs" / "ensemble.yaml"
        result = runner.invoke(app, ["config", "init", "--out", str(path)])
        assert result.exit_code == 0, result.output
        assert "Wrote default config to" in result.output
        data = yaml.safe_load(path.read_text())
        assert data["weighting"]["recent_coef"] == 0.4

        shown = runner.invoke(app, ["config", "show", "--config", str(path)])
        assert shown.exit_code == 0, shown.output
        assert "orchestrator:" in shown.output

    def test_init_refuses_overwrite(self, tmp_path: Path) -> None:
        path = tmp_path / "ensemble.yaml"
        path.write_text("version: '1.0'\n")
        result = runner.invoke(app, ["config", "init", "--out", str(path)])
        assert result.exit_code == 1
        assert "already exists" in result.output
        assert path.read_text() == "version: '1.0'\n"

        forced = runner.invoke(app, ["config", "init", "--out", str(path), "--force"])
        assert forced.exit_code == 0, forced.output
        assert "weighting:" in path.read_text()

    def test_show_defaults(self) -> None:
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0, result.output
        assert "drift_detection_enabled: true" in result.output
