"""Typer CLI entrypoint and command definitions for fuseclf."""

import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer()


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Root log level (DEBUG, INFO, WARNING, ...)"),
) -> None:
    """Ensemble prediction fusion."""
    from fuseclf.core.logging import configure_logging

    configure_logging(log_level)


def _load_config_or_exit(config: Optional[str]):
    from fuseclf.core.config import EnsembleConfig, load_config

    if config is None:
        return EnsembleConfig()
    path = Path(config)
    if not path.exists():
        typer.echo(f"Config not found: {path}", err=True)
        raise typer.Exit(code=1)
    return load_config(path)


# -- predict ------------------------------------------------------------------


@app.command("predict")
def predict_cmd(
    input: str = typer.Option(..., "--input", help="Round JSON: {\"predictions\": [...], \"context\": {...}}"),
    config: Optional[str] = typer.Option(None, "--config", help="Ensemble config (.yaml/.yml/.json)"),
    state: Optional[str] = typer.Option(None, "--state", help="Predictor state JSON written by 'replay'"),
) -> None:
    """Fuse one round of predictor outputs and print the result as JSON."""
    from fuseclf.core.types import PredictionContext
    from fuseclf.ensemble.orchestrator import EnsembleOrchestrator
    from fuseclf.ensemble.state import PredictorStateStore

    input_path = Path(input)
    if not input_path.exists():
        typer.echo(f"File not found: {input_path}", err=True)
        raise typer.Exit(code=1)

    cfg = _load_config_or_exit(config)
    store = PredictorStateStore.load(Path(state)) if state else None
    payload = json.loads(input_path.read_text("utf-8"))

    orchestrator = EnsembleOrchestrator(cfg, store=store)
    try:
        context = PredictionContext.model_validate(payload.get("context") or {})
        result = orchestrator.generate_prediction(payload.get("predictions") or [], context)
    finally:
        orchestrator.close()

    typer.echo(result.model_dump_json(indent=2))
    if not result.success:
        raise typer.Exit(code=1)


# -- replay -------------------------------------------------------------------


@app.command("replay")
def replay_cmd(
    input: str = typer.Option(..., "--input", help="JSONL file, one recorded round per line"),
    out_dir: str = typer.Option("artifacts", "--out-dir", help="Output directory"),
    config: Optional[str] = typer.Option(None, "--config", help="Ensemble config (.yaml/.yml/.json)"),
    seed: int = typer.Option(0, "--seed", help="Seed for the exploration bonus"),
) -> None:
    """Replay recorded rounds, learning from each outcome, and write a report."""
    import numpy as np

    from fuseclf.ensemble.orchestrator import EnsembleOrchestrator
    from fuseclf.ensemble.replay import read_rounds_jsonl, replay_rounds, write_replay_outputs

    input_path = Path(input)
    if not input_path.exists():
        typer.echo(f"File not found: {input_path}", err=True)
        raise typer.Exit(code=1)

    cfg = _load_config_or_exit(config)
    orchestrator = EnsembleOrchestrator(cfg, rng=np.random.default_rng(seed))
    try:
        df, summary, predictors = replay_rounds(read_rounds_jsonl(input_path), orchestrator)
    finally:
        orchestrator.close()

    out = Path(out_dir)
    paths = write_replay_outputs(df, summary, predictors, out)
    state_path = orchestrator.store.save(out / "state.json")

    typer.echo(f"Replayed {summary.rounds} rounds ({summary.graded} graded)")
    typer.echo(f"Label accuracy: {summary.label_accuracy}  Macro F1: {summary.macro_f1}")
    typer.echo(f"Rounds written to {paths['rounds']}")
    typer.echo(f"Summary written to {paths['summary']}")
    typer.echo(f"State written to {state_path}")


# -- drift --------------------------------------------------------------------


@app.command("drift")
def drift_cmd(
    input: str = typer.Option(..., "--input", help="JSON with 'baseline' and 'recent' outcome lists"),
    predictor_id: str = typer.Option("predictor", "--predictor-id", help="Predictor id to report"),
    config: Optional[str] = typer.Option(None, "--config", help="Ensemble config (.yaml/.yml/.json)"),
) -> None:
    """Run the drift test battery on two outcome windows."""
    from fuseclf.ensemble.drift import DriftDetector

    input_path = Path(input)
    if not input_path.exists():
        typer.echo(f"File not found: {input_path}", err=True)
        raise typer.Exit(code=1)

    cfg = _load_config_or_exit(config)
    windows = json.loads(input_path.read_text("utf-8"))
    detector = DriftDetector(cfg.drift)
    signal = detector.detect(predictor_id, windows.get("recent", []), windows.get("baseline", []))
    if signal is None:
        typer.echo("no drift")
        return
    typer.echo(signal.model_dump_json(indent=2))


# -- config -------------------------------------------------------------------
config_app = typer.Typer()
app.add_typer(config_app, name="config")


@config_app.command("init")
def config_init_cmd(
    out: str = typer.Option("configs/ensemble.yaml", "--out", help="Destination (.yaml/.yml/.json)"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write the default ensemble config."""
    from fuseclf.core.config import EnsembleConfig, save_config

    path = Path(out)
    if path.exists() and not force:
        typer.echo(f"{path} already exists (use --force to overwrite)", err=True)
        raise typer.Exit(code=1)
    save_config(EnsembleConfig(), path)
    typer.echo(f"Wrote default config to {path}")


@config_app.command("show")
def config_show_cmd(
    config: Optional[str] = typer.Option(None, "--config", help="Ensemble config (.yaml/.yml/.json)"),
) -> None:
    """Print the effective config as YAML."""
    import yaml

    cfg = _load_config_or_exit(config)
    typer.echo(yaml.dump(cfg.model_dump(mode="json"), default_flow_style=False, sort_keys=False))


if __name__ == "__main__":
    app()
