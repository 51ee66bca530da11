"""Shared fixtures for the fuseclf test suite."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import numpy as np
import pytest

from fuseclf.core.types import Category, Label, PredictionContext, PredictorPrediction
from fuseclf.ensemble.state import PredictorStateStore


@pytest.fixture()
def fixed_time() -> datetime:
    return datetime(2025, 6, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture()
def context(fixed_time: datetime) -> PredictionContext:
    return PredictionContext.at(fixed_time)


@pytest.fixture()
def store() -> PredictorStateStore:
    return PredictorStateStore()


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


def make_prediction(
    pid: str,
    category: Category = Category.mathematical,
    label: Label = Label.black,
    value: int = 7,
    confidence: float = 0.8,
    **kwargs: Any,
) -> PredictorPrediction:
    """Build a :class:`PredictorPrediction` with sensible defaults."""
    return PredictorPrediction(
        id=pid, category=category, label=label, value=value, confidence=confidence, **kwargs,
    )


@pytest.fixture()
def unanimous_black() -> list[PredictorPrediction]:
    """Three mathematical and two machine-learning predictors in full agreement."""
    return [
        make_prediction("m1"),
        make_prediction("m2"),
        make_prediction("m3"),
        make_prediction("l1", Category.machine_learning),
        make_prediction("l2", Category.machine_learning),
    ]
