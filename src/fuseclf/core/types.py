"""Core data contracts: predictor categories, labels, predictions and context."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Final

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from fuseclf.core.defaults import VALUE_MAX, VALUE_MIN


class Category(StrEnum):
    """Predictor families.  Each carries its own constants in :data:`CATEGORY_PROFILES`."""

    mathematical = "mathematical"
    machine_learning = "machine_learning"
    advanced_scientific = "advanced_scientific"


class Label(StrEnum):
    """Categorical outcome predicted by every predictor."""

    red = "red"
    black = "black"
    white = "white"


class Trend(StrEnum):
    bullish = "bullish"
    bearish = "bearish"
    sideways = "sideways"
    volatile = "volatile"


class Volatility(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


LABEL_SET: Final[frozenset[str]] = frozenset(Label)


@dataclass(frozen=True)
class CategoryProfile:
    """Per-category constants.

    Attributes:
        decay_rate: Hourly multiplicative decay applied to a predictor's
            weight since its last graded outcome.
        representativeness_boost: Multiplier applied to a category's
            representativeness once it has at least ``boost_min_members``
            members in a single vote.
        boost_min_members: Member count that unlocks the boost.
    """

    decay_rate: float
    representativeness_boost: float = 1.0
    boost_min_members: int = 3


CATEGORY_PROFILES: Final[dict[Category, CategoryProfile]] = {
    Category.mathematical: CategoryProfile(decay_rate=0.99, representativeness_boost=1.2),
    Category.machine_learning: CategoryProfile(decay_rate=0.95, representativeness_boost=1.1),
    Category.advanced_scientific: CategoryProfile(decay_rate=0.90, representativeness_boost=1.0),
}


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    """Clamp *value* into ``[lo, hi]``; NaN collapses to *lo*."""
    if math.isnan(value):
        return lo
    return max(lo, min(hi, value))


def _as_float(v: Any, field: str) -> float:
    if isinstance(v, bool):
        raise ValueError(f"{field} must be numeric, got bool")
    try:
        return float(v)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be numeric, got {v!r}") from exc


def clamp_value(value: float) -> int:
    """Round and clamp a numeric prediction into the valid value domain."""
    return int(max(VALUE_MIN, min(VALUE_MAX, round(value))))


class PredictorPrediction(BaseModel, frozen=True):
    """One predictor's opinion for one inference.

    Upstream predictors are treated as untrusted: confidence is clamped
    into ``[0, 1]`` and value is rounded and clamped into the valid
    domain.  A NaN confidence is rejected.
    """

    id: str = Field(min_length=1, description="Stable predictor identifier.")
    category: Category
    label: Label
    value: int = Field(description=f"Numeric outcome in [{VALUE_MIN}, {VALUE_MAX}].")
    confidence: float = Field(description="Stated confidence in [0, 1].")
    rationale: list[str] = Field(default_factory=list)

    @field_validator("value", mode="before")
    @classmethod
    def _clamp_value(cls, v: Any) -> int:
        v = _as_float(v, "value")
        if not math.isfinite(v):
            raise ValueError("value must be finite")
        return clamp_value(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        v = _as_float(v, "confidence")
        if math.isnan(v):
            raise ValueError("confidence must not be NaN")
        return clamp(v)

    @field_validator("rationale", mode="before")
    @classmethod
    def _coerce_rationale(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v]


_DATETIME: Final[TypeAdapter[datetime]] = TypeAdapter(datetime)


class PredictionContext(BaseModel, frozen=True):
    """Situational metadata supplied by the caller per inference."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    hour_of_day: int = 0
    day_of_week: int = 0
    trend: Trend = Trend.sideways
    volatility: Volatility = Volatility.medium
    pattern_strength: float = 0.5
    pattern_consistency: float = 0.5
    anomaly_score: float = 0.0

    @field_validator("pattern_strength", "pattern_consistency", "anomaly_score", mode="before")
    @classmethod
    def _clamp_unit(cls, v: Any) -> float:
        return clamp(_as_float(v, "context score"))

    @field_validator("hour_of_day", mode="before")
    @classmethod
    def _clamp_hour(cls, v: Any) -> int:
        return int(clamp(_as_float(v, "hour_of_day"), 0, 23))

    @field_validator("day_of_week", mode="before")
    @classmethod
    def _clamp_day(cls, v: Any) -> int:
        return int(clamp(_as_float(v, "day_of_week"), 0, 6))

    @model_validator(mode="before")
    @classmethod
    def _derive_calendar_fields(cls, data: Any) -> Any:
        """Fill hour/day from the timestamp unless the caller gave them."""
        if not isinstance(data, dict):
            return data
        if "hour_of_day" in data and "day_of_week" in data:
            return data
        data = dict(data)
        if "timestamp" not in data:
            ts = datetime.now(tz=timezone.utc)
            data["timestamp"] = ts
        else:
            try:
                ts = _DATETIME.validate_python(data["timestamp"])
            except ValidationError:
                # Left for the timestamp field to report.
                return data
        data.setdefault("hour_of_day", ts.hour)
        data.setdefault("day_of_week", ts.weekday())
        return data

    @field_validator("timestamp", mode="after")
    @classmethod
    def _ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def at(cls, timestamp: datetime, **kwargs: Any) -> PredictionContext:
        """Build a context whose hour/day fields are derived from *timestamp*."""
        return cls(timestamp=timestamp, **kwargs)
