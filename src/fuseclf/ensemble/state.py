"""Per-predictor reliability state, owned by an explicit injected store.

:class:`PredictorStateStore` replaces process-wide caches: an orchestrator
receives one store at construction time, and tests build a fresh store per
case.  Every read-modify-write of a predictor's :class:`AccuracyRecord`
must happen under that predictor's lock (see :meth:`PredictorStateStore.lock`).
All histories are bounded FIFO deques.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from fuseclf.core.defaults import (
    DEFAULT_CALIBRATION_HISTORY,
    DEFAULT_OUTCOME_HISTORY,
    DEFAULT_RECENT_WINDOW,
)
from fuseclf.core.types import Category

logger = logging.getLogger(__name__)


@dataclass
class AccuracyRecord:
    """Running reliability of one predictor.

    Attributes:
        predictor_id: Predictor the record belongs to.
        category: Last category the predictor reported, if known.
        total: Graded outcomes observed.
        correct: Graded outcomes that were correct.
        recent: Bounded window of the latest outcomes (newest last).
        outcomes: Longer bounded outcome history, used for drift windows.
        context_ema: Context factor key mapped to an EMA of correctness.
        calibration: Bounded ``(stated_confidence, was_correct)`` pairs.
        last_updated: Timestamp of the latest graded outcome.
    """

    predictor_id: str
    category: Category | None = None
    total: int = 0
    correct: int = 0
    recent: deque[bool] = field(default_factory=lambda: deque(maxlen=DEFAULT_RECENT_WINDOW))
    outcomes: deque[bool] = field(default_factory=lambda: deque(maxlen=DEFAULT_OUTCOME_HISTORY))
    context_ema: dict[str, float] = field(default_factory=dict)
    calibration: deque[tuple[float, bool]] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_CALIBRATION_HISTORY)
    )
    last_updated: datetime | None = None

    @property
    def accuracy_rate(self) -> float:
        return self.correct / self.total if self.total else 0.0

    @property
    def recent_accuracy(self) -> float:
        return sum(self.recent) / len(self.recent) if self.recent else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "predictor_id": self.predictor_id,
            "category": str(self.category) if self.category is not None else None,
            "total": self.total,
            "correct": self.correct,
            "recent": list(self.recent),
            "outcomes": list(self.outcomes),
            "context_ema": dict(self.context_ema),
            "calibration": [[c, ok] for c, ok in self.calibration],
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        *,
        recent_window: int = DEFAULT_RECENT_WINDOW,
        outcome_history: int = DEFAULT_OUTCOME_HISTORY,
        calibration_history: int = DEFAULT_CALIBRATION_HISTORY,
    ) -> AccuracyRecord:
        last = data.get("last_updated")
        category = data.get("category")
        return cls(
            predictor_id=data["predictor_id"],
            category=Category(category) if category else None,
            total=int(data.get("total", 0)),
            correct=int(data.get("correct", 0)),
            recent=deque((bool(x) for x in data.get("recent", [])), maxlen=recent_window),
            outcomes=deque((bool(x) for x in data.get("outcomes", [])), maxlen=outcome_history),
            context_ema={str(k): float(v) for k, v in data.get("context_ema", {}).items()},
            calibration=deque(
                ((float(c), bool(ok)) for c, ok in data.get("calibration", [])),
                maxlen=calibration_history,
            ),
            last_updated=datetime.fromisoformat(last) if last else None,
        )


class PredictorStateStore:
    """Thread-safe registry of :class:`AccuracyRecord` objects.

    Args:
        recent_window: Bound of each record's recent-outcome window.
        outcome_history: Bound of each record's long outcome history.
        calibration_history: Bound of each record's calibration pairs.
    """

    def __init__(
        self,
        *,
        recent_window: int = DEFAULT_RECENT_WINDOW,
        outcome_history: int = DEFAULT_OUTCOME_HISTORY,
        calibration_history: int = DEFAULT_CALIBRATION_HISTORY,
    ) -> None:
        self.recent_window = recent_window
        self.outcome_history = outcome_history
        self.calibration_history = calibration_history
        self._records: dict[str, AccuracyRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, predictor_id: object) -> bool:
        return predictor_id in self._records

    def _new_record(self, predictor_id: str) -> AccuracyRecord:
        return AccuracyRecord(
            predictor_id=predictor_id,
            recent=deque(maxlen=self.recent_window),
            outcomes=deque(maxlen=self.outcome_history),
            calibration=deque(maxlen=self.calibration_history),
        )

    @contextmanager
    def lock(self, predictor_id: str) -> Iterator[None]:
        """Serialize access to one predictor's record."""
        with self._registry_lock:
            key_lock = self._locks.setdefault(predictor_id, threading.Lock())
        with key_lock:
            yield

    def get(self, predictor_id: str) -> AccuracyRecord | None:
        return self._records.get(predictor_id)

    def get_or_create(self, predictor_id: str) -> AccuracyRecord:
        with self._registry_lock:
            record = self._records.get(predictor_id)
            if record is None:
                record = self._new_record(predictor_id)
                self._records[predictor_id] = record
            return record

    def put(self, record: AccuracyRecord) -> None:
        """Insert or replace a record (used when seeding state)."""
        with self._registry_lock:
            self._records[record.predictor_id] = record

    def predictor_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._records)

    # -- snapshot / restore ----------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        with self._registry_lock:
            records = list(self._records.values())
        return {
            "recent_window": self.recent_window,
            "outcome_history": self.outcome_history,
            "calibration_history": self.calibration_history,
            "records": [r.to_dict() for r in sorted(records, key=lambda r: r.predictor_id)],
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> PredictorStateStore:
        store = cls(
            recent_window=int(data.get("recent_window", DEFAULT_RECENT_WINDOW)),
            outcome_history=int(data.get("outcome_history", DEFAULT_OUTCOME_HISTORY)),
            calibration_history=int(data.get("calibration_history", DEFAULT_CALIBRATION_HISTORY)),
        )
        for raw in data.get("records", []):
            store.put(
                AccuracyRecord.from_dict(
                    raw,
                    recent_window=store.recent_window,
                    outcome_history=store.outcome_history,
                    calibration_history=store.calibration_history,
                )
            )
        return store

    def save(self, path: Path) -> Path:
        """Atomically write the store snapshot as JSON.

        Returns:
            The *path* that was written.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(self.snapshot(), indent=2)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, str(path))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("Saved state for %d predictors to %s", len(self), path)
        return path

    @classmethod
    def load(cls, path: Path) -> PredictorStateStore:
        """Load a store written by :meth:`save`; a missing file yields an empty store."""
        if not path.exists():
            return cls()
        return cls.from_snapshot(json.loads(path.read_text("utf-8")))
