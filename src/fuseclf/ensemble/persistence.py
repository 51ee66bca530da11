"""Best-effort persistence side effects.

The orchestrator never waits on storage: every sink call goes through
:class:`FireAndForget`, which runs it on a small thread pool, logs and
counts failures, and drops calls that outlive the timeout.  Nothing a
sink does can change the prediction returned to the caller.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from pydantic import BaseModel

from fuseclf.core.defaults import (
    DEFAULT_PERSISTENCE_DIR,
    DEFAULT_PERSISTENCE_MAX_PENDING,
    DEFAULT_PERSISTENCE_TIMEOUT_SECONDS,
    DEFAULT_PERSISTENCE_WORKERS,
)
from fuseclf.ensemble.drift import DriftSignal
from fuseclf.ensemble.prediction import EnsemblePrediction

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised by a sink when a record cannot be stored."""


@runtime_checkable
class PersistenceSink(Protocol):
    """Storage collaborator.  Calls must be idempotent."""

    def record_outcome(self, predictor_id: str, correct: bool) -> None:
        ...  # pragma: no cover

    def record_prediction(self, prediction: EnsemblePrediction) -> None:
        ...  # pragma: no cover

    def record_drift_event(self, signal: DriftSignal) -> None:
        ...  # pragma: no cover


class NullSink:
    """Discards everything."""

    def record_outcome(self, predictor_id: str, correct: bool) -> None:
        return None

    def record_prediction(self, prediction: EnsemblePrediction) -> None:
        return None

    def record_drift_event(self, signal: DriftSignal) -> None:
        return None


# ---------------------------------------------------------------------------
# Append-only JSONL sink
# ---------------------------------------------------------------------------


class JsonlSink:
    """Append-only JSONL files, one per record kind.

    Layout::

        store_dir/
            predictions.jsonl
            outcomes.jsonl
            drift_events.jsonl

    Predictions are written once per ``prediction_id``; repeated calls
    for the same id are ignored.
    """

    KINDS = ("predictions", "outcomes", "drift_events")

    def __init__(self, store_dir: str | Path = DEFAULT_PERSISTENCE_DIR) -> None:
        self._dir = Path(store_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seen_predictions: set[str] = set()

    def path_for(self, kind: str) -> Path:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown record kind {kind!r}")
        return self._dir / f"{kind}.jsonl"

    def _append(self, kind: str, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, default=str) + "\n"
        path = self.path_for(kind)
        try:
            with self._lock, path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as exc:
            raise PersistenceError(f"Cannot append to {path}: {exc}") from exc

    def record_outcome(self, predictor_id: str, correct: bool) -> None:
        self._append(
            "outcomes",
            {
                "predictor_id": predictor_id,
                "correct": bool(correct),
                "recorded_at": datetime.now(timezone.utc).isoformat(),
            },
        )

    def record_prediction(self, prediction: EnsemblePrediction) -> None:
        with self._lock:
            if prediction.prediction_id in self._seen_predictions:
                return
            self._seen_predictions.add(prediction.prediction_id)
        self._append("predictions", prediction.model_dump(mode="json"))

    def record_drift_event(self, signal: DriftSignal) -> None:
        self._append("drift_events", signal.model_dump(mode="json"))

    def read_recent(self, kind: str, n: int = 10) -> list[dict[str, Any]]:
        """Read the last *n* records of *kind* (newest last)."""
        path = self.path_for(kind)
        if not path.exists():
            return []
        lines = [l for l in path.read_text("utf-8").splitlines() if l.strip()]
        return [json.loads(l) for l in lines[-n:]]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class DispatchStats(BaseModel):
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0


class FireAndForget:
    """Runs sink calls off the caller's thread.

    Errors raised by a call are logged with traceback and counted.  Calls
    older than *timeout* seconds are reaped on the next :meth:`submit` (and
    by :meth:`drain`): cancelled where still queued, abandoned where
    running, and counted as dropped.  At most *max_pending* calls are in
    flight; further calls are dropped without blocking.  Nothing is retried.

    Args:
        sink: Storage collaborator.
        timeout: Per-call budget in seconds.
        max_workers: Thread pool size.
        max_pending: Backlog bound.
    """

    def __init__(
        self,
        sink: PersistenceSink,
        *,
        timeout: float = DEFAULT_PERSISTENCE_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_PERSISTENCE_WORKERS,
        max_pending: int = DEFAULT_PERSISTENCE_MAX_PENDING,
    ) -> None:
        if max_pending < 1:
            raise ValueError(f"max_pending must be >= 1, got {max_pending}")
        self._sink = sink
        self._timeout = timeout
        self._max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fuseclf-persist")
        # future -> (call name, monotonic submit time)
        self._pending: dict[Future, tuple[str, float]] = {}
        self._abandoned: set[Future] = set()
        self._stats = DispatchStats()
        self._lock = threading.Lock()
        self._settled = threading.Condition(self._lock)

    @property
    def sink(self) -> PersistenceSink:
        return self._sink

    @property
    def stats(self) -> DispatchStats:
        with self._lock:
            return self._stats.model_copy()

    @property
    def pending(self) -> int:
        """Number of calls submitted and neither settled nor dropped."""
        with self._lock:
            return len(self._pending)

    def _on_done(self, future: Future) -> None:
        exc = None if future.cancelled() else future.exception()
        with self._settled:
            entry = self._pending.pop(future, None)
            if future in self._abandoned:
                # Already counted as dropped.
                self._abandoned.discard(future)
                exc = None
            elif not future.cancelled():
                if exc is None:
                    self._stats.completed += 1
                else:
                    self._stats.failed += 1
            self._settled.notify_all()
        if exc is not None:
            name = entry[0] if entry else "call"
            logger.warning("Persistence call %s failed", name, exc_info=exc)

    def _abandon(self, future: Future) -> str | None:
        """Move *future* from pending to abandoned; caller holds the lock."""
        entry = self._pending.pop(future, None)
        if entry is None:
            return None
        self._abandoned.add(future)
        self._stats.dropped += 1
        return entry[0]

    def _reap_expired(self) -> None:
        now = time.monotonic()
        with self._lock:
            expired = [f for f, (_, t0) in self._pending.items() if now - t0 >= self._timeout]
            names = [(f, self._abandon(f)) for f in expired]
        for future, name in names:
            # cancel() may run _on_done synchronously, so it stays outside the lock.
            future.cancel()
            logger.warning("Persistence call %s timed out after %.2fs; dropped", name, self._timeout)

    def submit(self, name: str, fn: Callable[..., Any], *args: Any) -> Future | None:
        """Schedule ``fn(*args)``; never raises or blocks."""
        self._reap_expired()
        with self._lock:
            backlog = len(self._pending)
            if backlog >= self._max_pending:
                self._stats.dropped += 1
        if backlog >= self._max_pending:
            logger.warning("Persistence backlog full (%d pending); dropped %s", backlog, name)
            return None
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            logger.warning("Persistence dispatcher is shut down; dropped %s", name, exc_info=True)
            with self._lock:
                self._stats.dropped += 1
            return None
        with self._lock:
            self._stats.submitted += 1
            self._pending[future] = (name, time.monotonic())
        future.add_done_callback(self._on_done)
        return future

    def record_outcome(self, predictor_id: str, correct: bool) -> None:
        self.submit("record_outcome", self._sink.record_outcome, predictor_id, correct)

    def record_prediction(self, prediction: EnsemblePrediction) -> None:
        self.submit("record_prediction", self._sink.record_prediction, prediction)

    def record_drift_event(self, signal: DriftSignal) -> None:
        self.submit("record_drift_event", self._sink.record_drift_event, signal)

    def drain(self, timeout: float | None = None) -> DispatchStats:
        """Wait up to *timeout* (default: the per-call budget) for pending calls.

        Calls still running afterwards are cancelled where possible and
        counted as dropped.  Returns the stats once every call that
        finished in time has been counted.
        """
        budget = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        with self._lock:
            snapshot = list(self._pending)
        for future in snapshot:
            try:
                future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FuturesTimeoutError:
                with self._lock:
                    name = self._abandon(future)
                if name is not None:
                    future.cancel()
                    logger.warning("Persistence call %s timed out after %.2fs; dropped", name, budget)
            except Exception:
                # Logged and counted by the done callback.
                pass
        with self._settled:
            self._settled.wait_for(
                lambda: not any(f in self._pending for f in snapshot),
                timeout=max(0.0, deadline - time.monotonic()) + 0.1,
            )
            return self._stats.model_copy()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
