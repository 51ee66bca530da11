"""Per-predictor confidence calibration.

Predictors state a confidence for their label; these calibrators map the
stated value to an observed probability of being correct:

* :class:`IdentityCalibrator`: no-op pass-through (default).
* :class:`TemperatureCalibrator`: logit scaling by a fitted temperature.
* :class:`IsotonicCalibrator`: monotone regression of correctness on
  stated confidence.

:class:`CalibratorStore` maps ``predictor_id`` to a fitted calibrator and
falls back to identity for predictors without enough graded outcomes.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

import numpy as np

from fuseclf.core.defaults import DEFAULT_MIN_CALIBRATION_SAMPLES

logger = logging.getLogger(__name__)

_EPS = 1e-6


@runtime_checkable
class Calibrator(Protocol):
    """Minimal contract for a confidence calibrator.

    Implementations must map values in ``[0, 1]`` into ``[0, 1]``, be
    monotone non-decreasing and deterministic.
    """

    def calibrate(self, confidence: float) -> float:
        ...  # pragma: no cover


class IdentityCalibrator:
    """No-op calibrator that returns confidences unchanged."""

    def calibrate(self, confidence: float) -> float:
        return float(confidence)


def _logit(p: np.ndarray) -> np.ndarray:
    p = np.clip(p, _EPS, 1.0 - _EPS)
    return np.log(p / (1.0 - p))


def _sigmoid(z: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-z))


class TemperatureCalibrator:
    """Scale the confidence logit by a learned temperature.

    A temperature > 1 pulls confidences toward 0.5 (overconfident
    predictor); a temperature < 1 pushes them away (underconfident).

    Args:
        temperature: Positive scalar.  Defaults to 1.0 (identity).
    """

    def __init__(self, temperature: float = 1.0) -> None:
        if temperature <= 0:
            raise ValueError(f"temperature must be positive, got {temperature}")
        self.temperature = temperature

    def calibrate(self, confidence: float) -> float:
        if self.temperature == 1.0:
            return float(confidence)
        z = _logit(np.asarray([confidence], dtype=np.float64)) / self.temperature
        return float(_sigmoid(z)[0])


class IsotonicCalibrator:
    """Isotonic regression of correctness on stated confidence.

    Args:
        regressor: A fitted ``sklearn.isotonic.IsotonicRegression``.
    """

    def __init__(self, regressor) -> None:
        self._regressor = regressor

    def calibrate(self, confidence: float) -> float:
        value = self._regressor.predict(np.asarray([confidence], dtype=np.float64))[0]
        return float(np.clip(value, 0.0, 1.0))


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


def _binary_nll(probs: np.ndarray, correct: np.ndarray) -> float:
    p = np.clip(probs, _EPS, 1.0 - _EPS)
    return -float(np.mean(correct * np.log(p) + (1.0 - correct) * np.log(1.0 - p)))


def fit_temperature(confidences: np.ndarray, correct: np.ndarray) -> TemperatureCalibrator:
    """Find the temperature that minimizes binary NLL.

    Two-pass grid search: coarse (0.1 to 5.0, step 0.1), then fine
    (within 0.1 of the best, step 0.01).
    """
    logits = _logit(confidences)

    def _apply(t: float) -> float:
        return _binary_nll(_sigmoid(logits / t), correct)

    best_t = 1.0
    best_nll = _apply(1.0)
    for t in np.arange(0.1, 5.05, 0.1):
        nll = _apply(float(t))
        if nll < best_nll:
            best_nll, best_t = nll, float(t)

    lo = max(0.01, best_t - 0.1)
    for t in np.arange(lo, best_t + 0.105, 0.01):
        nll = _apply(float(t))
        if nll < best_nll:
            best_nll, best_t = nll, float(t)

    return TemperatureCalibrator(temperature=round(best_t, 4))


def fit_isotonic(confidences: np.ndarray, correct: np.ndarray) -> IsotonicCalibrator:
    from sklearn.isotonic import IsotonicRegression

    reg = IsotonicRegression(y_min=0.0, y_max=1.0, out_of_bounds="clip")
    reg.fit(confidences, correct)
    return IsotonicCalibrator(reg)


def fit_calibrator(
    confidences: Sequence[float],
    correct: Sequence[bool],
    method: str = "isotonic",
    *,
    min_samples: int = DEFAULT_MIN_CALIBRATION_SAMPLES,
) -> Calibrator | None:
    """Fit a calibrator from ``(confidence, correct)`` pairs.

    Args:
        confidences: Stated confidences.
        correct: Whether each prediction turned out correct.
        method: ``"temperature"`` or ``"isotonic"``.
        min_samples: Minimum number of pairs required.

    Returns:
        The fitted calibrator, or ``None`` when there are fewer than
        *min_samples* pairs or only one outcome class.

    Raises:
        ValueError: On mismatched lengths or an unknown *method*.
    """
    conf = np.asarray(confidences, dtype=np.float64)
    y = np.asarray(correct, dtype=np.float64)
    if conf.shape != y.shape:
        raise ValueError(f"confidences and correct differ in length: {conf.shape} vs {y.shape}")
    if method not in ("temperature", "isotonic"):
        raise ValueError(f"Unknown calibration method {method!r}")
    if len(conf) < min_samples or len(np.unique(y)) < 2:
        return None
    if method == "temperature":
        return fit_temperature(conf, y)
    return fit_isotonic(conf, y)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CalibratorStore:
    """Per-predictor calibrator registry with identity fallback.

    Args:
        calibrators: Mapping from ``predictor_id`` to a fitted calibrator.
        method: Method used when refitting (``"temperature"`` or
            ``"isotonic"``).
    """

    def __init__(
        self,
        calibrators: dict[str, Calibrator] | None = None,
        method: str = "isotonic",
    ) -> None:
        self.calibrators: dict[str, Calibrator] = calibrators or {}
        self.method = method
        self._fallback = IdentityCalibrator()

    def get_calibrator(self, predictor_id: str) -> Calibrator:
        return self.calibrators.get(predictor_id, self._fallback)

    def calibrate(self, predictor_id: str, confidence: float) -> float:
        return self.get_calibrator(predictor_id).calibrate(confidence)

    def refit(self, predictor_id: str, pairs: Sequence[tuple[float, bool]]) -> Calibrator:
        """Refit *predictor_id* from its calibration history.

        Keeps the previous calibrator when the history is not yet usable.
        """
        fitted = fit_calibrator([c for c, _ in pairs], [ok for _, ok in pairs], self.method)
        if fitted is not None:
            self.calibrators[predictor_id] = fitted
            logger.debug("Refit %s calibrator for %s on %d pairs", self.method, predictor_id, len(pairs))
        return self.get_calibrator(predictor_id)

    @property
    def predictor_ids(self) -> list[str]:
        return sorted(self.calibrators)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def calibrator_to_dict(calibrator: Calibrator) -> dict:
    if isinstance(calibrator, TemperatureCalibrator):
        return {"type": "temperature", "temperature": calibrator.temperature}
    if isinstance(calibrator, IsotonicCalibrator):
        reg = calibrator._regressor
        return {
            "type": "isotonic",
            "X_thresholds_": reg.X_thresholds_.tolist(),
            "y_thresholds_": reg.y_thresholds_.tolist(),
        }
    if isinstance(calibrator, IdentityCalibrator):
        return {"type": "identity"}
    raise TypeError(f"Cannot serialize calibrator of type {type(calibrator).__name__}")


def calibrator_from_dict(data: dict) -> Calibrator:
    """Inverse of :func:`calibrator_to_dict`.

    Raises:
        ValueError: If *data* names an unknown calibrator type.
    """
    cal_type = data.get("type", "identity")
    if cal_type == "identity":
        return IdentityCalibrator()
    if cal_type == "temperature":
        return TemperatureCalibrator(temperature=data["temperature"])
    if cal_type == "isotonic":
        from sklearn.isotonic import IsotonicRegression

        reg = IsotonicRegression(y_min=0.0, y_max=1.0, out_of_bounds="clip")
        reg.fit(np.array(data["X_thresholds_"]), np.array(data["y_thresholds_"]))
        return IsotonicCalibrator(reg)
    raise ValueError(f"Unknown calibrator type: {cal_type!r}")


def save_calibrator_store(store: CalibratorStore, path: Path) -> Path:
    """Persist a :class:`CalibratorStore` as one JSON file."""
    data = {
        "method": store.method,
        "calibrators": {pid: calibrator_to_dict(cal) for pid, cal in sorted(store.calibrators.items())},
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), "utf-8")
    return path


def load_calibrator_store(path: Path) -> CalibratorStore:
    data = json.loads(path.read_text("utf-8"))
    return CalibratorStore(
        calibrators={pid: calibrator_from_dict(raw) for pid, raw in data.get("calibrators", {}).items()},
        method=data.get("method", "isotonic"),
    )
