"""Tests for fuseclf.ensemble.calibration: per-predictor confidence calibrators."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from fuseclf.ensemble.calibration import (
    Calibrator,
    CalibratorStore,
    IdentityCalibrator,
    IsotonicCalibrator,
    TemperatureCalibrator,
    calibrator_from_dict,
    calibrator_to_dict,
    fit_calibrator,
    fit_temperature,
    load_calibrator_store,
    save_calibrator_store,
)


@pytest.fixture
def overconfident_pairs() -> tuple[np.ndarray, np.ndarray]:
    """Stated confidence around 0.9 but only about 60% correct."""
    rng = np.random.default_rng(42)
    conf = rng.uniform(0.8, 0.99, size=200)
    correct = rng.uniform(0, 1, size=200) < 0.6
    return conf, correct


# ---------------------------------------------------------------------------
# Calibrators
# ---------------------------------------------------------------------------


class TestIdentityCalibrator:
    def test_passthrough(self) -> None:
        cal = IdentityCalibrator()
        assert cal.calibrate(0.73) == 0.73

    def test_satisfies_protocol(self) -> None:
        assert isinstance(IdentityCalibrator(), Calibrator)
        assert isinstance(TemperatureCalibrator(), Calibrator)


class TestTemperatureCalibrator:
    def test_identity_at_one(self) -> None:
        assert TemperatureCalibrator(1.0).calibrate(0.8) == 0.8

    def test_high_temperature_softens(self) -> None:
        cal = TemperatureCalibrator(3.0)
        assert 0.5 < cal.calibrate(0.9) < 0.9
        assert 0.1 < cal.calibrate(0.1) < 0.5

    def test_monotone(self) -> None:
        cal = TemperatureCalibrator(2.0)
        values = [cal.calibrate(c) for c in np.linspace(0.01, 0.99, 20)]
        assert values == sorted(values)

    def test_invalid_temperature(self) -> None:
        with pytest.raises(ValueError, match="positive"):
            TemperatureCalibrator(0.0)


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


class TestFitting:
    def test_temperature_softens_overconfidence(self, overconfident_pairs: tuple[np.ndarray, np.ndarray]) -> None:
        conf, correct = overconfident_pairs
        cal = fit_temperature(conf, correct.astype(float))
        assert cal.temperature > 1.0
        assert cal.calibrate(0.9) < 0.9

    def test_isotonic_tracks_accuracy(self, overconfident_pairs: tuple[np.ndarray, np.ndarray]) -> None:
        conf, correct = overconfident_pairs
        cal = fit_calibrator(conf, correct, "isotonic")
        assert isinstance(cal, IsotonicCalibrator)
        fitted = [cal.calibrate(c) for c in conf]
        assert np.mean(fitted) == pytest.approx(correct.mean(), abs=1e-6)
        grid = [cal.calibrate(c) for c in np.linspace(0.8, 0.99, 10)]
        assert grid == sorted(grid)
        assert 0.0 <= cal.calibrate(2.0) <= 1.0

    def test_too_few_samples(self) -> None:
        assert fit_calibrator([0.9] * 5, [True, False] * 2 + [True]) is None

    def test_single_outcome_class(self) -> None:
        assert fit_calibrator([0.9] * 20, [True] * 20) is None

    def test_length_mismatch(self) -> None:
        with pytest.raises(ValueError, match="differ"):
            fit_calibrator([0.5] * 10, [True] * 9)

    def test_unknown_method(self) -> None:
        with pytest.raises(ValueError, match="Unknown"):
            fit_calibrator([0.5] * 10, [True] * 10, "platt")


# ---------------------------------------------------------------------------
# CalibratorStore
# ---------------------------------------------------------------------------


class TestCalibratorStore:
    def test_identity_fallback(self) -> None:
        store = CalibratorStore()
        assert isinstance(store.get_calibrator("unknown"), IdentityCalibrator)
        assert store.calibrate("unknown", 0.42) == 0.42

    def test_refit_keeps_previous_until_usable(self) -> None:
        store = CalibratorStore(method="temperature")
        store.refit("m1", [(0.9, True)] * 3)
        assert isinstance(store.get_calibrator("m1"), IdentityCalibrator)
        assert store.predictor_ids == []

    def test_refit(self, overconfident_pairs: tuple[np.ndarray, np.ndarray]) -> None:
        conf, correct = overconfident_pairs
        store = CalibratorStore(method="temperature")
        cal = store.refit("m1", list(zip(conf.tolist(), correct.tolist())))
        assert isinstance(cal, TemperatureCalibrator)
        assert store.predictor_ids == ["m1"]
        assert store.calibrate("m1", 0.9) < 0.9


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    def test_temperature_dict(self) -> None:
        data = calibrator_to_dict(TemperatureCalibrator(1.7))
        assert data == {"type": "temperature", "temperature": 1.7}
        assert calibrator_from_dict(data).calibrate(0.8) == TemperatureCalibrator(1.7).calibrate(0.8)

    def test_isotonic_dict(self, overconfident_pairs: tuple[np.ndarray, np.ndarray]) -> None:
        conf, correct = overconfident_pairs
        cal = fit_calibrator(conf, correct, "isotonic")
        assert cal is not None
        restored = calibrator_from_dict(calibrator_to_dict(cal))
        for c in (0.8, 0.85, 0.9, 0.95):
            assert restored.calibrate(c) == pytest.approx(cal.calibrate(c))

    def test_unknown_type(self) -> None:
        with pytest.raises(ValueError, match="Unknown"):
            calibrator_from_dict({"type": "beta"})

    def test_unserializable(self) -> None:
        class Custom:
            def calibrate(self, confidence: float) -> float:
                return confidence

        with pytest.raises(TypeError):
            calibrator_to_dict(Custom())

    def test_store_round_trip(self, tmp_path: Path, overconfident_pairs: tuple[np.ndarray, np.ndarray]) -> None:
        conf, correct = overconfident_pairs
        store = CalibratorStore(method="temperature")
        store.refit("m1", list(zip(conf.tolist(), correct.tolist())))
        path = save_calibrator_store(store, tmp_path / "cal" / "calibrators.json")
        loaded = load_calibrator_store(path)
        assert loaded.method == "temperature"
        assert loaded.predictor_ids == ["m1"]
        assert loaded.calibrate("m1", 0.9) == pytest.approx(store.calibrate("m1", 0.9))
