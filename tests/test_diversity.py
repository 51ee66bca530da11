"""Tests for fuseclf.ensemble.diversity: disagreement, correlation and pruning."""

from __future__ import annotations

import pytest

from conftest import make_prediction
from fuseclf.core.config import DiversityConfig
from fuseclf.core.types import Category, Label, PredictorPrediction
from fuseclf.ensemble.diversity import (
    DiversityAnalyzer,
    diversity_score,
    pair_correlation,
    pair_disagreement,
    predicted_gain,
)


@pytest.fixture()
def analyzer() -> DiversityAnalyzer:
    return DiversityAnalyzer()


# ---------------------------------------------------------------------------
# Pure scoring
# ---------------------------------------------------------------------------


class TestPairScores:
    def test_disagreement_components(self) -> None:
        a = make_prediction("a", label=Label.red, value=3, confidence=0.9)
        b = make_prediction("b", label=Label.black, value=10, confidence=0.5)
        assert pair_disagreement(a, b) == 1.0
        assert pair_disagreement(a, a) == 0.0
        c = make_prediction("c", label=Label.red, value=6, confidence=0.9)
        assert pair_disagreement(a, c) == 0.5
        assert pair_disagreement(a, c, value_tolerance=3) == 0.0

    def test_correlation_weights(self) -> None:
        a = make_prediction("a", value=7, confidence=0.8)
        b = make_prediction("b", value=7, confidence=0.8)
        c = make_prediction("c", label=Label.red, value=1, confidence=0.3)
        assert pair_correlation(a, b) == pytest.approx(1.0)
        assert pair_correlation(a, c) == pytest.approx(0.1 * 0.5)

    @pytest.mark.parametrize("error_rate", [0.01, 0.2, 0.5, 0.99])
    def test_zero_disagreement_means_zero_diversity(self, error_rate: float) -> None:
        assert diversity_score(0.0, error_rate) == 0.0

    def test_diversity_score_midpoint(self) -> None:
        assert diversity_score(0.3, 0.3) == pytest.approx(0.5)
        assert diversity_score(0.6, 0.3) > 0.5

    def test_predicted_gain(self) -> None:
        assert predicted_gain(0.1, 0.2) == pytest.approx(0.2 * 0.8 * 0.5)
        assert predicted_gain(0.5, 0.0) == 0.0


# ---------------------------------------------------------------------------
# compute_diversity
# ---------------------------------------------------------------------------


class TestComputeDiversity:
    def test_unanimous_predictions(self, analyzer: DiversityAnalyzer, unanimous_black: list[PredictorPrediction]) -> None:
        report = analyzer.compute_diversity(unanimous_black)
        assert report.disagreement_rate == 0.0
        assert report.diversity_score == 0.0
        assert report.estimated_error_rate == pytest.approx(0.2)
        assert len(report.correlation_matrix) == 5

    def test_single_prediction(self, analyzer: DiversityAnalyzer) -> None:
        report = analyzer.compute_diversity([make_prediction("a")])
        assert report.disagreement_rate == 0.0
        assert report.estimated_error_rate == 0.5
        assert report.correlation_matrix == []

    def test_disagreeing_predictions(self, analyzer: DiversityAnalyzer) -> None:
        preds = [
            make_prediction("a", label=Label.red, value=1, confidence=0.6),
            make_prediction("b", label=Label.black, value=8, confidence=0.6),
            make_prediction("c", label=Label.white, value=0, confidence=0.6),
        ]
        report = analyzer.compute_diversity(preds)
        assert report.disagreement_rate == 1.0
        assert report.diversity_score > 0.5


# ---------------------------------------------------------------------------
# Correlation analysis
# ---------------------------------------------------------------------------


class TestCorrelations:
    def test_sorted_and_recorded(self, analyzer: DiversityAnalyzer) -> None:
        preds = [
            make_prediction("a"),
            make_prediction("b"),
            make_prediction("c", label=Label.red, value=2, confidence=0.4),
        ]
        pairs = analyzer.analyze_correlations(preds)
        assert (pairs[0].predictor_a, pairs[0].predictor_b) == ("a", "b")
        assert pairs[0].correlation == pytest.approx(1.0)
        assert analyzer.correlation_history("b", "a") == [pytest.approx(1.0)]

    def test_highly_correlated_pairs(self, analyzer: DiversityAnalyzer) -> None:
        preds = [make_prediction("a"), make_prediction("b"), make_prediction("c", label=Label.red, value=1)]
        high = analyzer.highly_correlated_pairs(preds)
        assert [(p.predictor_a, p.predictor_b) for p in high] == [("a", "b")]

    def test_history_bounded(self) -> None:
        analyzer = DiversityAnalyzer(DiversityConfig(correlation_history=2))
        preds = [make_prediction("a"), make_prediction("b")]
        for _ in range(5):
            analyzer.analyze_correlations(preds)
        assert len(analyzer.correlation_history("a", "b")) == 2


# ---------------------------------------------------------------------------
# optimize_selection
# ---------------------------------------------------------------------------


class TestOptimizeSelection:
    def test_prunes_down_to_minimum(
        self, analyzer: DiversityAnalyzer, unanimous_black: list[PredictorPrediction],
    ) -> None:
        weights = {"m1": 0.9, "m2": 0.5, "m3": 0.4, "l1": 0.3, "l2": 0.6}
        kept = analyzer.optimize_selection(unanimous_black, weights)
        assert [p.id for p in kept] == ["m1", "l2"]

    def test_tie_drops_later_member(
        self, analyzer: DiversityAnalyzer, unanimous_black: list[PredictorPrediction],
    ) -> None:
        kept = analyzer.optimize_selection(unanimous_black, {})
        assert [p.id for p in kept] == ["m1", "l2"]

    def test_diverse_ensemble_untouched(self, analyzer: DiversityAnalyzer) -> None:
        preds = [
            make_prediction("a", label=Label.red, value=1, confidence=0.6),
            make_prediction("b", label=Label.black, value=8, confidence=0.6),
            make_prediction("c", label=Label.white, value=0, confidence=0.6),
        ]
        assert analyzer.optimize_selection(preds, {}) == preds

    def test_minimum_size_respected(self, analyzer: DiversityAnalyzer) -> None:
        preds = [make_prediction("a"), make_prediction("b")]
        assert analyzer.optimize_selection(preds, {}) == preds

    def test_stops_once_no_pair_is_too_correlated(self) -> None:
        analyzer = DiversityAnalyzer(DiversityConfig(diversity_threshold=1.0))
        preds = [
            make_prediction("a"),
            make_prediction("b"),
            make_prediction("c", Category.machine_learning, label=Label.red, value=1, confidence=0.2),
            make_prediction("d", Category.advanced_scientific, label=Label.white, value=12, confidence=0.5),
        ]
        kept = analyzer.optimize_selection(preds, {"a": 0.2, "b": 0.9, "c": 0.1, "d": 0.1})
        assert [p.id for p in kept] == ["b", "c", "d"]
