"""
Tests for the statistical scorer.
"""

import pytest

from ledgerwatch.anomaly.scorer import StatisticalScorer
from ledgerwatch.config import ScorerWeights


@pytest.fixture
def scorer():
    return StatisticalScorer(ScorerWeights())


class TestStatisticalScorer:
    """Tests for StatisticalScorer."""

    def test_no_indicators(self, scorer, profile, make_features):
        """Ordinary purchases score zero."""
        result = scorer.evaluate(make_features(), profile)

        assert result.score == 0.0
        assert result.fired == 0

    def test_strong_deviation(self, scorer, profile, make_features):
        """More than two sigma contributes 0.30."""
        assert scorer.score(make_features(amount=225.0, amount_deviation=2.5), profile) == pytest.approx(0.30)

    def test_mild_deviation(self, scorer, profile, make_features):
        """Between 1.5 and 2 sigma contributes 0.15."""
        assert scorer.score(make_features(amount=190.0, amount_deviation=1.8), profile) == pytest.approx(0.15)

    def test_average_over_fired_indicators_only(self, scorer, profile, make_features):
        """A single strong signal is not diluted by indicators that did not fire."""
        features = make_features(amount=250.0, amount_deviation=3.0, hour_of_day=3)
        result = scorer.evaluate(features, profile)

        assert set(result.indicators) == {"amount_deviation", "unusual_hour"}
        assert result.score == pytest.approx((0.30 + 0.20) / 2)

    def test_new_merchant_requires_large_amount(self, scorer, profile, make_features):
        """New merchant only counts above twice the average."""
        small = make_features(amount=150.0, amount_deviation=1.0, is_new_merchant=True)
        large = make_features(amount=250.0, amount_deviation=3.0, is_new_merchant=True)

        assert scorer.score(small, profile) == 0.0
        assert scorer.score(large, profile) == pytest.approx((0.30 + 0.25) / 2)

    def test_new_location(self, scorer, profile, make_features):
        """New location above 1.5x the average contributes 0.20."""
        features = make_features(amount=160.0, amount_deviation=1.2, is_new_location=True)
        assert scorer.score(features, profile) == pytest.approx(0.20)

    def test_velocity(self, scorer, profile, make_features):
        """More than five transactions in the hour contributes 0.30."""
        assert scorer.score(make_features(recent_count=6), profile) == pytest.approx(0.30)
        assert scorer.score(make_features(recent_count=5), profile) == 0.0

    def test_weekend_large(self, scorer, profile, make_features):
        """Weekend spend above three times the average contributes 0.15."""
        features = make_features(amount=350.0, amount_deviation=5.0, is_weekend=True, day_of_week=5)
        assert scorer.score(features, profile) == pytest.approx((0.30 + 0.15) / 2)

    def test_score_bounded(self, scorer, profile, make_features):
        """Score stays within [0, 1] when everything fires."""
        features = make_features(
            amount=5000.0,
            amount_deviation=98.0,
            hour_of_day=2,
            is_new_merchant=True,
            is_new_location=True,
            recent_count=20,
            is_weekend=True,
            day_of_week=6,
        )
        result = scorer.evaluate(features, profile)

        assert result.fired == 6
        assert 0.0 <= result.score <= 1.0

    def test_reasons(self, scorer, profile, make_features):
        """Reasons describe the signals in plain language."""
        features = make_features(
            amount=400.0,
            amount_deviation=6.0,
            hour_of_day=3,
            is_new_merchant=True,
            recent_count=7,
        )
        reasons = scorer.reasons(features, profile)

        assert "Transaction amount is 6.0 standard deviations from your average" in reasons
        assert "Transaction with a new merchant" in reasons
        assert "7 transactions in the last hour" in reasons
        assert "Transaction at unusual time (3:00)" in reasons
        assert "Transaction in a new location" not in reasons
