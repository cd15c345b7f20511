"""
Statistical anomaly scoring.

A weighted-heuristic score computed independently of the rule engine.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ledgerwatch.anomaly.models import BehaviorProfile, FeatureVector
from ledgerwatch.config import ScorerWeights, settings

logger = logging.getLogger(__name__)


@dataclass
class StatisticalScore:
    """Score with the indicators that contributed to it."""

    score: float  # 0.0 to 1.0
    indicators: dict[str, float] = field(default_factory=dict)

    @property
    def fired(self) -> int:
        return len(self.indicators)


class StatisticalScorer:
    """
    Scores a transaction from up to six independent indicators.

    The sum of fired indicator weights is divided by the number of indicators
    that fired, not the number evaluated, so a single relevant signal is not
    diluted by the irrelevant ones.
    """

    def __init__(self, weights: Optional[ScorerWeights] = None):
        self.weights = weights or settings.scorer

    def evaluate(
        self,
        features: FeatureVector,
        profile: BehaviorProfile,
    ) -> StatisticalScore:
        """Compute the score and the fired indicators."""
        w = self.weights
        average = profile.average_amount
        indicators: dict[str, float] = {}

        if features.amount_deviation > w.strong_deviation:
            indicators["amount_deviation"] = w.strong_deviation_weight
        elif features.amount_deviation > w.mild_deviation:
            indicators["amount_deviation"] = w.mild_deviation_weight

        if profile.active_hours and features.hour_of_day not in profile.active_hours:
            indicators["unusual_hour"] = w.unusual_hour_weight

        if features.is_new_merchant and features.amount > average * w.new_merchant_multiplier:
            indicators["new_merchant"] = w.new_merchant_weight

        if features.is_new_location and features.amount > average * w.new_location_multiplier:
            indicators["new_location"] = w.new_location_weight

        if features.recent_count > w.velocity_limit:
            indicators["velocity"] = w.velocity_weight

        if features.is_weekend and features.amount > average * w.weekend_multiplier:
            indicators["weekend_large"] = w.weekend_weight

        if not indicators:
            return StatisticalScore(score=0.0)

        score = sum(indicators.values()) / len(indicators)
        return StatisticalScore(score=max(0.0, min(1.0, score)), indicators=indicators)

    def score(self, features: FeatureVector, profile: BehaviorProfile) -> float:
        """Anomaly likelihood in [0, 1]."""
        return self.evaluate(features, profile).score

    def reasons(self, features: FeatureVector, profile: BehaviorProfile) -> list[str]:
        """Human-readable statistical reasons."""
        reasons = []

        if features.amount_deviation > self.weights.strong_deviation:
            reasons.append(
                f"Transaction amount is {features.amount_deviation:.1f} "
                f"standard deviations from your average"
            )

        if features.is_new_merchant:
            reasons.append("Transaction with a new merchant")

        if features.is_new_location:
            reasons.append("Transaction in a new location")

        if features.recent_count > self.weights.velocity_limit:
            reasons.append(f"{features.recent_count} transactions in the last hour")

        if features.hour_of_day not in profile.active_hours:
            reasons.append(f"Transaction at unusual time ({features.hour_of_day}:00)")

        return reasons
