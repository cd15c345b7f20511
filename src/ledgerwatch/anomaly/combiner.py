"""
Merges rule-engine and statistical outputs into one AnomalyResult.
"""

import math
from typing import Optional

from ledgerwatch.anomaly.models import (
    AnomalyResult,
    AnomalyType,
    BehaviorProfile,
    FeatureVector,
    Severity,
)
from ledgerwatch.anomaly.rules_engine import RuleEvaluation
from ledgerwatch.config import CombinerSettings, settings


def severity_for(confidence: float, config: Optional[CombinerSettings] = None) -> Severity:
    """Map a confidence to a severity; cutoffs are inclusive."""
    config = config or settings.combiner
    if confidence >= config.critical_cutoff:
        return Severity.CRITICAL
    if confidence >= config.high_cutoff:
        return Severity.HIGH
    if confidence >= config.medium_cutoff:
        return Severity.MEDIUM
    return Severity.LOW


def dominant_anomaly_type(
    features: FeatureVector,
    profile: BehaviorProfile,
    config: Optional[CombinerSettings] = None,
) -> AnomalyType:
    """Derive the anomaly type from the dominant feature."""
    config = config or settings.combiner
    if features.amount_deviation > config.type_deviation_limit:
        return AnomalyType.AMOUNT
    if features.recent_count > config.type_velocity_limit:
        return AnomalyType.FREQUENCY
    if features.is_new_location:
        return AnomalyType.LOCATION
    if features.is_new_merchant:
        return AnomalyType.MERCHANT
    if features.hour_of_day not in profile.active_hours:
        return AnomalyType.TIME
    return AnomalyType.PATTERN


class DecisionCombiner:
    """Produces the final verdict for an analyzed transaction."""

    def __init__(self, config: Optional[CombinerSettings] = None):
        self.config = config or settings.combiner

    def combine(
        self,
        rule_result: RuleEvaluation,
        statistical_score: float,
        features: FeatureVector,
        profile: BehaviorProfile,
        statistical_reasons: Optional[list[str]] = None,
    ) -> AnomalyResult:
        """
        Combine both detectors.

        Args:
            rule_result: Rule engine evaluation
            statistical_score: Statistical scorer output in [0, 1]
            features: Candidate transaction features
            profile: User's behavioral baseline
            statistical_reasons: Reasons reported by the statistical scorer

        Returns:
            AnomalyResult
        """
        confidence = max(rule_result.confidence, statistical_score)
        is_anomaly = (
            rule_result.is_fraud
            or statistical_score > self.config.statistical_anomaly_threshold
        )

        anomaly_type = rule_result.primary_reason or dominant_anomaly_type(features, profile, self.config)

        # Concatenate, keeping first occurrence of duplicates
        reasons = list(dict.fromkeys(rule_result.reasons + (statistical_reasons or [])))

        return AnomalyResult(
            is_anomaly=is_anomaly,
            confidence=confidence,
            severity=severity_for(confidence, self.config),
            anomaly_type=anomaly_type,
            reasons=reasons,
            risk_score=int(math.floor(confidence * 100 + 0.5)),
            recommendations=self.recommendations(rule_result, statistical_score, features),
        )

    def recommendations(
        self,
        rule_result: RuleEvaluation,
        statistical_score: float,
        features: FeatureVector,
    ) -> list[str]:
        """Advisory strings keyed off the signals that fired."""
        recommendations = []

        if rule_result.is_fraud:
            recommendations.append("Consider verifying this transaction with your bank")
            recommendations.append("Review your account for any other suspicious activity")

        if statistical_score > self.config.statistical_anomaly_threshold:
            recommendations.append("Monitor your account closely for the next few days")

        if features.is_new_merchant and features.amount > self.config.large_purchase_amount:
            recommendations.append("Verify the merchant and keep receipts for large purchases")

        if features.recent_count > self.config.limits_recommendation_count:
            recommendations.append("Consider setting up transaction limits for added security")

        return recommendations
