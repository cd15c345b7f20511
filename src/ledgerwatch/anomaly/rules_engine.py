"""
Rules engine for declarative fraud detection.

Rules are plain data (id, predicate reference, severity, active flag)
injected at construction time. Each active rule is evaluated independently
and the triggered set is aggregated, so evaluation order never matters.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from ledgerwatch.anomaly.models import AnomalyType, BehaviorProfile, FeatureVector, Severity
from ledgerwatch.config import RuleThresholds, settings
from ledgerwatch.exceptions import RuleNotFoundError

logger = logging.getLogger(__name__)

Predicate = Callable[[FeatureVector, BehaviorProfile, RuleThresholds], bool]
ConfidenceAdjuster = Callable[[float, FeatureVector, BehaviorProfile, RuleThresholds], float]

BASE_CONFIDENCE = {
    Severity.CRITICAL: 0.90,
    Severity.HIGH: 0.75,
    Severity.MEDIUM: 0.60,
    Severity.LOW: 0.40,
}


@dataclass(frozen=True)
class FraudRule:
    """A declarative fraud rule."""

    id: str
    name: str
    description: str
    predicate: Predicate
    severity: Severity
    anomaly_type: AnomalyType = AnomalyType.PATTERN
    adjust_confidence: Optional[ConfidenceAdjuster] = None
    active: bool = True


@dataclass
class RuleMatch:
    """A triggered rule and its confidence."""

    rule: FraudRule
    confidence: float


@dataclass
class RuleEvaluation:
    """Aggregated outcome of evaluating all active rules."""

    is_fraud: bool
    confidence: float
    primary_reason: Optional[AnomalyType]
    reasons: list[str] = field(default_factory=list)
    matches: list[RuleMatch] = field(default_factory=list)


def _ratio_to_average(features: FeatureVector, profile: BehaviorProfile) -> float:
    if profile.average_amount <= 0:
        return 0.0
    return features.amount / profile.average_amount


def _is_round(amount: float) -> bool:
    return amount % 10 == 0


# Predicates


def large_amount(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.amount > p.average_amount * t.large_amount_multiplier
        and f.amount_deviation > t.large_amount_min_deviation
    )


def high_velocity(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return f.recent_count > t.velocity_hard_limit or (
        f.recent_count > t.velocity_soft_limit
        and f.hours_since_previous < t.velocity_max_gap_hours
    )


def geographic_anomaly(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.is_new_location
        and f.amount > p.average_amount * t.geographic_multiplier
        and f.location_rank == 0
    )


def off_hours(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.hour_of_day < t.off_hours_before
        and f.hour_of_day not in p.active_hours
        and f.amount > p.average_amount * t.off_hours_multiplier
    )


def new_merchant_large_amount(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.is_new_merchant
        and f.amount > p.average_amount * t.new_merchant_multiplier
        and f.merchant_rank == 0
    )


def card_testing(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        _is_round(f.amount)
        and f.recent_count > t.card_testing_min_count
        and f.amount < t.card_testing_max_amount
    )


def weekend_large_amount(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.is_weekend
        and f.amount > p.average_amount * t.weekend_multiplier
        and f.day_of_week not in p.active_weekdays
    )


def rapid_succession(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return f.hours_since_previous < t.rapid_max_gap_hours and f.recent_count > t.rapid_min_count


def micro_transactions(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.amount < t.micro_max_amount
        and f.recent_count > t.micro_min_count
        and f.amount < p.average_amount * t.micro_average_fraction
    )


def extreme_deviation(f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> bool:
    return (
        f.amount_deviation > t.extreme_min_deviation
        and f.is_new_merchant
        and f.is_new_location
        and f.hour_of_day not in p.active_hours
    )


# Confidence adjusters: bonus grows with how far the threshold is exceeded


def _large_amount_confidence(c: float, f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> float:
    bonus = (f.amount_deviation - t.large_amount_min_deviation) * t.large_amount_bonus_per_sigma
    return min(t.large_amount_cap, c + bonus)


def _velocity_confidence(c: float, f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> float:
    bonus = (f.recent_count - t.velocity_soft_limit) * t.velocity_bonus_per_txn
    return min(t.velocity_cap, c + bonus)


def _geographic_confidence(c: float, f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> float:
    bonus = (_ratio_to_average(f, p) - t.geographic_multiplier) * t.geographic_bonus_per_multiple
    return min(t.geographic_cap, c + bonus)


def _off_hours_confidence(c: float, f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> float:
    if f.hour_of_day < t.deep_night_before:
        return c + t.deep_night_bonus
    return c


def _extreme_confidence(c: float, f: FeatureVector, p: BehaviorProfile, t: RuleThresholds) -> float:
    bonus = (f.amount_deviation - t.extreme_min_deviation) * t.extreme_bonus_per_sigma
    return min(t.extreme_cap, c + bonus)


def default_rules() -> list[FraudRule]:
    """The built-in rule set."""
    return [
        FraudRule(
            id="large-amount-anomaly",
            name="Large Amount Anomaly",
            description="Transaction amount significantly exceeds user's typical spending",
            predicate=large_amount,
            severity=Severity.HIGH,
            anomaly_type=AnomalyType.AMOUNT,
            adjust_confidence=_large_amount_confidence,
        ),
        FraudRule(
            id="velocity-fraud",
            name="High Transaction Velocity",
            description="Unusually high number of transactions in short time period",
            predicate=high_velocity,
            severity=Severity.CRITICAL,
            anomaly_type=AnomalyType.FREQUENCY,
            adjust_confidence=_velocity_confidence,
        ),
        FraudRule(
            id="geographic-anomaly",
            name="Geographic Anomaly",
            description="Transaction in unusual location with large amount",
            predicate=geographic_anomaly,
            severity=Severity.MEDIUM,
            anomaly_type=AnomalyType.LOCATION,
            adjust_confidence=_geographic_confidence,
        ),
        FraudRule(
            id="time-anomaly",
            name="Unusual Time Pattern",
            description="Transaction at highly unusual time with suspicious characteristics",
            predicate=off_hours,
            severity=Severity.MEDIUM,
            anomaly_type=AnomalyType.TIME,
            adjust_confidence=_off_hours_confidence,
        ),
        FraudRule(
            id="new-merchant-large-amount",
            name="New Merchant Large Transaction",
            description="Large transaction with previously unseen merchant",
            predicate=new_merchant_large_amount,
            severity=Severity.MEDIUM,
            anomaly_type=AnomalyType.MERCHANT,
        ),
        FraudRule(
            id="round-number-pattern",
            name="Round Number Pattern",
            description="Multiple round number transactions suggesting card testing",
            predicate=card_testing,
            severity=Severity.HIGH,
            anomaly_type=AnomalyType.PATTERN,
        ),
        FraudRule(
            id="weekend-large-transaction",
            name="Weekend Large Transaction",
            description="Unusually large transaction during weekend",
            predicate=weekend_large_amount,
            severity=Severity.LOW,
            anomaly_type=AnomalyType.TIME,
        ),
        FraudRule(
            id="rapid-successive-transactions",
            name="Rapid Successive Transactions",
            description="Multiple transactions within minutes",
            predicate=rapid_succession,
            severity=Severity.HIGH,
            anomaly_type=AnomalyType.FREQUENCY,
        ),
        FraudRule(
            id="micro-transaction-pattern",
            name="Micro Transaction Pattern",
            description="Pattern of very small transactions suggesting card validation",
            predicate=micro_transactions,
            severity=Severity.CRITICAL,
            anomaly_type=AnomalyType.FREQUENCY,
        ),
        FraudRule(
            id="extreme-behavior-deviation",
            name="Extreme Behavior Deviation",
            description="Transaction pattern completely outside normal behavior",
            predicate=extreme_deviation,
            severity=Severity.CRITICAL,
            anomaly_type=AnomalyType.PATTERN,
            adjust_confidence=_extreme_confidence,
        ),
    ]


class RuleRegistry:
    """
    Registry of fraud rules keyed by id.

    Writers replace the whole mapping under a lock; readers take a snapshot
    of the current mapping without locking.
    """

    def __init__(self, rules: Optional[list[FraudRule]] = None):
        self._rules: dict[str, FraudRule] = {}
        self._write_lock = threading.Lock()
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: FraudRule) -> None:
        """Add or replace a rule."""
        with self._write_lock:
            rules = dict(self._rules)
            rules[rule.id] = rule
            self._rules = rules
        logger.info(f"Added fraud rule: {rule.name}")

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule from the registry."""
        with self._write_lock:
            if rule_id not in self._rules:
                return False
            rules = dict(self._rules)
            del rules[rule_id]
            self._rules = rules
        return True

    def set_active(self, rule_id: str, active: bool) -> FraudRule:
        """Enable or disable a rule at runtime."""
        with self._write_lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RuleNotFoundError(f"Unknown fraud rule: {rule_id}")
            updated = replace(rule, active=active)
            rules = dict(self._rules)
            rules[rule_id] = updated
            self._rules = rules
        logger.info(f"{'Enabled' if active else 'Disabled'} fraud rule: {rule.name}")
        return updated

    def enable(self, rule_id: str) -> FraudRule:
        return self.set_active(rule_id, True)

    def disable(self, rule_id: str) -> FraudRule:
        return self.set_active(rule_id, False)

    def get_rule(self, rule_id: str) -> Optional[FraudRule]:
        """Get a rule by ID."""
        return self._rules.get(rule_id)

    def list_rules(self, active_only: bool = False) -> list[FraudRule]:
        """List all rules, optionally only active ones."""
        rules = list(self._rules.values())
        if active_only:
            rules = [r for r in rules if r.active]
        return rules

    def __len__(self) -> int:
        return len(self._rules)


class RulesEngine:
    """
    Evaluates the active fraud rules against a feature vector and profile.

    Overall confidence weights the strongest rule against the mean of all
    triggered rules, so one decisive rule dominates while corroborating
    rules still count.
    """

    def __init__(
        self,
        registry: Optional[RuleRegistry] = None,
        thresholds: Optional[RuleThresholds] = None,
    ):
        self.registry = registry if registry is not None else RuleRegistry(default_rules())
        self.thresholds = thresholds or settings.rules
        logger.info(f"Initialized rules engine with {len(self.registry)} fraud rules")

    def rule_confidence(
        self,
        rule: FraudRule,
        features: FeatureVector,
        profile: BehaviorProfile,
    ) -> float:
        """Confidence for a triggered rule, clamped to [0, 1]."""
        confidence = BASE_CONFIDENCE[rule.severity]
        if rule.adjust_confidence is not None:
            confidence = rule.adjust_confidence(confidence, features, profile, self.thresholds)
        return max(0.0, min(1.0, confidence))

    def evaluate(
        self,
        features: FeatureVector,
        profile: BehaviorProfile,
    ) -> RuleEvaluation:
        """
        Evaluate all active rules.

        Args:
            features: Candidate transaction features
            profile: User's behavioral baseline

        Returns:
            Aggregated evaluation; not fraud with confidence 0 if nothing fired
        """
        matches = []

        for rule in self.registry.list_rules(active_only=True):
            try:
                triggered = rule.predicate(features, profile, self.thresholds)
            except Exception as e:
                logger.warning(f"Error evaluating rule {rule.id}: {e}")
                continue

            if triggered:
                matches.append(
                    RuleMatch(
                        rule=rule,
                        confidence=self.rule_confidence(rule, features, profile),
                    )
                )

        if not matches:
            return RuleEvaluation(is_fraud=False, confidence=0.0, primary_reason=None)

        t = self.thresholds
        confidences = [m.confidence for m in matches]
        max_confidence = max(confidences)
        mean_confidence = sum(confidences) / len(confidences)
        overall = t.max_weight * max_confidence + t.mean_weight * mean_confidence
        overall = max(0.0, min(1.0, overall))

        # Ties resolve by rule id so the outcome is independent of rule order
        primary = min(matches, key=lambda m: (-m.confidence, m.rule.id))

        return RuleEvaluation(
            is_fraud=overall > t.fraud_confidence_threshold,
            confidence=overall,
            primary_reason=primary.rule.anomaly_type,
            reasons=[m.rule.description for m in matches],
            matches=matches,
        )
