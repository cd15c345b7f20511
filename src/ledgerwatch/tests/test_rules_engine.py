"""
Tests for the fraud rules engine.

Covers each built-in rule, confidence aggregation and the runtime
rule registry.
"""

from dataclasses import replace

import pytest

from ledgerwatch.anomaly.models import AnomalyType, Severity
from ledgerwatch.anomaly.rules_engine import (
    FraudRule,
    RuleRegistry,
    RulesEngine,
    default_rules,
)
from ledgerwatch.config import RuleThresholds
from ledgerwatch.exceptions import RuleNotFoundError


@pytest.fixture
def engine():
    return RulesEngine(RuleRegistry(default_rules()), RuleThresholds())


def _fired(evaluation) -> set[str]:
    return {m.rule.id for m in evaluation.matches}


class TestBuiltInRules:
    """Tests for each built-in rule in isolation."""

    def test_normal_transaction_triggers_nothing(self, engine, profile, make_features):
        """An ordinary purchase is not fraud."""
        evaluation = engine.evaluate(make_features(), profile)

        assert not evaluation.is_fraud
        assert evaluation.confidence == 0.0
        assert evaluation.primary_reason is None
        assert evaluation.reasons == []

    def test_large_amount(self, engine, profile, make_features):
        """Amount above 5x average and 3 sigma triggers a capped high rule."""
        features = make_features(amount=600.0, amount_deviation=10.0)
        evaluation = engine.evaluate(features, profile)

        assert _fired(evaluation) == {"large-amount-anomaly"}
        assert evaluation.matches[0].confidence == pytest.approx(0.95)
        assert evaluation.confidence == pytest.approx(0.95)
        assert evaluation.is_fraud
        assert evaluation.primary_reason == AnomalyType.AMOUNT

    def test_large_amount_confidence_grows_with_deviation(self, engine, profile, make_features):
        """Bonus is 0.05 per sigma above 3."""
        features = make_features(amount=600.0, amount_deviation=4.0)
        evaluation = engine.evaluate(features, profile)

        assert evaluation.matches[0].confidence == pytest.approx(0.80)

    def test_velocity_hard_limit(self, engine, profile, make_features):
        """More than 10 transactions in the hour always triggers."""
        evaluation = engine.evaluate(make_features(recent_count=11), profile)

        assert "velocity-fraud" in _fired(evaluation)
        assert evaluation.primary_reason == AnomalyType.FREQUENCY

    def test_velocity_soft_limit_requires_short_gap(self, engine, profile, make_features):
        """Six transactions only trigger when the last gap is under 30 minutes."""
        close = engine.evaluate(make_features(recent_count=6, hours_since_previous=0.2), profile)
        spread = engine.evaluate(make_features(recent_count=6, hours_since_previous=1.0), profile)

        assert _fired(close) == {"velocity-fraud"}
        assert close.matches[0].confidence == pytest.approx(0.92)
        assert _fired(spread) == set()

    def test_geographic_anomaly(self, engine, profile, make_features):
        """New location with more than twice the average spend."""
        features = make_features(amount=250.0, amount_deviation=3.0, is_new_location=True, location_rank=0)
        evaluation = engine.evaluate(features, profile)

        assert _fired(evaluation) == {"geographic-anomaly"}
        # 0.60 + (2.5 - 2) * 0.05
        assert evaluation.confidence == pytest.approx(0.625)
        assert evaluation.primary_reason == AnomalyType.LOCATION

    def test_off_hours(self, engine, profile, make_features):
        """Early morning spend outside active hours."""
        evaluation = engine.evaluate(make_features(hour_of_day=3, amount=200.0, amount_deviation=2.0), profile)

        assert _fired(evaluation) == {"time-anomaly"}
        assert evaluation.confidence == pytest.approx(0.60)
        assert evaluation.primary_reason == AnomalyType.TIME

    def test_off_hours_deep_night_bonus(self, engine, profile, make_features):
        """Before 02:00 the time rule gets a 0.1 bonus."""
        evaluation = engine.evaluate(make_features(hour_of_day=1, amount=200.0, amount_deviation=2.0), profile)

        assert evaluation.matches[0].confidence == pytest.approx(0.70)

    def test_off_hours_ignored_inside_active_hours(self, engine, profile, make_features):
        """Users active at night are not flagged for night spending."""
        night_owl = replace(profile, active_hours=list(range(24)))
        evaluation = engine.evaluate(make_features(hour_of_day=3, amount=200.0, amount_deviation=2.0), night_owl)

        assert _fired(evaluation) == set()

    def test_new_merchant_large_amount(self, engine, profile, make_features):
        """Unseen merchant with more than three times the average."""
        features = make_features(amount=350.0, amount_deviation=5.0, is_new_merchant=True, merchant_rank=0)
        evaluation = engine.evaluate(features, profile)

        assert _fired(evaluation) == {"new-merchant-large-amount"}
        assert evaluation.primary_reason == AnomalyType.MERCHANT

    def test_card_testing(self, engine, profile, make_features):
        """Several small round amounts in quick succession."""
        evaluation = engine.evaluate(
            make_features(amount=20.0, amount_deviation=1.6, recent_count=4, hours_since_previous=1.0),
            profile,
        )

        assert _fired(evaluation) == {"round-number-pattern"}
        assert evaluation.confidence == pytest.approx(0.75)

    def test_weekend_large_amount(self, engine, profile, make_features):
        """Large weekend spend by a weekday-only user is a low severity signal."""
        weekday_user = replace(profile, active_weekdays=[0, 1, 2, 3, 4])
        features = make_features(amount=450.0, amount_deviation=7.0, is_weekend=True, day_of_week=6)
        evaluation = engine.evaluate(features, weekday_user)

        assert _fired(evaluation) == {"weekend-large-transaction"}
        assert evaluation.confidence == pytest.approx(0.40)
        assert not evaluation.is_fraud

    def test_rapid_succession(self, engine, profile, make_features):
        """Three transactions within six minutes."""
        evaluation = engine.evaluate(make_features(recent_count=3, hours_since_previous=0.05), profile)

        assert _fired(evaluation) == {"rapid-successive-transactions"}
        assert evaluation.primary_reason == AnomalyType.FREQUENCY

    def test_micro_transactions(self, engine, profile, make_features):
        """Many tiny amounts look like card validation."""
        evaluation = engine.evaluate(
            make_features(amount=2.0, amount_deviation=1.96, recent_count=6, hours_since_previous=1.0),
            profile,
        )

        assert _fired(evaluation) == {"micro-transaction-pattern"}
        assert evaluation.confidence == pytest.approx(0.90)

    def test_extreme_deviation_aggregates_all_matches(self, engine, profile, make_features):
        """Everything unusual at once triggers five rules."""
        features = make_features(
            amount=1000.0,
            amount_deviation=18.0,
            hour_of_day=3,
            is_new_merchant=True,
            merchant_rank=0,
            is_new_location=True,
            location_rank=0,
        )
        evaluation = engine.evaluate(features, profile)

        assert _fired(evaluation) == {
            "large-amount-anomaly",
            "geographic-anomaly",
            "time-anomaly",
            "new-merchant-large-amount",
            "extreme-behavior-deviation",
        }
        # 0.7 * max + 0.3 * mean of (0.95, 0.90, 0.60, 0.60, 0.98)
        assert evaluation.confidence == pytest.approx(0.7 * 0.98 + 0.3 * 0.806)
        assert evaluation.primary_reason == AnomalyType.PATTERN
        assert len(evaluation.reasons) == 5


class TestAggregation:
    """Tests for confidence aggregation."""

    def _rule(self, rule_id, severity, anomaly_type=AnomalyType.PATTERN, adjust=None, predicate=None):
        return FraudRule(
            id=rule_id,
            name=rule_id,
            description=f"{rule_id} fired",
            predicate=predicate or (lambda f, p, t: True),
            severity=severity,
            anomaly_type=anomaly_type,
            adjust_confidence=adjust,
        )

    def test_ties_resolve_by_rule_id(self, profile, make_features):
        """Equal confidences pick the lexicographically smallest rule id."""
        registry = RuleRegistry([
            self._rule("b-rule", Severity.HIGH, AnomalyType.TIME),
            self._rule("a-rule", Severity.HIGH, AnomalyType.LOCATION),
        ])
        evaluation = RulesEngine(registry, RuleThresholds()).evaluate(make_features(), profile)

        assert evaluation.primary_reason == AnomalyType.LOCATION
        assert evaluation.confidence == pytest.approx(0.75)

    def test_confidence_clamped(self, profile, make_features):
        """Adjusted confidences are clamped to [0, 1]."""
        registry = RuleRegistry([
            self._rule("too-high", Severity.HIGH, adjust=lambda c, f, p, t: 5.0),
            self._rule("too-low", Severity.HIGH, adjust=lambda c, f, p, t: -1.0),
        ])
        evaluation = RulesEngine(registry, RuleThresholds()).evaluate(make_features(), profile)

        confidences = sorted(m.confidence for m in evaluation.matches)
        assert confidences == [0.0, 1.0]
        assert 0.0 <= evaluation.confidence <= 1.0
        assert evaluation.confidence == pytest.approx(0.7 + 0.3 * 0.5)

    def test_failing_predicate_is_skipped(self, profile, make_features):
        """A rule that raises does not abort evaluation."""

        def broken(f, p, t):
            raise ZeroDivisionError("bad rule")

        registry = RuleRegistry([
            self._rule("broken", Severity.CRITICAL, predicate=broken),
            self._rule("working", Severity.MEDIUM),
        ])
        evaluation = RulesEngine(registry, RuleThresholds()).evaluate(make_features(), profile)

        assert _fired(evaluation) == {"working"}
        assert evaluation.is_fraud

    def test_low_severity_alone_is_not_fraud(self, profile, make_features):
        """Overall confidence must exceed 0.5."""
        registry = RuleRegistry([self._rule("weak", Severity.LOW)])
        evaluation = RulesEngine(registry, RuleThresholds()).evaluate(make_features(), profile)

        assert evaluation.confidence == pytest.approx(0.40)
        assert not evaluation.is_fraud


class TestRuleRegistry:
    """Tests for runtime rule management."""

    def test_default_rules_loaded(self):
        """Ten built-in rules, all active."""
        registry = RuleRegistry(default_rules())

        assert len(registry) == 10
        assert len(registry.list_rules(active_only=True)) == 10

    def test_disable_rule_stops_it_firing(self, engine, profile, make_features):
        """A disabled rule is skipped on the next evaluation."""
        features = make_features(amount=600.0, amount_deviation=10.0)

        updated = engine.registry.disable("large-amount-anomaly")

        assert not updated.active
        assert engine.evaluate(features, profile).matches == []

        engine.registry.enable("large-amount-anomaly")
        assert _fired(engine.evaluate(features, profile)) == {"large-amount-anomaly"}

    def test_toggle_does_not_mutate_snapshots(self):
        """Readers holding a snapshot keep seeing the old rule."""
        registry = RuleRegistry(default_rules())
        before = registry.get_rule("velocity-fraud")

        registry.set_active("velocity-fraud", False)

        assert before.active
        assert not registry.get_rule("velocity-fraud").active
        assert len(registry.list_rules(active_only=True)) == 9

    def test_unknown_rule(self):
        """Toggling an unknown rule raises RuleNotFoundError."""
        registry = RuleRegistry(default_rules())

        with pytest.raises(RuleNotFoundError):
            registry.set_active("does-not-exist", True)

    def test_add_and_remove(self):
        """Rules can be added and removed at runtime."""
        registry = RuleRegistry()
        rule = FraudRule(
            id="custom",
            name="Custom",
            description="custom",
            predicate=lambda f, p, t: False,
            severity=Severity.LOW,
        )

        registry.add_rule(rule)
        assert registry.get_rule("custom") is rule
        assert registry.remove_rule("custom")
        assert not registry.remove_rule("custom")
        assert len(registry) == 0
