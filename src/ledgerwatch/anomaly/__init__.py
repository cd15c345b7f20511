"""
Anomaly detection for financial transactions.

Provides:
- Behavioral profiles and feature extraction
- Rule-based fraud detection with a hot-toggleable rule registry
- Statistical anomaly scoring
- Decision combining and user risk scoring
"""

from ledgerwatch.anomaly.models import (
    AnomalyResult,
    AnomalyType,
    BehaviorProfile,
    FeatureVector,
    RiskScoreComponents,
    Severity,
    Transaction,
)
from ledgerwatch.anomaly.rules_engine import FraudRule, RuleRegistry, RulesEngine
from ledgerwatch.anomaly.scorer import StatisticalScorer
from ledgerwatch.anomaly.combiner import DecisionCombiner, severity_for

__all__ = [
    "AnomalyResult",
    "AnomalyType",
    "BehaviorProfile",
    "FeatureVector",
    "RiskScoreComponents",
    "Severity",
    "Transaction",
    "FraudRule",
    "RuleRegistry",
    "RulesEngine",
    "StatisticalScorer",
    "DecisionCombiner",
    "severity_for",
]
