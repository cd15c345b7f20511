"""
Alerting for detected anomalies, goal risks and account security events.
"""

from ledgerwatch.alerting.models import Alert, AlertType
from ledgerwatch.alerting.push import FCMPushTransport, LoggingPushTransport, PushTransport

__all__ = [
    "Alert",
    "AlertType",
    "FCMPushTransport",
    "LoggingPushTransport",
    "PushTransport",
]
