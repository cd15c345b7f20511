"""
Exception hierarchy for the detection pipeline.

Errors fall into four classes:
- data-unavailable: handled locally with defaults, never raised to callers
- transient-infrastructure: retried by the job processor
- permanent-domain: raised to the caller, never retried
- notification-delivery: logged and swallowed by the alert dispatcher
"""

from typing import Optional


class LedgerWatchError(Exception):
    """Base class for all pipeline errors."""


class InvalidTransactionError(LedgerWatchError):
    """Transaction submitted for analysis is malformed."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class ConfigurationError(LedgerWatchError):
    """Unsupported or inconsistent configuration."""


class AlertNotFoundError(LedgerWatchError):
    """Alert does not exist or is not owned by the requesting user."""

    def __init__(self, alert_id: str, user_id: str):
        super().__init__(f"Alert {alert_id} not found for user {user_id}")
        self.alert_id = alert_id
        self.user_id = user_id


class RuleNotFoundError(LedgerWatchError):
    """No fraud rule is registered under the given id."""


class TransientError(LedgerWatchError):
    """Temporary infrastructure failure; the operation may be retried."""


class NotificationError(LedgerWatchError):
    """Push notification could not be delivered."""
