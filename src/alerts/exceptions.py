"""Alert lifecycle exceptions."""

from __future__ import annotations


class AlertError(Exception):
    """Base exception for alert store and lifecycle errors."""


class ConcurrencyConflict(AlertError):
    """Optimistic-lock failure: the stored version moved under the writer."""

    def __init__(self, alert_id: str, expected: int, actual: int | None) -> None:
        super().__init__(
            f"alert {alert_id}: expected version {expected}, found {actual}"
        )
        self.alert_id = alert_id
        self.expected = expected
        self.actual = actual


class DuplicateActiveAlertError(AlertError):
    """An active alert already exists for the monitored key."""


class ImmutableAlertError(AlertError):
    """Attempt to change identity fields of a resolved alert, or reopen it."""


class AlertNotFoundError(AlertError, LookupError):
    """No alert with the given id is visible to the caller."""
