"""Alert evaluation, lifecycle state and the service facade."""

from src.alerts.evaluator import classify, evaluate, observed_keys
from src.alerts.exceptions import (
    AlertError,
    AlertNotFoundError,
    ConcurrencyConflict,
    DuplicateActiveAlertError,
    ImmutableAlertError,
)
from src.alerts.service import AlertService
from src.alerts.state import AlertStateManager, degraded_key
from src.alerts.store import AlertStore, InMemoryAlertStore

__all__ = [
    "AlertError",
    "AlertNotFoundError",
    "AlertService",
    "AlertStateManager",
    "AlertStore",
    "ConcurrencyConflict",
    "DuplicateActiveAlertError",
    "ImmutableAlertError",
    "InMemoryAlertStore",
    "classify",
    "degraded_key",
    "evaluate",
    "observed_keys",
]
