"""Metrics provider contract and snapshot builders."""

from src.metrics.exceptions import (
    MetricsAuthError,
    MetricsConnectionError,
    MetricsTimeoutError,
    MetricsUnavailable,
)
from src.metrics.provider import MetricsProvider, load_provider
from src.metrics.snapshots import connection_snapshots, node_snapshots, queue_snapshots

__all__ = [
    "MetricsAuthError",
    "MetricsConnectionError",
    "MetricsProvider",
    "MetricsTimeoutError",
    "MetricsUnavailable",
    "connection_snapshots",
    "load_provider",
    "node_snapshots",
    "queue_snapshots",
]
