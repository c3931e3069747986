"""Core module: config, types, logging, retry."""

from src.core.config import Settings, get_settings, load_settings, reset_settings
from src.core.logging import setup_logging
from src.core.retry import RetryPolicy, retry_async, with_retry
from src.core.types import (
    AlertInstance,
    AlertPage,
    AlertStatus,
    AlertSummary,
    AlertTransitionEvent,
    Channel,
    ChannelKind,
    ClusterHealth,
    Comparator,
    MetricSnapshot,
    MonitoredKey,
    NotificationSettings,
    Severity,
    ThresholdConfig,
    ThresholdRule,
    TransitionType,
    ViolationEvent,
)

__all__ = [
    "AlertInstance",
    "AlertPage",
    "AlertStatus",
    "AlertSummary",
    "AlertTransitionEvent",
    "Channel",
    "ChannelKind",
    "ClusterHealth",
    "Comparator",
    "MetricSnapshot",
    "MonitoredKey",
    "NotificationSettings",
    "RetryPolicy",
    "Settings",
    "Severity",
    "ThresholdConfig",
    "ThresholdRule",
    "TransitionType",
    "ViolationEvent",
    "get_settings",
    "load_settings",
    "reset_settings",
    "retry_async",
    "setup_logging",
    "with_retry",
]
