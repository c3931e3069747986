"""Polling, transition routing and notification delivery."""

from src.monitor.channels import (
    BrowserChannel,
    DiscordChannel,
    EmailChannel,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)
from src.monitor.dispatcher import NotificationDispatcher
from src.monitor.exceptions import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from src.monitor.factory import AlertingStack, create_alerting_stack
from src.monitor.formatters import format_summary, format_transition
from src.monitor.poller import PollScheduler, PollTarget, ServerPoller
from src.monitor.rate_limiter import WorkspaceRateLimiter
from src.monitor.router import TransitionRouter
from src.monitor.types import (
    DeliveryResult,
    DeliveryTarget,
    DispatchReport,
    NotificationPayload,
    TargetKind,
)

__all__ = [
    "AlertingStack",
    "BrowserChannel",
    "DeliveryError",
    "DeliveryResult",
    "DeliveryTarget",
    "DiscordChannel",
    "DispatchReport",
    "EmailChannel",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationPayload",
    "PermanentDeliveryError",
    "PollScheduler",
    "PollTarget",
    "ServerPoller",
    "SlackChannel",
    "TargetKind",
    "TransientDeliveryError",
    "TransitionRouter",
    "WebhookChannel",
    "WorkspaceRateLimiter",
    "create_alerting_stack",
    "format_summary",
    "format_transition",
]
