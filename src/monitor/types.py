"""Types for the notification subsystem."""

from __future__ import annotations

import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from src.core.types import AlertInstance, Severity, TransitionType, utcnow


class TargetKind(StrEnum):
    """Every kind of destination a notification can go to."""

    WEBHOOK = "webhook"
    SLACK = "slack"
    DISCORD = "discord"
    EMAIL = "email"
    BROWSER = "browser"


class DeliveryTarget(BaseModel):
    """One resolved destination for a single dispatch."""

    kind: TargetKind
    # Channel id for external channels; the workspace id for email/browser.
    target_id: str
    workspace_id: str
    address: str = ""
    secret: str | None = None

    @property
    def is_channel(self) -> bool:
        return self.kind in (TargetKind.WEBHOOK, TargetKind.SLACK, TargetKind.DISCORD)

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.target_id}"


class NotificationPayload(BaseModel):
    """Channel-independent notification ready for formatting."""

    workspace_id: str
    server_id: str
    vhost: str = "/"
    event: str
    severity: Severity
    title: str
    body: str = ""
    fields: dict[str, str] = Field(default_factory=dict)
    transition: TransitionType | None = None
    alerts: list[AlertInstance] = Field(default_factory=list)
    # Number of transitions folded into a rate-limit summary.
    suppressed: int = 0
    timestamp: datetime.datetime = Field(default_factory=utcnow)

    @property
    def is_summary(self) -> bool:
        return self.suppressed > 0


class DeliveryResult(BaseModel):
    """Outcome of delivering one payload to one target."""

    target: DeliveryTarget
    ok: bool
    attempts: int = 0
    error: str | None = None
    permanent: bool = False
    disabled: bool = False


class DispatchReport(BaseModel):
    """Everything that happened to one transition event."""

    workspace_id: str
    alert_id: str | None = None
    transition: TransitionType | None = None
    results: list[DeliveryResult] = Field(default_factory=list)
    # Targets whose delivery was deferred into a rate-limit summary.
    coalesced: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def delivered(self) -> list[DeliveryResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[DeliveryResult]:
        return [r for r in self.results if not r.ok]

    @property
    def warnings(self) -> list[str]:
        """Tenant-visible messages about channels that were turned off."""
        return [
            f"{r.target.label} disabled: {r.error}" for r in self.results if r.disabled
        ]
