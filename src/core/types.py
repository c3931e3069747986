"""Domain types for alert evaluation and notification."""

from __future__ import annotations

import datetime
import re
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Severity(StrEnum):
    """Alert severity, ordinal ``info < warning < critical``."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __gt__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __ge__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __lt__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented

    def __le__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.INFO: 1,
    Severity.WARNING: 2,
    Severity.CRITICAL: 3,
}

ALL_SEVERITIES: list[Severity] = [Severity.CRITICAL, Severity.WARNING, Severity.INFO]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Comparator(StrEnum):
    """Direction of a threshold comparison (inclusive)."""

    GT = "gt"  # violating at or above the threshold
    LT = "lt"  # violating at or below the threshold


class AlertStatus(StrEnum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class TransitionType(StrEnum):
    FIRED = "fired"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class ClusterHealth(StrEnum):
    """Overall state derived from the worst active alert."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ChannelKind(StrEnum):
    WEBHOOK = "webhook"
    SLACK = "slack"
    DISCORD = "discord"


class WireModel(BaseModel):
    """Base for records exposed to the API layer as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ── Monitoring inputs ────────────────────────────────────────────


MONITORING_DEGRADED_CATEGORY = "monitoring-degraded"


class MonitoredKey(WireModel):
    """Identity under which one alert lifecycle is tracked."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    workspace_id: str
    server_id: str
    vhost: str = "/"
    category: str
    resource_ref: str

    @property
    def fingerprint(self) -> str:
        return f"{self.server_id}-{self.category}-{self.vhost}-{self.resource_ref}"

    @property
    def scoped_fingerprint(self) -> str:
        return f"{self.workspace_id}:{self.fingerprint}"


class MetricSnapshot(BaseModel):
    """One metric reading for a monitored resource; never persisted."""

    key: MonitoredKey
    metric_name: str
    value: float | None = None
    observed_at: datetime.datetime = Field(default_factory=utcnow)


class ThresholdRule(BaseModel):
    """Info/warning/critical thresholds for one metric.

    Levels are optional but at least one is required. Set levels must be
    ordered in the comparator's direction (info, then warning, then critical).
    """

    model_config = ConfigDict(extra="forbid")

    info: float | None = None
    warning: float | None = None
    critical: float | None = None
    comparator: Comparator = Comparator.GT
    hysteresis_cycles: int = Field(default=2, ge=1)

    @model_validator(mode="after")
    def _check_ordering(self) -> ThresholdRule:
        levels = [
            (name, value)
            for name, value in (
                ("info", self.info),
                ("warning", self.warning),
                ("critical", self.critical),
            )
            if value is not None
        ]
        if not levels:
            raise ValueError("at least one of info, warning or critical is required")
        for (lower, low), (higher, high) in zip(levels, levels[1:]):
            if self.comparator == Comparator.GT and high < low:
                raise ValueError(f"{higher} must be >= {lower} for comparator 'gt'")
            if self.comparator == Comparator.LT and high > low:
                raise ValueError(f"{higher} must be <= {lower} for comparator 'lt'")
        return self


class ThresholdConfig(BaseModel):
    """Per-workspace mapping of metric name to threshold rule."""

    workspace_id: str
    rules: dict[str, ThresholdRule] = Field(default_factory=dict)

    def rule_for(self, metric_name: str) -> ThresholdRule | None:
        return self.rules.get(metric_name)

    def hysteresis_for(self, metric_names: list[str], default: int) -> int:
        cycles = [
            rule.hysteresis_cycles
            for name in metric_names
            if (rule := self.rules.get(name)) is not None
        ]
        return max(cycles) if cycles else default


class ViolationEvent(BaseModel):
    """A single metric crossing a threshold in one evaluation cycle."""

    key: MonitoredKey
    metric_name: str
    severity: Severity
    value: float
    threshold: float


# ── Alert records ────────────────────────────────────────────────


class AlertInstance(WireModel):
    """A materialised, stateful record of one violation episode."""

    id: str
    key: MonitoredKey
    severity: Severity
    status: AlertStatus = AlertStatus.ACTIVE
    first_fired_at: datetime.datetime
    last_seen_at: datetime.datetime
    resolved_at: datetime.datetime | None = None
    current_value: float | None = None
    threshold_value: float | None = None
    violating_metrics: list[str] = Field(default_factory=list)
    note: str | None = None
    acknowledged_at: datetime.datetime | None = None
    # Internal bookkeeping, carried through compare-and-swap writes.
    version: int = 0
    clean_streak: int = 0
    hysteresis_cycles: int = 2

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    @property
    def duration_secs(self) -> float | None:
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.first_fired_at).total_seconds()


class AlertTransitionEvent(BaseModel):
    """A lifecycle transition emitted by the state manager."""

    transition: TransitionType
    alert: AlertInstance
    occurred_at: datetime.datetime = Field(default_factory=utcnow)
    previous_severity: Severity | None = None

    @property
    def workspace_id(self) -> str:
        return self.alert.key.workspace_id

    @property
    def severity(self) -> Severity:
        return self.alert.severity


class AlertPage(BaseModel):
    """One page of alerts plus the unpaginated total."""

    alerts: list[AlertInstance] = Field(default_factory=list)
    total: int = 0


class AlertSummary(BaseModel):
    """Active alert counts per severity, overall health and the top issues."""

    total: int = 0
    critical: int = 0
    warning: int = 0
    info: int = 0
    health: ClusterHealth = ClusterHealth.HEALTHY
    # Worst first, capped at ISSUE_LIMIT.
    issues: list[str] = Field(default_factory=list)

    ISSUE_LIMIT: ClassVar[int] = 5


# ── Workspace configuration ──────────────────────────────────────


class NotificationSettings(WireModel):
    """Workspace-level email / browser notification preferences."""

    workspace_id: str
    email_enabled: bool = False
    contact_email: str | None = None
    email_severities: list[Severity] = Field(
        default_factory=lambda: list(ALL_SEVERITIES)
    )
    browser_enabled: bool = False
    browser_severities: list[Severity] = Field(
        default_factory=lambda: list(ALL_SEVERITIES)
    )
    # None or empty means every server notifies.
    server_ids: list[str] | None = None
    # Per-workspace notification cap per window; None uses the global default.
    rate_limit: int | None = Field(default=None, ge=1)

    @field_validator("contact_email")
    @classmethod
    def _check_email(cls, value: str | None) -> str | None:
        if value is not None and not _EMAIL_RE.match(value):
            raise ValueError(f"invalid contact email: {value!r}")
        return value

    def allows_server(self, server_id: str) -> bool:
        return not self.server_ids or server_id in self.server_ids


class Channel(WireModel):
    """A configured outbound notification target."""

    id: str
    workspace_id: str
    kind: ChannelKind
    target: str
    secret: str | None = None
    enabled: bool = True
    severity_filter: list[Severity] | None = None
    disabled_reason: str | None = None
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude={"secret"})
        data["hasSecret"] = bool(self.secret)
        return data

    def accepts(self, severity: Severity) -> bool:
        if not self.enabled:
            return False
        return not self.severity_filter or severity in self.severity_filter
