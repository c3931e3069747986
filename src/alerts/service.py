"""AlertService: the operations the HTTP route layer calls."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from src.alerts.exceptions import AlertNotFoundError
from src.alerts.state import AlertStateManager
from src.core.types import (
    AlertInstance,
    AlertPage,
    AlertStatus,
    AlertSummary,
    AlertTransitionEvent,
    Channel,
    ChannelKind,
    ClusterHealth,
    NotificationSettings,
    Severity,
    ThresholdConfig,
)
from src.workspace.config_store import ConfigStore
from src.workspace.exceptions import ValidationError

if TYPE_CHECKING:
    from src.monitor.poller import PollScheduler

logger = structlog.stdlib.get_logger()


def _severity_filter(severity: Severity | str | None) -> Severity | None:
    if severity is None:
        return None
    try:
        return Severity(severity)
    except ValueError as exc:
        raise ValidationError(
            "invalid severity filter",
            {"severity": f"must be one of {', '.join(s.value for s in Severity)}"},
        ) from exc


def _issue(alert: AlertInstance) -> str:
    metrics = ", ".join(alert.violating_metrics) or alert.key.category
    value = "" if alert.current_value is None else f" ({alert.current_value:g})"
    return (
        f"{alert.severity.value}: {alert.key.category} {alert.key.resource_ref} "
        f"on {alert.key.server_id}, {metrics}{value}"
    )


def _health(counts: Mapping[Severity, int]) -> ClusterHealth:
    if counts[Severity.CRITICAL]:
        return ClusterHealth.CRITICAL
    if counts[Severity.WARNING]:
        return ClusterHealth.DEGRADED
    return ClusterHealth.HEALTHY


class AlertService:
    """Workspace-scoped facade over alert state and configuration.

    Every call takes the caller's ``workspace_id``; alerts and channels of
    other workspaces are reported as not found.
    """

    def __init__(
        self,
        state: AlertStateManager,
        config_store: ConfigStore,
        scheduler: PollScheduler | None = None,
    ) -> None:
        self._state = state
        self._store = state.store
        self._config_store = config_store
        self._scheduler = scheduler

    def attach_scheduler(self, scheduler: PollScheduler) -> None:
        self._scheduler = scheduler

    # ── Alerts ───────────────────────────────────────────────────

    async def _list(
        self,
        workspace_id: str,
        status: AlertStatus,
        server_id: str | None,
        vhost: str | None,
        severity: Severity | str | None,
        category: str | None,
        limit: int | None,
        offset: int,
    ) -> AlertPage:
        return await self._store.query(
            workspace_id,
            status,
            server_id=server_id,
            vhost=vhost,
            severity=_severity_filter(severity),
            category=category,
            limit=limit,
            offset=offset,
        )

    async def list_active_alerts(
        self,
        workspace_id: str,
        *,
        server_id: str | None = None,
        vhost: str | None = None,
        severity: Severity | str | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> AlertPage:
        return await self._list(
            workspace_id, AlertStatus.ACTIVE, server_id, vhost, severity, category,
            limit, offset,
        )

    async def list_resolved_alerts(
        self,
        workspace_id: str,
        *,
        server_id: str | None = None,
        vhost: str | None = None,
        severity: Severity | str | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> AlertPage:
        return await self._list(
            workspace_id, AlertStatus.RESOLVED, server_id, vhost, severity, category,
            limit, offset,
        )

    async def summarize_active_alerts(
        self,
        workspace_id: str,
        server_id: str | None = None,
        vhost: str | None = None,
    ) -> AlertSummary:
        """Counts per severity, overall health and the worst open issues.

        Any critical alert (a degraded poll target included) makes the
        health ``critical``; otherwise any warning makes it ``degraded``.
        Issues are ordered worst first, then longest-running first.
        """
        alerts = await self._store.list_active(workspace_id, server_id, vhost)
        counts = {s: 0 for s in Severity}
        for alert in alerts:
            counts[alert.severity] += 1
        worst = sorted(alerts, key=lambda a: (-a.severity.rank, a.first_fired_at))
        return AlertSummary(
            total=len(alerts),
            critical=counts[Severity.CRITICAL],
            warning=counts[Severity.WARNING],
            info=counts[Severity.INFO],
            health=_health(counts),
            issues=[_issue(a) for a in worst[: AlertSummary.ISSUE_LIMIT]],
        )

    async def get_alert(self, workspace_id: str, alert_id: str) -> AlertInstance:
        alert = await self._store.get(alert_id)
        if alert is None or alert.key.workspace_id != workspace_id:
            raise AlertNotFoundError(alert_id)
        return alert

    async def acknowledge_alert(
        self, workspace_id: str, alert_id: str, note: str | None = None
    ) -> AlertInstance:
        return await self._state.acknowledge(alert_id, note, workspace_id=workspace_id)

    async def resolve_alert(
        self, workspace_id: str, alert_id: str, note: str | None = None
    ) -> AlertInstance:
        return await self._state.resolve(alert_id, note, workspace_id=workspace_id)

    # ── Configuration ────────────────────────────────────────────

    async def get_thresholds(self, workspace_id: str) -> ThresholdConfig:
        return await self._config_store.get_thresholds(workspace_id)

    async def update_thresholds(
        self, workspace_id: str, updates: Mapping[str, Any]
    ) -> ThresholdConfig:
        return await self._config_store.update_thresholds(workspace_id, updates)

    async def get_notification_settings(self, workspace_id: str) -> NotificationSettings:
        return await self._config_store.get_notification_settings(workspace_id)

    async def update_notification_settings(
        self, workspace_id: str, changes: Mapping[str, Any]
    ) -> NotificationSettings:
        return await self._config_store.update_notification_settings(workspace_id, changes)

    async def list_channels(self, workspace_id: str) -> list[Channel]:
        return await self._config_store.get_channels(workspace_id)

    async def create_channel(
        self,
        workspace_id: str,
        kind: ChannelKind | str,
        target: str,
        secret: str | None = None,
        enabled: bool = True,
        severity_filter: list[Severity] | list[str] | None = None,
    ) -> Channel:
        return await self._config_store.create_channel(
            workspace_id,
            kind,
            target,
            secret=secret,
            enabled=enabled,
            severity_filter=severity_filter,
        )

    async def update_channel(
        self, workspace_id: str, channel_id: str, **changes: Any
    ) -> Channel:
        return await self._config_store.update_channel(workspace_id, channel_id, **changes)

    async def delete_channel(self, workspace_id: str, channel_id: str) -> None:
        await self._config_store.delete_channel(workspace_id, channel_id)

    # ── Servers ──────────────────────────────────────────────────

    async def remove_server(
        self, workspace_id: str, server_id: str, note: str = "server removed"
    ) -> list[AlertTransitionEvent]:
        """Stop polling a server and resolve its active alerts."""
        if self._scheduler is not None:
            return await self._scheduler.remove_server(workspace_id, server_id, note)
        logger.info(
            "server_removed_without_scheduler",
            workspace_id=workspace_id,
            server_id=server_id,
        )
        return await self._state.force_resolve_server(workspace_id, server_id, note)
