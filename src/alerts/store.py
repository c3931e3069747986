"""Keyed alert repository with optimistic (compare-and-swap) writes."""

from __future__ import annotations

import abc

from src.alerts.exceptions import (
    ConcurrencyConflict,
    DuplicateActiveAlertError,
    ImmutableAlertError,
)
from src.core.types import AlertInstance, AlertPage, AlertStatus, MonitoredKey, Severity

# Fields that may still change once an alert is resolved.
_POST_RESOLUTION_MUTABLE = frozenset(
    {"status", "resolved_at", "note", "acknowledged_at", "version"}
)


def check_resolved_write(stored: AlertInstance, updated: AlertInstance) -> None:
    """Raise if *updated* changes anything a resolved alert must keep."""
    if stored.status != AlertStatus.RESOLVED:
        return
    if updated.status != AlertStatus.RESOLVED:
        raise ImmutableAlertError(f"alert {stored.id} is resolved and cannot reopen")
    before = stored.model_dump(exclude=_POST_RESOLUTION_MUTABLE)
    after = updated.model_dump(exclude=_POST_RESOLUTION_MUTABLE)
    if before != after:
        changed = sorted(k for k in before if before[k] != after.get(k))
        raise ImmutableAlertError(
            f"alert {stored.id} is resolved; cannot change {', '.join(changed)}"
        )


def _sort_key_active(alert: AlertInstance) -> tuple[int, float]:
    return (-alert.severity.rank, -alert.last_seen_at.timestamp())


def _sort_key_resolved(alert: AlertInstance) -> float:
    return -(alert.resolved_at or alert.last_seen_at).timestamp()


class AlertStore(abc.ABC):
    """Persistence contract for alert instances.

    Every write after ``insert`` goes through ``compare_and_swap`` so a
    manual action and a concurrent poll cycle cannot overwrite each other.
    """

    @abc.abstractmethod
    async def get(self, alert_id: str) -> AlertInstance | None: ...

    @abc.abstractmethod
    async def get_active(self, key: MonitoredKey) -> AlertInstance | None: ...

    @abc.abstractmethod
    async def insert(self, alert: AlertInstance) -> AlertInstance:
        """Store a new active alert at version 1.

        Raises DuplicateActiveAlertError when the key already has one.
        """

    @abc.abstractmethod
    async def compare_and_swap(
        self, alert: AlertInstance, expected_version: int
    ) -> AlertInstance:
        """Replace the stored alert if its version still equals *expected_version*.

        Returns the stored copy with the version bumped. Raises
        ConcurrencyConflict on a version mismatch and ImmutableAlertError
        when the write would violate resolved-alert immutability.
        """

    @abc.abstractmethod
    async def list_active(
        self,
        workspace_id: str,
        server_id: str | None = None,
        vhost: str | None = None,
    ) -> list[AlertInstance]: ...

    @abc.abstractmethod
    async def query(
        self,
        workspace_id: str,
        status: AlertStatus,
        *,
        server_id: str | None = None,
        vhost: str | None = None,
        severity: Severity | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> AlertPage: ...


class InMemoryAlertStore(AlertStore):
    """Process-local store; all operations are atomic between awaits."""

    def __init__(self) -> None:
        self._alerts: dict[str, AlertInstance] = {}
        self._active: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._alerts)

    async def get(self, alert_id: str) -> AlertInstance | None:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert is not None else None

    async def get_active(self, key: MonitoredKey) -> AlertInstance | None:
        alert_id = self._active.get(key.scoped_fingerprint)
        if alert_id is None:
            return None
        return await self.get(alert_id)

    async def insert(self, alert: AlertInstance) -> AlertInstance:
        fp = alert.key.scoped_fingerprint
        if fp in self._active:
            raise DuplicateActiveAlertError(fp)
        if alert.id in self._alerts:
            raise DuplicateActiveAlertError(alert.id)
        stored = alert.model_copy(deep=True, update={"version": 1})
        self._alerts[stored.id] = stored
        if stored.is_active:
            self._active[fp] = stored.id
        return stored.model_copy(deep=True)

    async def compare_and_swap(
        self, alert: AlertInstance, expected_version: int
    ) -> AlertInstance:
        current = self._alerts.get(alert.id)
        if current is None or current.version != expected_version:
            raise ConcurrencyConflict(
                alert.id, expected_version, current.version if current else None
            )
        if alert.key != current.key or alert.first_fired_at != current.first_fired_at:
            raise ImmutableAlertError(f"alert {alert.id}: identity fields are immutable")
        check_resolved_write(current, alert)

        stored = alert.model_copy(deep=True, update={"version": expected_version + 1})
        self._alerts[stored.id] = stored
        fp = stored.key.scoped_fingerprint
        if not stored.is_active and self._active.get(fp) == stored.id:
            del self._active[fp]
        return stored.model_copy(deep=True)

    async def list_active(
        self,
        workspace_id: str,
        server_id: str | None = None,
        vhost: str | None = None,
    ) -> list[AlertInstance]:
        page = await self.query(
            workspace_id, AlertStatus.ACTIVE, server_id=server_id, vhost=vhost
        )
        return page.alerts

    async def query(
        self,
        workspace_id: str,
        status: AlertStatus,
        *,
        server_id: str | None = None,
        vhost: str | None = None,
        severity: Severity | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> AlertPage:
        matches = [
            a
            for a in self._alerts.values()
            if a.key.workspace_id == workspace_id
            and a.status == status
            and (server_id is None or a.key.server_id == server_id)
            and (vhost is None or a.key.vhost == vhost)
            and (severity is None or a.severity == severity)
            and (category is None or a.key.category == category)
        ]
        if status == AlertStatus.ACTIVE:
            matches.sort(key=_sort_key_active)
        else:
            matches.sort(key=_sort_key_resolved)
        total = len(matches)
        end = None if limit is None else offset + limit
        return AlertPage(
            alerts=[a.model_copy(deep=True) for a in matches[offset:end]],
            total=total,
        )
