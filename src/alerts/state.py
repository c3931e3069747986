"""AlertStateManager: per-key alert lifecycle (fire, escalate, resolve)."""

from __future__ import annotations

import asyncio
import datetime
import uuid
from collections.abc import Awaitable, Callable, Iterable

import structlog

from src.alerts.evaluator import observed_keys, reported_keys
from src.alerts.exceptions import (
    AlertNotFoundError,
    ConcurrencyConflict,
    DuplicateActiveAlertError,
)
from src.alerts.store import AlertStore
from src.core.config import EngineConfig
from src.core.types import (
    MONITORING_DEGRADED_CATEGORY,
    AlertInstance,
    AlertStatus,
    AlertTransitionEvent,
    MetricSnapshot,
    MonitoredKey,
    Severity,
    ThresholdConfig,
    TransitionType,
    ViolationEvent,
    utcnow,
)

logger = structlog.stdlib.get_logger()

TransitionCallback = Callable[[AlertTransitionEvent], Awaitable[None] | None]

# Returned by each keyed write: the stored alert (if any) and the event to emit.
_WriteResult = tuple[AlertInstance | None, AlertTransitionEvent | None]

FETCH_FAILURES_METRIC = "fetch_failures"


def degraded_key(workspace_id: str, server_id: str, vhost: str) -> MonitoredKey:
    """Key of the alert raised when a poll target keeps failing."""
    return MonitoredKey(
        workspace_id=workspace_id,
        server_id=server_id,
        vhost=vhost,
        category=MONITORING_DEGRADED_CATEGORY,
        resource_ref=server_id,
    )


def _new_alert_id() -> str:
    return uuid.uuid4().hex


def _worst(violations: list[ViolationEvent]) -> ViolationEvent:
    # max() keeps the first of equal ranks, so snapshot order breaks ties.
    return max(violations, key=lambda v: v.severity.rank)


class AlertStateManager:
    """Turns per-cycle violations into alert lifecycle transitions.

    Usage::

        manager = AlertStateManager(store)
        manager.on_transition(router.publish)

        events = await manager.apply_cycle(
            workspace_id, server_id, vhost, snapshots, violations, thresholds
        )

    Each monitored key is processed under its own ``asyncio.Lock`` and
    every store write is a compare-and-swap, retried a bounded number of
    times on conflict. A failure on one key is logged and the remaining
    keys are still processed.
    """

    def __init__(
        self,
        store: AlertStore,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        if config is None:
            from src.core.config import get_settings

            config = get_settings().engine
        self._store = store
        self._config = config
        self._clock = clock or utcnow
        self._callbacks: list[TransitionCallback] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._global_lock = asyncio.Lock()
        # Consecutive fetch failures per poll target (workspace, server, vhost).
        self._failures: dict[tuple[str, str, str], int] = {}

    @property
    def store(self) -> AlertStore:
        return self._store

    def on_transition(self, callback: TransitionCallback) -> None:
        """Register a callback for lifecycle transitions."""
        self._callbacks.append(callback)

    def failure_count(self, workspace_id: str, server_id: str, vhost: str) -> int:
        return self._failures.get((workspace_id, server_id, vhost), 0)

    async def _emit(self, event: AlertTransitionEvent) -> None:
        for cb in self._callbacks:
            try:
                result = cb(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "transition_callback_error",
                    transition=event.transition,
                    alert_id=event.alert.id,
                )

    async def _acquire_ref(self, fp: str) -> asyncio.Lock:
        async with self._global_lock:
            if fp not in self._locks:
                self._locks[fp] = asyncio.Lock()
            self._lock_users[fp] = self._lock_users.get(fp, 0) + 1
            return self._locks[fp]

    async def _release_ref(self, fp: str) -> None:
        # The last user drops the lock so the map only holds keys in flight.
        async with self._global_lock:
            users = self._lock_users.get(fp, 0) - 1
            if users > 0:
                self._lock_users[fp] = users
                return
            self._lock_users.pop(fp, None)
            self._locks.pop(fp, None)

    async def _run_keyed(
        self, key: MonitoredKey, write: Callable[[], Awaitable[_WriteResult]]
    ) -> _WriteResult:
        """Run *write* under the key lock, re-reading on CAS conflicts.

        The resulting event is emitted while the lock is still held so
        subscribers see transitions for one key in the order they happened.
        """
        fp = key.scoped_fingerprint
        lock = await self._acquire_ref(fp)
        try:
            return await self._write_locked(key, lock, write)
        finally:
            await self._release_ref(fp)

    async def _write_locked(
        self,
        key: MonitoredKey,
        lock: asyncio.Lock,
        write: Callable[[], Awaitable[_WriteResult]],
    ) -> _WriteResult:
        async with lock:
            attempts = self._config.cas_max_attempts
            for attempt in range(1, attempts + 1):
                try:
                    alert, event = await write()
                    break
                except (ConcurrencyConflict, DuplicateActiveAlertError) as exc:
                    if attempt >= attempts:
                        raise
                    logger.info(
                        "alert_write_conflict",
                        fingerprint=key.scoped_fingerprint,
                        attempt=attempt,
                        error=str(exc),
                    )
            if event is not None:
                await self._emit(event)
            return alert, event

    # ── Poll cycle ─────────────────────────────────────────────────

    async def apply_cycle(
        self,
        workspace_id: str,
        server_id: str,
        vhost: str,
        snapshots: Iterable[MetricSnapshot],
        violations: Iterable[ViolationEvent],
        thresholds: ThresholdConfig,
    ) -> list[AlertTransitionEvent]:
        """Apply one successful poll of ``(workspace, server, vhost)``.

        Keys with violations fire or refresh their alert. Active keys that
        were observed without violations, or are no longer reported at all,
        advance their clean streak. Keys seen only with null readings are
        left untouched, as are readings for any other server or vhost.
        """
        scope = (workspace_id, server_id, vhost)

        def in_scope(key: MonitoredKey) -> bool:
            return (key.workspace_id, key.server_id, key.vhost) == scope

        snapshots = [s for s in snapshots if in_scope(s.key)]
        events = await self.record_fetch_success(workspace_id, server_id, vhost)

        by_key: dict[MonitoredKey, list[ViolationEvent]] = {}
        for violation in violations:
            if in_scope(violation.key):
                by_key.setdefault(violation.key, []).append(violation)

        observed = observed_keys(snapshots)
        unknown = reported_keys(snapshots) - observed
        active = {
            a.key
            for a in await self._store.list_active(
                workspace_id, server_id=server_id, vhost=vhost
            )
            if a.key.category != MONITORING_DEGRADED_CATEGORY
        }

        for key in sorted(set(by_key) | active, key=lambda k: k.fingerprint):
            key_violations = by_key.get(key, [])
            if not key_violations and key in unknown:
                continue
            try:
                _, event = await self._run_keyed(
                    key,
                    lambda key=key, v=key_violations: self._apply_key(
                        key, v, thresholds
                    ),
                )
            except Exception:
                logger.exception(
                    "alert_key_failed",
                    workspace_id=workspace_id,
                    fingerprint=key.fingerprint,
                )
                continue
            if event is not None:
                events.append(event)
        return events

    async def _apply_key(
        self,
        key: MonitoredKey,
        violations: list[ViolationEvent],
        thresholds: ThresholdConfig,
    ) -> _WriteResult:
        current = await self._store.get_active(key)
        now = self._clock()

        if violations:
            worst = _worst(violations)
            metrics = list(dict.fromkeys(v.metric_name for v in violations))
            hysteresis = thresholds.hysteresis_for(
                metrics, self._config.default_hysteresis_cycles
            )
            if current is None:
                alert = AlertInstance(
                    id=_new_alert_id(),
                    key=key,
                    severity=worst.severity,
                    first_fired_at=now,
                    last_seen_at=now,
                    current_value=worst.value,
                    threshold_value=worst.threshold,
                    violating_metrics=metrics,
                    hysteresis_cycles=hysteresis,
                )
                stored = await self._store.insert(alert)
                logger.info(
                    "alert_fired",
                    alert_id=stored.id,
                    fingerprint=key.fingerprint,
                    severity=stored.severity,
                    value=worst.value,
                )
                return stored, AlertTransitionEvent(
                    transition=TransitionType.FIRED, alert=stored, occurred_at=now
                )

            changes: dict[str, object] = {
                "last_seen_at": now,
                "current_value": worst.value,
                "violating_metrics": metrics,
                "clean_streak": 0,
                "hysteresis_cycles": hysteresis,
            }
            escalated = worst.severity > current.severity
            if escalated:
                changes["severity"] = worst.severity
                changes["threshold_value"] = worst.threshold
            stored = await self._store.compare_and_swap(
                current.model_copy(update=changes), current.version
            )
            if not escalated:
                return stored, None
            logger.info(
                "alert_escalated",
                alert_id=stored.id,
                fingerprint=key.fingerprint,
                previous=current.severity,
                severity=stored.severity,
            )
            return stored, AlertTransitionEvent(
                transition=TransitionType.ESCALATED,
                alert=stored,
                occurred_at=now,
                previous_severity=current.severity,
            )

        if current is None:
            return None, None

        required = thresholds.hysteresis_for(
            current.violating_metrics, current.hysteresis_cycles
        )
        streak = current.clean_streak + 1
        if streak < required:
            stored = await self._store.compare_and_swap(
                current.model_copy(update={"clean_streak": streak}), current.version
            )
            return stored, None
        stored = await self._store.compare_and_swap(
            current.model_copy(
                update={
                    "clean_streak": streak,
                    "status": AlertStatus.RESOLVED,
                    "resolved_at": now,
                }
            ),
            current.version,
        )
        logger.info(
            "alert_resolved",
            alert_id=stored.id,
            fingerprint=key.fingerprint,
            clean_cycles=streak,
        )
        return stored, AlertTransitionEvent(
            transition=TransitionType.RESOLVED, alert=stored, occurred_at=now
        )

    # ── Fetch health ───────────────────────────────────────────────

    async def record_fetch_failure(
        self,
        workspace_id: str,
        server_id: str,
        vhost: str,
        error: BaseException | None = None,
    ) -> list[AlertTransitionEvent]:
        """Count a failed fetch; existing alerts are left exactly as they are.

        Once the consecutive count reaches ``degraded_after_failures`` a
        critical ``monitoring-degraded`` alert fires for the poll target.
        """
        scope = (workspace_id, server_id, vhost)
        count = self._failures.get(scope, 0) + 1
        self._failures[scope] = count
        logger.warning(
            "metrics_fetch_failed",
            workspace_id=workspace_id,
            server_id=server_id,
            vhost=vhost,
            consecutive_failures=count,
            error=str(error) if error is not None else None,
        )
        limit = self._config.degraded_after_failures
        if count < limit:
            return []

        key = degraded_key(workspace_id, server_id, vhost)

        async def write() -> _WriteResult:
            current = await self._store.get_active(key)
            now = self._clock()
            if current is not None:
                stored = await self._store.compare_and_swap(
                    current.model_copy(
                        update={"last_seen_at": now, "current_value": float(count)}
                    ),
                    current.version,
                )
                return stored, None
            alert = AlertInstance(
                id=_new_alert_id(),
                key=key,
                severity=Severity.CRITICAL,
                first_fired_at=now,
                last_seen_at=now,
                current_value=float(count),
                threshold_value=float(limit),
                violating_metrics=[FETCH_FAILURES_METRIC],
                hysteresis_cycles=1,
            )
            stored = await self._store.insert(alert)
            logger.error(
                "monitoring_degraded",
                alert_id=stored.id,
                workspace_id=workspace_id,
                server_id=server_id,
                vhost=vhost,
                consecutive_failures=count,
            )
            return stored, AlertTransitionEvent(
                transition=TransitionType.FIRED, alert=stored, occurred_at=now
            )

        _, event = await self._run_keyed(key, write)
        return [event] if event is not None else []

    async def record_fetch_success(
        self, workspace_id: str, server_id: str, vhost: str
    ) -> list[AlertTransitionEvent]:
        """Reset the failure counter and resolve an open degraded alert."""
        self._failures.pop((workspace_id, server_id, vhost), None)
        key = degraded_key(workspace_id, server_id, vhost)
        if await self._store.get_active(key) is None:
            return []

        async def write() -> _WriteResult:
            current = await self._store.get_active(key)
            if current is None:
                return None, None
            now = self._clock()
            stored = await self._store.compare_and_swap(
                current.model_copy(
                    update={"status": AlertStatus.RESOLVED, "resolved_at": now}
                ),
                current.version,
            )
            logger.info(
                "monitoring_recovered",
                alert_id=stored.id,
                workspace_id=workspace_id,
                server_id=server_id,
                vhost=vhost,
            )
            return stored, AlertTransitionEvent(
                transition=TransitionType.RESOLVED, alert=stored, occurred_at=now
            )

        _, event = await self._run_keyed(key, write)
        return [event] if event is not None else []

    # ── Manual actions ─────────────────────────────────────────────

    async def _require(self, alert_id: str, workspace_id: str | None) -> AlertInstance:
        alert = await self._store.get(alert_id)
        if alert is None or (
            workspace_id is not None and alert.key.workspace_id != workspace_id
        ):
            raise AlertNotFoundError(alert_id)
        return alert

    async def acknowledge(
        self, alert_id: str, note: str | None = None, workspace_id: str | None = None
    ) -> AlertInstance:
        """Mark an alert acknowledged. The clean streak is not touched."""
        alert = await self._require(alert_id, workspace_id)

        async def write() -> _WriteResult:
            current = await self._require(alert_id, workspace_id)
            changes: dict[str, object] = {"acknowledged_at": self._clock()}
            if note is not None:
                changes["note"] = note
            stored = await self._store.compare_and_swap(
                current.model_copy(update=changes), current.version
            )
            return stored, None

        stored, _ = await self._run_keyed(alert.key, write)
        if stored is None:
            raise AlertNotFoundError(alert_id)
        logger.info("alert_acknowledged", alert_id=alert_id)
        return stored

    async def resolve(
        self, alert_id: str, note: str | None = None, workspace_id: str | None = None
    ) -> AlertInstance:
        """Resolve immediately, bypassing hysteresis.

        Resolving an already-resolved alert only records the note.
        """
        alert = await self._require(alert_id, workspace_id)

        async def write() -> _WriteResult:
            current = await self._require(alert_id, workspace_id)
            changes: dict[str, object] = {}
            if note is not None:
                changes["note"] = note
            if not current.is_active:
                if not changes:
                    return current, None
                stored = await self._store.compare_and_swap(
                    current.model_copy(update=changes), current.version
                )
                return stored, None
            now = self._clock()
            changes.update(status=AlertStatus.RESOLVED, resolved_at=now)
            stored = await self._store.compare_and_swap(
                current.model_copy(update=changes), current.version
            )
            logger.info("alert_resolved_manually", alert_id=alert_id, note=note)
            return stored, AlertTransitionEvent(
                transition=TransitionType.RESOLVED, alert=stored, occurred_at=now
            )

        stored, _ = await self._run_keyed(alert.key, write)
        if stored is None:
            raise AlertNotFoundError(alert_id)
        return stored

    async def force_resolve_server(
        self, workspace_id: str, server_id: str, note: str = "server removed"
    ) -> list[AlertTransitionEvent]:
        """Resolve every active alert of a removed server exactly once."""
        for scope in [s for s in self._failures if s[:2] == (workspace_id, server_id)]:
            del self._failures[scope]

        events: list[AlertTransitionEvent] = []
        for alert in await self._store.list_active(workspace_id, server_id=server_id):

            async def write(alert_id: str = alert.id) -> _WriteResult:
                current = await self._store.get(alert_id)
                if current is None or not current.is_active:
                    return None, None
                now = self._clock()
                stored = await self._store.compare_and_swap(
                    current.model_copy(
                        update={
                            "status": AlertStatus.RESOLVED,
                            "resolved_at": now,
                            "note": note,
                        }
                    ),
                    current.version,
                )
                return stored, AlertTransitionEvent(
                    transition=TransitionType.RESOLVED, alert=stored, occurred_at=now
                )

            try:
                _, event = await self._run_keyed(alert.key, write)
            except Exception:
                logger.exception(
                    "force_resolve_failed", alert_id=alert.id, server_id=server_id
                )
                continue
            if event is not None:
                events.append(event)
        logger.info(
            "server_alerts_force_resolved",
            workspace_id=workspace_id,
            server_id=server_id,
            count=len(events),
        )
        return events
