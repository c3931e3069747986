"""Tests for AlertStateManager: fire/escalate/resolve lifecycle, hysteresis,
fetch-failure handling, manual actions and concurrency."""

from __future__ import annotations

import asyncio

import pytest

from src.alerts.evaluator import evaluate
from src.alerts.exceptions import AlertNotFoundError, ConcurrencyConflict
from src.alerts.state import AlertStateManager
from src.alerts.store import InMemoryAlertStore
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
    ThresholdRule,
    TransitionType,
)

WS = "ws-1"
SERVER = "srv-1"
VHOST = "/"


# ── Helpers ─────────────────────────────────────────────────────


def _key(resource: str = "orders", server: str = SERVER) -> MonitoredKey:
    return MonitoredKey(
        workspace_id=WS,
        server_id=server,
        vhost=VHOST,
        category="queue",
        resource_ref=resource,
    )


def _thresholds(hysteresis: int = 2) -> ThresholdConfig:
    return ThresholdConfig(
        workspace_id=WS,
        rules={
            "queue_messages": ThresholdRule(
                warning=5_000, critical=10_000, hysteresis_cycles=hysteresis
            )
        },
    )


def _manager(
    store: InMemoryAlertStore | None = None, **cfg: int
) -> tuple[AlertStateManager, list[AlertTransitionEvent]]:
    if store is None:
        store = InMemoryAlertStore()
    manager = AlertStateManager(store, EngineConfig(**cfg))
    events: list[AlertTransitionEvent] = []
    manager.on_transition(events.append)
    return manager, events


async def _cycle(
    manager: AlertStateManager,
    value: float | None,
    thresholds: ThresholdConfig | None = None,
    key: MonitoredKey | None = None,
    server: str = SERVER,
) -> list[AlertTransitionEvent]:
    thresholds = thresholds or _thresholds()
    snaps = [
        MetricSnapshot(key=key or _key(server=server), metric_name="queue_messages", value=value)
    ]
    return await manager.apply_cycle(
        WS, server, VHOST, snaps, evaluate(snaps, thresholds), thresholds
    )


async def _active(manager: AlertStateManager, key: MonitoredKey | None = None) -> AlertInstance | None:
    return await manager.store.get_active(key or _key())


# ── Firing and escalation ───────────────────────────────────────


class TestFiring:
    async def test_escalation_scenario(self) -> None:
        manager, events = _manager()

        assert await _cycle(manager, 100) == []
        assert await _active(manager) is None

        fired = await _cycle(manager, 8_000)
        assert [e.transition for e in fired] == [TransitionType.FIRED]
        alert = fired[0].alert
        assert alert.severity == Severity.WARNING
        assert alert.status == AlertStatus.ACTIVE
        assert alert.threshold_value == 5_000

        escalated = await _cycle(manager, 15_000)
        assert [e.transition for e in escalated] == [TransitionType.ESCALATED]
        assert escalated[0].alert.id == alert.id
        assert escalated[0].alert.severity == Severity.CRITICAL
        assert escalated[0].previous_severity == Severity.WARNING

        assert [e.transition for e in events] == [
            TransitionType.FIRED,
            TransitionType.ESCALATED,
        ]
        assert len(manager.store) == 1

    async def test_sustained_violation_fires_once(self) -> None:
        manager, events = _manager()
        for _ in range(6):
            await _cycle(manager, 15_000)
        assert [e.transition for e in events] == [TransitionType.FIRED]
        assert len(manager.store) == 1

    async def test_never_crossing_warning_creates_nothing(self) -> None:
        manager, events = _manager()
        for value in (0, 100, 4_999, 2_500, 4_000, 1):
            await _cycle(manager, value)
        assert events == []
        assert len(manager.store) == 0

    async def test_lower_severity_is_silent_refresh(self) -> None:
        manager, events = _manager()
        await _cycle(manager, 15_000)
        assert await _cycle(manager, 6_000) == []
        alert = await _active(manager)
        assert alert is not None
        assert alert.severity == Severity.CRITICAL
        assert alert.current_value == 6_000
        assert len(events) == 1

    async def test_refresh_updates_last_seen(self) -> None:
        manager, _ = _manager()
        await _cycle(manager, 8_000)
        first = await _active(manager)
        await asyncio.sleep(0.001)
        await _cycle(manager, 9_000)
        second = await _active(manager)
        assert second.last_seen_at >= first.last_seen_at
        assert second.first_fired_at == first.first_fired_at


# ── Resolution and hysteresis ───────────────────────────────────


class TestResolution:
    async def test_resolves_after_hysteresis_cycles(self) -> None:
        manager, events = _manager()
        await _cycle(manager, 15_000)
        assert await _cycle(manager, 200) == []
        resolved = await _cycle(manager, 200)
        assert [e.transition for e in resolved] == [TransitionType.RESOLVED]
        assert resolved[0].alert.resolved_at is not None
        assert await _active(manager) is None
        assert [e.transition for e in events].count(TransitionType.RESOLVED) == 1

    async def test_clean_then_violating_does_not_resolve(self) -> None:
        manager, _ = _manager()
        await _cycle(manager, 8_000)
        fired = await _active(manager)
        await _cycle(manager, 200)
        assert (await _active(manager)).clean_streak == 1
        await _cycle(manager, 8_000)
        await _cycle(manager, 200)
        alert = await _active(manager)
        assert alert is not None
        assert alert.id == fired.id
        assert alert.first_fired_at == fired.first_fired_at
        assert alert.clean_streak == 1

    async def test_rule_hysteresis_respected(self) -> None:
        manager, _ = _manager()
        thresholds = _thresholds(hysteresis=3)
        await _cycle(manager, 15_000, thresholds)
        await _cycle(manager, 200, thresholds)
        await _cycle(manager, 200, thresholds)
        assert await _active(manager) is not None
        resolved = await _cycle(manager, 200, thresholds)
        assert [e.transition for e in resolved] == [TransitionType.RESOLVED]

    async def test_flapping_creates_new_episode(self) -> None:
        manager, _ = _manager()
        first = (await _cycle(manager, 8_000))[0].alert
        await _cycle(manager, 0)
        await _cycle(manager, 0)
        again = await _cycle(manager, 8_000)
        assert [e.transition for e in again] == [TransitionType.FIRED]
        assert again[0].alert.id != first.id
        old = await manager.store.get(first.id)
        assert old.status == AlertStatus.RESOLVED

    async def test_null_reading_is_not_clean(self) -> None:
        manager, _ = _manager()
        await _cycle(manager, 8_000)
        await _cycle(manager, None)
        await _cycle(manager, None)
        alert = await _active(manager)
        assert alert is not None
        assert alert.clean_streak == 0

    async def test_unreported_key_counts_clean(self) -> None:
        manager, _ = _manager()
        await _cycle(manager, 8_000)
        thresholds = _thresholds()
        for _ in range(2):
            await manager.apply_cycle(WS, SERVER, VHOST, [], [], thresholds)
        assert await _active(manager) is None


# ── Fetch failures ──────────────────────────────────────────────


class TestFetchFailures:
    async def test_degraded_after_five_failures(self) -> None:
        manager, events = _manager(degraded_after_failures=5)
        await _cycle(manager, 15_000)
        events.clear()

        for _ in range(4):
            assert await manager.record_fetch_failure(WS, SERVER, VHOST) == []
        degraded = await manager.record_fetch_failure(WS, SERVER, VHOST, ConnectionError("x"))

        assert len(degraded) == 1
        alert = degraded[0].alert
        assert alert.key.category == MONITORING_DEGRADED_CATEGORY
        assert alert.severity == Severity.CRITICAL
        assert alert.current_value == 5
        original = await _active(manager)
        assert original is not None
        assert original.status == AlertStatus.ACTIVE

        # Further failures do not re-fire.
        assert await manager.record_fetch_failure(WS, SERVER, VHOST) == []
        assert len(events) == 1

    async def test_failure_does_not_advance_streak(self) -> None:
        manager, _ = _manager()
        await _cycle(manager, 8_000)
        await _cycle(manager, 200)
        await manager.record_fetch_failure(WS, SERVER, VHOST)
        await manager.record_fetch_failure(WS, SERVER, VHOST)
        alert = await _active(manager)
        assert alert is not None
        assert alert.clean_streak == 1

    async def test_success_resolves_degraded(self) -> None:
        manager, _ = _manager(degraded_after_failures=2)
        await manager.record_fetch_failure(WS, SERVER, VHOST)
        await manager.record_fetch_failure(WS, SERVER, VHOST)
        events = await _cycle(manager, 100)
        assert [e.transition for e in events] == [TransitionType.RESOLVED]
        assert events[0].alert.key.category == MONITORING_DEGRADED_CATEGORY
        assert manager.failure_count(WS, SERVER, VHOST) == 0

    async def test_counter_resets_on_success(self) -> None:
        manager, _ = _manager(degraded_after_failures=3)
        await manager.record_fetch_failure(WS, SERVER, VHOST)
        await manager.record_fetch_failure(WS, SERVER, VHOST)
        await _cycle(manager, 100)
        assert await manager.record_fetch_failure(WS, SERVER, VHOST) == []
        assert manager.failure_count(WS, SERVER, VHOST) == 1


# ── Manual actions ──────────────────────────────────────────────


class TestManualActions:
    async def test_acknowledge(self) -> None:
        manager, events = _manager()
        alert = (await _cycle(manager, 8_000))[0].alert
        await _cycle(manager, 200)
        acked = await manager.acknowledge(alert.id, "looking into it")
        assert acked.acknowledged_at is not None
        assert acked.note == "looking into it"
        assert acked.clean_streak == 1
        assert len(events) == 1

    async def test_manual_resolve_bypasses_hysteresis(self) -> None:
        manager, events = _manager()
        alert = (await _cycle(manager, 15_000))[0].alert
        resolved = await manager.resolve(alert.id, "restarted consumer")
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.note == "restarted consumer"
        assert [e.transition for e in events] == [
            TransitionType.FIRED,
            TransitionType.RESOLVED,
        ]

    async def test_resolving_twice_emits_once(self) -> None:
        manager, events = _manager()
        alert = (await _cycle(manager, 15_000))[0].alert
        await manager.resolve(alert.id)
        again = await manager.resolve(alert.id, "postmortem link")
        assert again.note == "postmortem link"
        assert [e.transition for e in events].count(TransitionType.RESOLVED) == 1

    async def test_other_workspace_cannot_see_alert(self) -> None:
        manager, _ = _manager()
        alert = (await _cycle(manager, 15_000))[0].alert
        with pytest.raises(AlertNotFoundError):
            await manager.resolve(alert.id, workspace_id="ws-other")
        with pytest.raises(AlertNotFoundError):
            await manager.acknowledge("missing-id")

    async def test_force_resolve_server(self) -> None:
        manager, events = _manager()
        await _cycle(manager, 15_000, key=_key("a"))
        await _cycle(manager, 15_000, key=_key("b"))
        await _cycle(manager, 15_000, key=_key("c", server="srv-2"), server="srv-2")
        events.clear()

        resolved = await manager.force_resolve_server(WS, SERVER)
        assert len(resolved) == 2
        assert all(e.alert.note == "server removed" for e in resolved)
        assert await manager.force_resolve_server(WS, SERVER) == []
        assert await _active(manager, _key("c", server="srv-2")) is not None


# ── Concurrency and isolation ───────────────────────────────────


class _ConflictOnceStore(InMemoryAlertStore):
    def __init__(self) -> None:
        super().__init__()
        self.conflicts = 0
        self.arm = False

    async def compare_and_swap(self, alert: AlertInstance, expected_version: int) -> AlertInstance:
        if self.arm:
            self.arm = False
            self.conflicts += 1
            raise ConcurrencyConflict(alert.id, expected_version, expected_version + 1)
        return await super().compare_and_swap(alert, expected_version)


class _BrokenKeyStore(InMemoryAlertStore):
    async def insert(self, alert: AlertInstance) -> AlertInstance:
        if alert.key.resource_ref == "bad":
            raise RuntimeError("storage failure")
        return await super().insert(alert)


class TestConcurrency:
    async def test_conflict_is_retried(self) -> None:
        store = _ConflictOnceStore()
        manager, events = _manager(store)
        await _cycle(manager, 8_000)
        store.arm = True
        escalated = await _cycle(manager, 15_000)
        assert store.conflicts == 1
        assert [e.transition for e in escalated] == [TransitionType.ESCALATED]
        assert len(events) == 2

    async def test_manual_resolve_races_poll_cycle(self) -> None:
        manager, events = _manager()
        alert = (await _cycle(manager, 15_000))[0].alert
        await asyncio.gather(manager.resolve(alert.id), _cycle(manager, 15_000))
        page = await manager.store.query(WS, AlertStatus.ACTIVE)
        assert page.total <= 1
        assert [e.transition for e in events].count(TransitionType.RESOLVED) == 1

    async def test_failing_key_does_not_block_others(self) -> None:
        manager, _ = _manager(_BrokenKeyStore())
        thresholds = _thresholds()
        snaps = [
            MetricSnapshot(key=_key("bad"), metric_name="queue_messages", value=20_000),
            MetricSnapshot(key=_key("good"), metric_name="queue_messages", value=20_000),
        ]
        events = await manager.apply_cycle(
            WS, SERVER, VHOST, snaps, evaluate(snaps, thresholds), thresholds
        )
        assert [e.alert.key.resource_ref for e in events] == ["good"]

    async def test_callback_error_does_not_break_cycle(self) -> None:
        manager, events = _manager()

        def boom(event: AlertTransitionEvent) -> None:
            raise RuntimeError("subscriber bug")

        manager.on_transition(boom)
        fired = await _cycle(manager, 15_000)
        assert len(fired) == 1
        assert len(events) == 1

    async def test_clean_keys_leave_no_locks_behind(self) -> None:
        manager, events = _manager()
        thresholds = _thresholds()
        for cycle in range(50):
            snaps = [
                MetricSnapshot(
                    key=_key(f"amq.gen-{cycle}-{i}"), metric_name="queue_messages", value=10
                )
                for i in range(20)
            ]
            await manager.apply_cycle(
                WS, SERVER, VHOST, snaps, evaluate(snaps, thresholds), thresholds
            )
        assert events == []
        assert manager._locks == {}

    async def test_lock_dropped_after_resolution(self) -> None:
        manager, _ = _manager()
        await _cycle(manager, 15_000)
        await _cycle(manager, 200)
        await _cycle(manager, 200)
        assert await _active(manager) is None
        assert manager._locks == {}
        assert manager._lock_users == {}


# ── Poll scope ──────────────────────────────────────────────────


class TestScope:
    async def test_other_vhost_readings_ignored(self) -> None:
        manager, events = _manager()
        thresholds = _thresholds()
        other = MonitoredKey(
            workspace_id=WS,
            server_id=SERVER,
            vhost="prod",
            category="queue",
            resource_ref="orders",
        )
        snaps = [MetricSnapshot(key=other, metric_name="queue_messages", value=20_000)]
        fired = await manager.apply_cycle(
            WS, SERVER, VHOST, snaps, evaluate(snaps, thresholds), thresholds
        )
        assert fired == []
        assert events == []
        assert await _active(manager, other) is None

    async def test_overlapping_pollers_do_not_share_hysteresis(self) -> None:
        manager, _ = _manager()
        thresholds = _thresholds(hysteresis=2)
        await _cycle(manager, 15_000)
        clean = [MetricSnapshot(key=_key(), metric_name="queue_messages", value=10)]

        # A poller for another vhost that also receives this vhost's queues.
        await manager.apply_cycle(
            WS, SERVER, "prod", clean, evaluate(clean, thresholds), thresholds
        )
        alert = await _active(manager)
        assert alert is not None
        assert alert.clean_streak == 0

        await _cycle(manager, 10)
        assert (await _active(manager)).clean_streak == 1
