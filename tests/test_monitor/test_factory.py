"""Tests for the monitor factory: wiring, configured targets, end-to-end flow."""

from __future__ import annotations

from src.core.config import NotificationsConfig, Settings
from src.core.types import MetricSnapshot, MonitoredKey
from src.metrics import snapshots as m
from src.metrics.provider import MetricsProvider
from src.monitor.channels import (
    BrowserChannel,
    DiscordChannel,
    EmailChannel,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)
from src.monitor.factory import build_channels, create_alerting_stack
from src.monitor.types import DeliveryTarget, NotificationPayload, TargetKind


# ── Helpers ─────────────────────────────────────────────────────


class _StaticProvider(MetricsProvider):
    def __init__(self, messages: float = 0) -> None:
        self.messages = messages
        self.closed = False

    async def get_snapshot(self, server_id: str, vhost: str) -> list[MetricSnapshot]:
        key = MonitoredKey(
            workspace_id="ws-1",
            server_id=server_id,
            vhost=vhost,
            category=m.CATEGORY_QUEUE,
            resource_ref="orders",
        )
        return [MetricSnapshot(key=key, metric_name=m.QUEUE_MESSAGES, value=self.messages)]

    async def close(self) -> None:
        self.closed = True


class _Recorder(NotificationChannel):
    kind = TargetKind.WEBHOOK

    def __init__(self) -> None:
        self.sent: list[NotificationPayload] = []

    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        self.sent.append(payload)


# ── Wiring ──────────────────────────────────────────────────────


class TestFactoryWiring:
    def test_build_channels_covers_every_kind(self) -> None:
        channels = build_channels(Settings())
        assert set(channels) == set(TargetKind)
        assert isinstance(channels[TargetKind.WEBHOOK], WebhookChannel)
        assert isinstance(channels[TargetKind.SLACK], SlackChannel)
        assert isinstance(channels[TargetKind.DISCORD], DiscordChannel)
        assert isinstance(channels[TargetKind.EMAIL], EmailChannel)
        assert isinstance(channels[TargetKind.BROWSER], BrowserChannel)

    def test_browser_inbox_added_when_missing(self) -> None:
        stack = create_alerting_stack(
            Settings(), _StaticProvider(), channels={TargetKind.WEBHOOK: _Recorder()}
        )
        assert isinstance(stack.browser, BrowserChannel)
        assert stack.dispatcher.channels[TargetKind.BROWSER] is stack.browser

    async def test_add_configured_targets(self) -> None:
        stack = create_alerting_stack(Settings(), _StaticProvider(), channels={})
        added = await stack.add_configured_targets(
            [
                {"workspace_id": "ws-1", "server_id": "srv-1"},
                {"workspace_id": "ws-1", "server_id": "srv-2", "vhost": "prod"},
                {"server_id": "missing-workspace"},
            ]
        )
        assert added == 2
        assert {t.vhost for t in stack.scheduler.targets} == {"/", "prod"}


# ── End to end ──────────────────────────────────────────────────


class TestEndToEnd:
    async def test_poll_to_delivery(self) -> None:
        recorder = _Recorder()
        provider = _StaticProvider(messages=60_000)
        settings = Settings(notifications=NotificationsConfig(router_partitions=2))
        stack = create_alerting_stack(
            settings, provider, channels={TargetKind.WEBHOOK: recorder}
        )
        await stack.config_store.create_channel("ws-1", "webhook", "https://a.example/hook")
        poller = await stack.scheduler.add_target("ws-1", "srv-1")
        await stack.router.start()

        await poller.run_cycle()
        await stack.router.join()

        assert [p.event for p in recorder.sent] == ["alert.fired"]
        summary = await stack.service.summarize_active_alerts("ws-1")
        assert summary.critical == 1

        await stack.stop()
        assert provider.closed

    async def test_remove_server_notifies_resolution(self) -> None:
        recorder = _Recorder()
        stack = create_alerting_stack(
            Settings(), _StaticProvider(messages=60_000), channels={TargetKind.WEBHOOK: recorder}
        )
        await stack.config_store.create_channel("ws-1", "webhook", "https://a.example/hook")
        poller = await stack.scheduler.add_target("ws-1", "srv-1")
        await poller.run_cycle()

        await stack.service.remove_server("ws-1", "srv-1")

        # Router not started: transitions are handled inline.
        assert [p.event for p in recorder.sent] == ["alert.fired", "alert.resolved"]
        assert stack.scheduler.targets == []
