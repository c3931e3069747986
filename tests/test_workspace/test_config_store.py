"""Tests for ConfigStore: TTL caching, atomic threshold updates, channel CRUD."""

from __future__ import annotations

import pytest

from src.core.types import ChannelKind, Comparator, Severity
from src.metrics import snapshots as m
from src.workspace.config_store import ConfigStore, InMemoryConfigBackend
from src.workspace.defaults import default_thresholds
from src.workspace.exceptions import ChannelNotFoundError, ConfigError, ValidationError


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _CountingBackend(InMemoryConfigBackend):
    def __init__(self) -> None:
        super().__init__()
        self.threshold_loads = 0
        self.channel_loads = 0

    async def load_threshold_overrides(self, workspace_id: str):  # type: ignore[override]
        self.threshold_loads += 1
        return await super().load_threshold_overrides(workspace_id)

    async def list_channels(self, workspace_id: str):  # type: ignore[override]
        self.channel_loads += 1
        return await super().list_channels(workspace_id)


def _store(ttl: float = 30.0) -> tuple[ConfigStore, _CountingBackend, _Clock]:
    backend = _CountingBackend()
    clock = _Clock()
    return ConfigStore(backend, ttl_secs=ttl, clock=clock), backend, clock


# ── Defaults ────────────────────────────────────────────────────


class TestDefaults:
    def test_default_thresholds_cover_core_metrics(self) -> None:
        config = default_thresholds("ws-1")
        mem = config.rule_for(m.MEMORY_USED_PCT)
        assert mem is not None and (mem.warning, mem.critical) == (80, 95)
        disk = config.rule_for(m.DISK_FREE_PCT)
        assert disk is not None and disk.comparator == Comparator.LT
        node_down = config.rule_for(m.NODE_DOWN)
        assert node_down is not None and node_down.warning is None
        assert node_down.critical == 1

    def test_hysteresis_applied_to_every_rule(self) -> None:
        config = default_thresholds("ws-1", hysteresis_cycles=4)
        assert all(r.hysteresis_cycles == 4 for r in config.rules.values())


# ── Caching ─────────────────────────────────────────────────────


class TestCaching:
    async def test_reads_are_cached_within_ttl(self) -> None:
        store, backend, clock = _store(ttl=30)
        await store.get_thresholds("ws-1")
        clock.now += 10
        await store.get_thresholds("ws-1")
        assert backend.threshold_loads == 1

    async def test_expired_entry_is_reloaded(self) -> None:
        store, backend, clock = _store(ttl=30)
        await store.get_thresholds("ws-1")
        clock.now += 31
        await store.get_thresholds("ws-1")
        assert backend.threshold_loads == 2

    async def test_explicit_invalidate(self) -> None:
        store, backend, _ = _store()
        await store.get_channels("ws-1")
        store.invalidate("ws-1")
        await store.get_channels("ws-1")
        assert backend.channel_loads == 2

    async def test_update_invalidates(self) -> None:
        store, _, _ = _store()
        before = await store.get_thresholds("ws-1")
        assert before.rules[m.QUEUE_MESSAGES].warning == 10_000
        await store.update_thresholds("ws-1", {m.QUEUE_MESSAGES: {"warning": 5_000}})
        after = await store.get_thresholds("ws-1")
        assert after.rules[m.QUEUE_MESSAGES].warning == 5_000

    async def test_workspaces_isolated(self) -> None:
        store, _, _ = _store()
        await store.update_thresholds("ws-1", {m.RUN_QUEUE: {"warning": 1, "critical": 2}})
        other = await store.get_thresholds("ws-2")
        assert other.rules[m.RUN_QUEUE].warning == 10


# ── Threshold updates ───────────────────────────────────────────


class TestThresholdUpdates:
    async def test_partial_update_keeps_other_fields(self) -> None:
        store, _, _ = _store()
        config = await store.update_thresholds(
            "ws-1", {m.QUEUE_MESSAGES: {"critical": 20_000}}
        )
        rule = config.rules[m.QUEUE_MESSAGES]
        assert rule.warning == 10_000
        assert rule.critical == 20_000

    async def test_invalid_update_rejected_atomically(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ConfigError) as exc_info:
            await store.update_thresholds(
                "ws-1",
                {
                    m.QUEUE_MESSAGES: {"warning": 1_000},
                    m.MEMORY_USED_PCT: {"warning": 99, "critical": 50},
                },
            )
        assert any(k.startswith(m.MEMORY_USED_PCT) for k in exc_info.value.errors)
        config = await store.get_thresholds("ws-1")
        # The valid half of the update was not applied either.
        assert config.rules[m.QUEUE_MESSAGES].warning == 10_000

    async def test_new_metric_requires_a_threshold(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ConfigError):
            await store.update_thresholds("ws-1", {"custom_metric": {"hysteresis_cycles": 3}})

    async def test_none_drops_override(self) -> None:
        store, _, _ = _store()
        await store.update_thresholds("ws-1", {m.RUN_QUEUE: {"warning": 1, "critical": 2}})
        config = await store.update_thresholds("ws-1", {m.RUN_QUEUE: None})
        assert config.rules[m.RUN_QUEUE].warning == 10

    async def test_non_mapping_rule_rejected(self) -> None:
        store, backend, _ = _store()
        with pytest.raises(ConfigError) as exc_info:
            await store.update_thresholds(
                "ws-1",
                {m.QUEUE_MESSAGES: 5, m.RUN_QUEUE: {"warning": 1, "critical": 2}},
            )
        assert m.QUEUE_MESSAGES in exc_info.value.errors
        assert await backend.load_threshold_overrides("ws-1") == {}

    async def test_misspelled_field_rejected(self) -> None:
        store, backend, _ = _store()
        with pytest.raises(ConfigError) as exc_info:
            await store.update_thresholds("ws-1", {m.QUEUE_MESSAGES: {"warnign": 1}})
        assert f"{m.QUEUE_MESSAGES}.warnign" in exc_info.value.errors
        assert await backend.load_threshold_overrides("ws-1") == {}

    async def test_non_mapping_update_rejected(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ConfigError):
            await store.update_thresholds("ws-1", [m.QUEUE_MESSAGES])  # type: ignore[arg-type]


# ── Notification settings ───────────────────────────────────────


class TestNotificationSettings:
    async def test_defaults_when_unset(self) -> None:
        store, _, _ = _store()
        settings = await store.get_notification_settings("ws-1")
        assert settings.workspace_id == "ws-1"
        assert settings.email_enabled is False

    async def test_update_and_read_back(self) -> None:
        store, _, _ = _store()
        await store.update_notification_settings(
            "ws-1",
            {
                "email_enabled": True,
                "contact_email": "ops@example.com",
                "email_severities": ["critical"],
            },
        )
        settings = await store.get_notification_settings("ws-1")
        assert settings.email_enabled is True
        assert settings.email_severities == [Severity.CRITICAL]

    async def test_invalid_settings_rejected(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ValidationError) as exc_info:
            await store.update_notification_settings("ws-1", {"contact_email": "nope"})
        assert "contact_email" in exc_info.value.errors

    async def test_unknown_settings_field_rejected(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ValidationError) as exc_info:
            await store.update_notification_settings("ws-1", {"emial_enabled": True})
        assert "emial_enabled" in exc_info.value.errors
        assert (await store.get_notification_settings("ws-1")).email_enabled is False

    async def test_non_mapping_settings_rejected(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ValidationError):
            await store.update_notification_settings("ws-1", ["email_enabled"])  # type: ignore[arg-type]


# ── Channels ────────────────────────────────────────────────────


class TestChannels:
    async def test_create_and_list(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel(
            "ws-1", "slack", "https://hooks.slack.com/services/x", severity_filter=["critical"]
        )
        assert ch.kind == ChannelKind.SLACK
        assert ch.severity_filter == [Severity.CRITICAL]
        channels = await store.get_channels("ws-1")
        assert [c.id for c in channels] == [ch.id]

    async def test_unknown_kind_rejected(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ValidationError):
            await store.create_channel("ws-1", "carrier-pigeon", "https://x.example")

    async def test_slack_requires_https(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ValidationError) as exc_info:
            await store.create_channel("ws-1", "slack", "http://hooks.slack.com/x")
        assert "target" in exc_info.value.errors

    async def test_webhook_accepts_http(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel("ws-1", "webhook", "http://internal:8080/hook")
        assert ch.kind == ChannelKind.WEBHOOK

    async def test_non_string_target_rejected(self) -> None:
        store, _, _ = _store()
        with pytest.raises(ValidationError) as exc_info:
            await store.create_channel("ws-1", "webhook", 42)  # type: ignore[arg-type]
        assert "target" in exc_info.value.errors
        assert await store.get_channels("ws-1") == []

    async def test_update_channel(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel("ws-1", "webhook", "https://a.example/hook")
        updated = await store.update_channel("ws-1", ch.id, target="https://b.example/hook")
        assert updated.target == "https://b.example/hook"
        assert (await store.get_channels("ws-1"))[0].target == "https://b.example/hook"

    async def test_update_rejects_unknown_fields(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel("ws-1", "webhook", "https://a.example/hook")
        with pytest.raises(ValidationError):
            await store.update_channel("ws-1", ch.id, kind="slack")

    async def test_disable_then_reenable_clears_reason(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel("ws-1", "discord", "https://discord.com/api/webhooks/1")
        disabled = await store.disable_channel("ws-1", ch.id, "HTTP 404")
        assert disabled.enabled is False
        assert disabled.disabled_reason == "HTTP 404"
        enabled = await store.update_channel("ws-1", ch.id, enabled=True)
        assert enabled.enabled is True
        assert enabled.disabled_reason is None

    async def test_delete_and_missing(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel("ws-1", "webhook", "https://a.example/hook")
        await store.delete_channel("ws-1", ch.id)
        assert await store.get_channels("ws-1") == []
        with pytest.raises(ChannelNotFoundError):
            await store.delete_channel("ws-1", ch.id)

    async def test_channels_scoped_to_workspace(self) -> None:
        store, _, _ = _store()
        ch = await store.create_channel("ws-1", "webhook", "https://a.example/hook")
        with pytest.raises(ChannelNotFoundError):
            await store.get_channel("ws-2", ch.id)
