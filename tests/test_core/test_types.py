"""Tests for src/core/types.py: ordering, validation and wire shape."""

from __future__ import annotations

import datetime

import pytest

from src.core.types import (
    AlertInstance,
    Channel,
    ChannelKind,
    Comparator,
    MonitoredKey,
    NotificationSettings,
    Severity,
    ThresholdConfig,
    ThresholdRule,
)


def _key(**kw: object) -> MonitoredKey:
    defaults: dict[str, object] = {
        "workspace_id": "ws-1",
        "server_id": "srv-1",
        "vhost": "/",
        "category": "queue",
        "resource_ref": "orders",
    }
    defaults.update(kw)
    return MonitoredKey(**defaults)  # type: ignore[arg-type]


class TestSeverity:
    def test_ordering(self) -> None:
        assert Severity.INFO < Severity.WARNING < Severity.CRITICAL
        assert Severity.CRITICAL >= Severity.CRITICAL
        assert max([Severity.WARNING, Severity.CRITICAL, Severity.INFO]) == Severity.CRITICAL

    def test_serialises_lowercase(self) -> None:
        assert Severity.CRITICAL.value == "critical"
        assert str(Severity.WARNING) == "warning"


class TestMonitoredKey:
    def test_fingerprint_format(self) -> None:
        key = _key()
        assert key.fingerprint == "srv-1-queue-/-orders"
        assert key.scoped_fingerprint == "ws-1:srv-1-queue-/-orders"

    def test_hashable_and_equal(self) -> None:
        assert _key() == _key()
        assert len({_key(), _key(), _key(resource_ref="payments")}) == 2

    def test_frozen(self) -> None:
        key = _key()
        with pytest.raises(ValueError):
            key.server_id = "other"  # type: ignore[misc]


class TestThresholdRule:
    def test_requires_a_threshold(self) -> None:
        with pytest.raises(ValueError):
            ThresholdRule()

    def test_gt_ordering_enforced(self) -> None:
        with pytest.raises(ValueError):
            ThresholdRule(warning=90, critical=80)

    def test_lt_ordering_enforced(self) -> None:
        ThresholdRule(warning=15, critical=10, comparator=Comparator.LT)
        with pytest.raises(ValueError):
            ThresholdRule(warning=10, critical=15, comparator=Comparator.LT)

    def test_hysteresis_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ThresholdRule(warning=1, hysteresis_cycles=0)

    def test_info_only_rule(self) -> None:
        assert ThresholdRule(info=24).warning is None

    def test_info_must_precede_warning(self) -> None:
        with pytest.raises(ValueError):
            ThresholdRule(info=50, warning=10)

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValueError):
            ThresholdRule(warnign=1)  # type: ignore[call-arg]


class TestThresholdConfig:
    def test_hysteresis_is_max_over_metrics(self) -> None:
        config = ThresholdConfig(
            workspace_id="ws-1",
            rules={
                "a": ThresholdRule(warning=1, hysteresis_cycles=2),
                "b": ThresholdRule(warning=1, hysteresis_cycles=4),
            },
        )
        assert config.hysteresis_for(["a", "b"], default=1) == 4
        assert config.hysteresis_for(["missing"], default=3) == 3


class TestAlertInstance:
    def test_wire_shape_is_camel_case(self) -> None:
        now = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
        alert = AlertInstance(
            id="a1",
            key=_key(),
            severity=Severity.WARNING,
            first_fired_at=now,
            last_seen_at=now,
            violating_metrics=["queue_messages"],
        )
        wire = alert.to_wire()
        assert wire["severity"] == "warning"
        assert wire["status"] == "active"
        assert wire["firstFiredAt"].startswith("2024-01-01T00:00:00")
        assert wire["key"]["serverId"] == "srv-1"
        assert wire["violatingMetrics"] == ["queue_messages"]

    def test_duration(self) -> None:
        start = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
        alert = AlertInstance(
            id="a1",
            key=_key(),
            severity=Severity.WARNING,
            first_fired_at=start,
            last_seen_at=start,
        )
        assert alert.duration_secs is None
        resolved = alert.model_copy(
            update={"resolved_at": start + datetime.timedelta(minutes=2)}
        )
        assert resolved.duration_secs == 120.0


class TestNotificationSettings:
    def test_defaults_all_severities(self) -> None:
        settings = NotificationSettings(workspace_id="ws-1")
        assert set(settings.email_severities) == set(Severity)
        assert settings.allows_server("anything")

    def test_server_allow_list(self) -> None:
        settings = NotificationSettings(workspace_id="ws-1", server_ids=["srv-1"])
        assert settings.allows_server("srv-1")
        assert not settings.allows_server("srv-2")

    def test_invalid_email_rejected(self) -> None:
        with pytest.raises(ValueError):
            NotificationSettings(workspace_id="ws-1", contact_email="not-an-email")


class TestChannel:
    def test_accepts_respects_filter_and_enabled(self) -> None:
        ch = Channel(
            id="c1",
            workspace_id="ws-1",
            kind=ChannelKind.SLACK,
            target="https://hooks.slack.com/x",
            severity_filter=[Severity.CRITICAL],
        )
        assert ch.accepts(Severity.CRITICAL)
        assert not ch.accepts(Severity.WARNING)
        assert not ch.model_copy(update={"enabled": False}).accepts(Severity.CRITICAL)

    def test_empty_filter_accepts_all(self) -> None:
        ch = Channel(
            id="c1", workspace_id="ws-1", kind=ChannelKind.WEBHOOK, target="https://x"
        )
        assert all(ch.accepts(s) for s in Severity)

    def test_wire_hides_secret(self) -> None:
        ch = Channel(
            id="c1",
            workspace_id="ws-1",
            kind=ChannelKind.WEBHOOK,
            target="https://x",
            secret="s3cret",
        )
        wire = ch.to_wire()
        assert "secret" not in wire
        assert wire["hasSecret"] is True
        assert wire["workspaceId"] == "ws-1"
