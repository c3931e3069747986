"""Read-through cache of per-workspace thresholds, settings and channels.

Evaluation cycles run far more often than configuration changes, so reads
are served from a short-TTL cache. Every update call invalidates the
workspace's entries; the external API layer can also call ``invalidate``.
"""

from __future__ import annotations

import abc
import asyncio
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from urllib.parse import urlparse

import pydantic
import structlog

from src.core.types import (
    Channel,
    ChannelKind,
    NotificationSettings,
    Severity,
    ThresholdConfig,
    ThresholdRule,
    utcnow,
)
from src.workspace.defaults import default_rules
from src.workspace.exceptions import ChannelNotFoundError, ConfigError, ValidationError

logger = structlog.stdlib.get_logger()

T = TypeVar("T")

_CHANNEL_FIELDS = frozenset({"target", "secret", "enabled", "severity_filter"})
_SETTINGS_FIELDS = frozenset(NotificationSettings.model_fields) - {"workspace_id"}


# ── Backends ─────────────────────────────────────────────────────


class ConfigBackend(abc.ABC):
    """Persistence contract for workspace configuration."""

    @abc.abstractmethod
    async def load_threshold_overrides(self, workspace_id: str) -> dict[str, ThresholdRule]:
        """Return only the rules the workspace has customised."""

    @abc.abstractmethod
    async def save_threshold_overrides(
        self, workspace_id: str, rules: dict[str, ThresholdRule]
    ) -> None:
        """Replace the workspace's overrides in one write."""

    @abc.abstractmethod
    async def load_notification_settings(
        self, workspace_id: str
    ) -> NotificationSettings | None: ...

    @abc.abstractmethod
    async def save_notification_settings(self, settings: NotificationSettings) -> None: ...

    @abc.abstractmethod
    async def list_channels(self, workspace_id: str) -> list[Channel]: ...

    @abc.abstractmethod
    async def save_channel(self, channel: Channel) -> None: ...

    @abc.abstractmethod
    async def delete_channel(self, workspace_id: str, channel_id: str) -> bool: ...

    async def get_channel(self, workspace_id: str, channel_id: str) -> Channel | None:
        for channel in await self.list_channels(workspace_id):
            if channel.id == channel_id:
                return channel
        return None


class InMemoryConfigBackend(ConfigBackend):
    """Dict-backed backend used by tests and single-process deployments."""

    def __init__(self) -> None:
        self._thresholds: dict[str, dict[str, ThresholdRule]] = {}
        self._settings: dict[str, NotificationSettings] = {}
        self._channels: dict[str, dict[str, Channel]] = {}

    async def load_threshold_overrides(self, workspace_id: str) -> dict[str, ThresholdRule]:
        return dict(self._thresholds.get(workspace_id, {}))

    async def save_threshold_overrides(
        self, workspace_id: str, rules: dict[str, ThresholdRule]
    ) -> None:
        self._thresholds[workspace_id] = dict(rules)

    async def load_notification_settings(
        self, workspace_id: str
    ) -> NotificationSettings | None:
        return self._settings.get(workspace_id)

    async def save_notification_settings(self, settings: NotificationSettings) -> None:
        self._settings[settings.workspace_id] = settings

    async def list_channels(self, workspace_id: str) -> list[Channel]:
        return sorted(
            self._channels.get(workspace_id, {}).values(),
            key=lambda c: c.created_at,
        )

    async def save_channel(self, channel: Channel) -> None:
        self._channels.setdefault(channel.workspace_id, {})[channel.id] = channel

    async def delete_channel(self, workspace_id: str, channel_id: str) -> bool:
        return self._channels.get(workspace_id, {}).pop(channel_id, None) is not None


# ── Cache ────────────────────────────────────────────────────────


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    fetched_at: float

    def is_stale(self, ttl_secs: float, now: float) -> bool:
        return (now - self.fetched_at) > ttl_secs


def _error_map(exc: pydantic.ValidationError, prefix: str = "") -> dict[str, str]:
    errors: dict[str, str] = {}
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        field = f"{prefix}.{loc}" if prefix and loc else (prefix or loc or "__root__")
        errors[field] = err["msg"]
    return errors


def _check_target(kind: ChannelKind, target: str) -> None:
    parsed = urlparse(target)
    allowed = ("https",) if kind in (ChannelKind.SLACK, ChannelKind.DISCORD) else ("http", "https")
    if parsed.scheme not in allowed or not parsed.netloc:
        raise ValidationError(
            f"invalid {kind.value} target",
            {"target": f"must be an {' or '.join(allowed)} URL"},
        )


class ConfigStore:
    """TTL cache over a :class:`ConfigBackend`.

    Usage::

        store = ConfigStore(InMemoryConfigBackend(), ttl_secs=30)
        thresholds = await store.get_thresholds("ws-1")
        await store.update_thresholds("ws-1", {"queue_messages": {"warning": 5000}})
    """

    DEFAULT_TTL_SECS = 30.0

    def __init__(
        self,
        backend: ConfigBackend,
        ttl_secs: float = DEFAULT_TTL_SECS,
        default_hysteresis_cycles: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._ttl_secs = ttl_secs
        self._default_hysteresis = default_hysteresis_cycles
        self._clock = clock
        self._thresholds: dict[str, _CacheEntry[ThresholdConfig]] = {}
        self._settings: dict[str, _CacheEntry[NotificationSettings]] = {}
        self._channels: dict[str, _CacheEntry[list[Channel]]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    @property
    def backend(self) -> ConfigBackend:
        return self._backend

    async def _get_lock(self, workspace_id: str) -> asyncio.Lock:
        async with self._global_lock:
            if workspace_id not in self._locks:
                self._locks[workspace_id] = asyncio.Lock()
            return self._locks[workspace_id]

    def _fresh(self, cache: dict[str, _CacheEntry[T]], workspace_id: str) -> T | None:
        entry = cache.get(workspace_id)
        if entry is None or entry.is_stale(self._ttl_secs, self._clock()):
            return None
        return entry.value

    def invalidate(self, workspace_id: str | None = None) -> None:
        """Drop cached entries for one workspace, or all when None."""
        for cache in (self._thresholds, self._settings, self._channels):
            if workspace_id is None:
                cache.clear()
            else:
                cache.pop(workspace_id, None)

    # ── Thresholds ───────────────────────────────────────────────

    async def get_thresholds(self, workspace_id: str) -> ThresholdConfig:
        cached = self._fresh(self._thresholds, workspace_id)
        if cached is not None:
            return cached
        lock = await self._get_lock(workspace_id)
        async with lock:
            cached = self._fresh(self._thresholds, workspace_id)
            if cached is not None:
                return cached
            rules = default_rules(self._default_hysteresis)
            rules.update(await self._backend.load_threshold_overrides(workspace_id))
            config = ThresholdConfig(workspace_id=workspace_id, rules=rules)
            self._thresholds[workspace_id] = _CacheEntry(config, self._clock())
            return config

    async def update_thresholds(
        self,
        workspace_id: str,
        updates: Mapping[str, Mapping[str, Any] | ThresholdRule | None],
    ) -> ThresholdConfig:
        """Merge partial rule updates; all-or-nothing.

        A ``None`` value drops the workspace override for that metric.
        Unknown rule fields and non-mapping values reject the whole update.
        """
        if not isinstance(updates, Mapping):
            raise ConfigError(
                "invalid threshold update", {"__root__": "expected a mapping of metric rules"}
            )
        defaults = default_rules(self._default_hysteresis)
        overrides = await self._backend.load_threshold_overrides(workspace_id)
        merged = dict(overrides)
        errors: dict[str, str] = {}

        for metric_name, update in updates.items():
            if update is None:
                merged.pop(metric_name, None)
                continue
            if isinstance(update, ThresholdRule):
                merged[metric_name] = update
                continue
            if not isinstance(update, Mapping):
                errors[metric_name] = "expected a mapping of rule fields or null"
                continue
            base = merged.get(metric_name) or defaults.get(metric_name)
            data = base.model_dump() if base is not None else {}
            data.update(update)
            try:
                merged[metric_name] = ThresholdRule.model_validate(data)
            except pydantic.ValidationError as exc:
                errors.update(_error_map(exc, metric_name))

        if errors:
            logger.info("threshold_update_rejected", workspace_id=workspace_id, errors=errors)
            raise ConfigError("invalid threshold update", errors)

        await self._backend.save_threshold_overrides(workspace_id, merged)
        self.invalidate(workspace_id)
        logger.info(
            "thresholds_updated", workspace_id=workspace_id, metrics=sorted(updates)
        )
        return await self.get_thresholds(workspace_id)

    # ── Notification settings ────────────────────────────────────

    async def get_notification_settings(self, workspace_id: str) -> NotificationSettings:
        cached = self._fresh(self._settings, workspace_id)
        if cached is not None:
            return cached
        lock = await self._get_lock(workspace_id)
        async with lock:
            cached = self._fresh(self._settings, workspace_id)
            if cached is not None:
                return cached
            settings = await self._backend.load_notification_settings(workspace_id)
            if settings is None:
                settings = NotificationSettings(workspace_id=workspace_id)
            self._settings[workspace_id] = _CacheEntry(settings, self._clock())
            return settings

    async def update_notification_settings(
        self, workspace_id: str, changes: Mapping[str, Any]
    ) -> NotificationSettings:
        if not isinstance(changes, Mapping):
            raise ValidationError(
                "invalid notification settings", {"__root__": "expected a mapping"}
            )
        unknown = set(changes) - _SETTINGS_FIELDS
        if unknown:
            raise ValidationError(
                "unknown notification settings",
                {name: "not a settings field" for name in sorted(unknown)},
            )
        current = await self._backend.load_notification_settings(workspace_id)
        data = (current or NotificationSettings(workspace_id=workspace_id)).model_dump()
        data.update(changes)
        data["workspace_id"] = workspace_id
        try:
            settings = NotificationSettings.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError("invalid notification settings", _error_map(exc)) from exc
        await self._backend.save_notification_settings(settings)
        self.invalidate(workspace_id)
        logger.info(
            "notification_settings_updated",
            workspace_id=workspace_id,
            fields=sorted(changes),
        )
        return settings

    # ── Channels ─────────────────────────────────────────────────

    async def get_channels(self, workspace_id: str) -> list[Channel]:
        cached = self._fresh(self._channels, workspace_id)
        if cached is not None:
            return list(cached)
        lock = await self._get_lock(workspace_id)
        async with lock:
            cached = self._fresh(self._channels, workspace_id)
            if cached is None:
                cached = await self._backend.list_channels(workspace_id)
                self._channels[workspace_id] = _CacheEntry(cached, self._clock())
            return list(cached)

    async def get_channel(self, workspace_id: str, channel_id: str) -> Channel:
        channel = await self._backend.get_channel(workspace_id, channel_id)
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        return channel

    async def create_channel(
        self,
        workspace_id: str,
        kind: str | ChannelKind,
        target: str,
        secret: str | None = None,
        enabled: bool = True,
        severity_filter: list[str] | list[Severity] | None = None,
    ) -> Channel:
        try:
            channel = Channel(
                id=uuid.uuid4().hex,
                workspace_id=workspace_id,
                kind=kind,
                target=target,
                secret=secret or None,
                enabled=enabled,
                severity_filter=severity_filter,
            )
        except pydantic.ValidationError as exc:
            raise ValidationError("invalid channel definition", _error_map(exc)) from exc
        _check_target(channel.kind, channel.target)
        await self._backend.save_channel(channel)
        self.invalidate(workspace_id)
        logger.info(
            "channel_created",
            workspace_id=workspace_id,
            channel_id=channel.id,
            kind=channel.kind,
        )
        return channel

    async def update_channel(
        self, workspace_id: str, channel_id: str, **changes: Any
    ) -> Channel:
        unknown = set(changes) - _CHANNEL_FIELDS
        if unknown:
            raise ValidationError(
                "unknown channel fields",
                {name: "not an updatable field" for name in sorted(unknown)},
            )
        current = await self.get_channel(workspace_id, channel_id)
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()
        if changes.get("enabled"):
            data["disabled_reason"] = None
        try:
            channel = Channel.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError("invalid channel definition", _error_map(exc)) from exc
        _check_target(channel.kind, channel.target)
        await self._backend.save_channel(channel)
        self.invalidate(workspace_id)
        logger.info(
            "channel_updated",
            workspace_id=workspace_id,
            channel_id=channel_id,
            fields=sorted(changes),
        )
        return channel

    async def delete_channel(self, workspace_id: str, channel_id: str) -> None:
        if not await self._backend.delete_channel(workspace_id, channel_id):
            raise ChannelNotFoundError(channel_id)
        self.invalidate(workspace_id)
        logger.info("channel_deleted", workspace_id=workspace_id, channel_id=channel_id)

    async def disable_channel(self, workspace_id: str, channel_id: str, reason: str) -> Channel:
        """Turn a channel off after a permanent delivery failure."""
        current = await self.get_channel(workspace_id, channel_id)
        channel = current.model_copy(
            update={"enabled": False, "disabled_reason": reason, "updated_at": utcnow()}
        )
        await self._backend.save_channel(channel)
        self.invalidate(workspace_id)
        logger.warning(
            "channel_disabled",
            workspace_id=workspace_id,
            channel_id=channel_id,
            kind=channel.kind,
            reason=reason,
        )
        return channel
