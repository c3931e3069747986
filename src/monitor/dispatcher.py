"""Notification dispatcher: target selection, retry, isolation, rate limiting."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping

import structlog

from src.core.config import NotificationsConfig
from src.core.logging import DECISION_LOGGER
from src.core.retry import retry_async
from src.core.types import AlertTransitionEvent, Channel, NotificationSettings
from src.monitor.channels import NotificationChannel
from src.monitor.exceptions import PermanentDeliveryError, is_transient_delivery_error
from src.monitor.formatters import format_summary, format_transition
from src.monitor.rate_limiter import WorkspaceRateLimiter
from src.monitor.types import (
    DeliveryResult,
    DeliveryTarget,
    DispatchReport,
    NotificationPayload,
    TargetKind,
)
from src.workspace.config_store import ConfigStore

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger(DECISION_LOGGER)

logger = structlog.get_logger(__name__)


class _Pending:
    """Transitions held back for one target while its workspace is capped."""

    __slots__ = ("target", "events")

    def __init__(self, target: DeliveryTarget) -> None:
        self.target = target
        self.events: list[AlertTransitionEvent] = []


class NotificationDispatcher:
    """Routes alert transitions to every eligible target of a workspace.

    - Every transition is logged via *decision_logger*.
    - Targets are delivered concurrently; one failing target never blocks
      or fails the others.
    - Each delivery is retried on transient errors within a per-attempt
      timeout and an overall per-target budget.
    - A permanent rejection disables the channel through the ConfigStore.
    - Past the workspace's rolling-window cap, transitions are coalesced
      per target into one summary, sent when the window reopens.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        channels: Mapping[TargetKind, NotificationChannel],
        config: NotificationsConfig | None = None,
        limiter: WorkspaceRateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if config is None:
            from src.core.config import get_settings

            config = get_settings().notifications
        self._config_store = config_store
        self._channels = dict(channels)
        self._config = config
        self._limiter = limiter or WorkspaceRateLimiter(
            config.rate_limit_per_window, config.rate_limit_window_secs
        )
        self._sleep = sleep
        self._pending: dict[str, dict[str, _Pending]] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def channels(self) -> dict[TargetKind, NotificationChannel]:
        return dict(self._channels)

    def pending_count(self, workspace_id: str) -> int:
        """Transitions awaiting a summary, counted once per event."""
        batches = self._pending.get(workspace_id, {})
        ids = {id(e) for p in batches.values() for e in p.events}
        return len(ids)

    # ── Entry points ────────────────────────────────────────────

    async def on_transition(self, event: AlertTransitionEvent) -> DispatchReport:
        """Look up the workspace's configuration and dispatch *event*."""
        ws = event.workspace_id
        settings = await self._config_store.get_notification_settings(ws)
        channels = await self._config_store.get_channels(ws)
        return await self.dispatch(event, settings, channels)

    async def dispatch(
        self,
        event: AlertTransitionEvent,
        settings: NotificationSettings,
        channels: Iterable[Channel],
    ) -> DispatchReport:
        self._log_decision(event)
        ws = event.workspace_id
        report = DispatchReport(
            workspace_id=ws, alert_id=event.alert.id, transition=event.transition
        )

        targets = self.select_targets(event, settings, channels)
        if not targets:
            report.skipped_reason = "no eligible targets"
            return report

        if not self._limiter.try_acquire(ws, settings.rate_limit):
            for target in targets:
                batch = self._pending.setdefault(ws, {})
                pending = batch.get(target.label)
                if pending is None:
                    pending = batch[target.label] = _Pending(target)
                pending.events.append(event)
            report.coalesced = [t.label for t in targets]
            report.skipped_reason = "rate limited"
            logger.info(
                "notification_rate_limited",
                workspace_id=ws,
                alert_id=event.alert.id,
                pending=self.pending_count(ws),
            )
            self._schedule_flush(ws, settings.rate_limit)
            return report

        payload = format_transition(event)
        report.results = await self._deliver_all(targets, payload)
        return report

    def select_targets(
        self,
        event: AlertTransitionEvent,
        settings: NotificationSettings,
        channels: Iterable[Channel],
    ) -> list[DeliveryTarget]:
        """Resolve the targets that should receive *event*."""
        ws = event.workspace_id
        severity = event.severity
        if not settings.allows_server(event.alert.key.server_id):
            return []

        targets = [
            DeliveryTarget(
                kind=TargetKind(ch.kind.value),
                target_id=ch.id,
                workspace_id=ws,
                address=ch.target,
                secret=ch.secret,
            )
            for ch in channels
            if ch.workspace_id == ws and ch.accepts(severity)
        ]
        if (
            settings.email_enabled
            and settings.contact_email
            and severity in settings.email_severities
        ):
            targets.append(
                DeliveryTarget(
                    kind=TargetKind.EMAIL,
                    target_id=ws,
                    workspace_id=ws,
                    address=settings.contact_email,
                )
            )
        if settings.browser_enabled and severity in settings.browser_severities:
            targets.append(
                DeliveryTarget(kind=TargetKind.BROWSER, target_id=ws, workspace_id=ws)
            )

        available = []
        for target in targets:
            if target.kind in self._channels:
                available.append(target)
            else:
                logger.warning(
                    "channel_kind_unavailable", workspace_id=ws, target=target.label
                )
        return available

    # ── Delivery ────────────────────────────────────────────────

    async def _deliver_all(
        self, targets: list[DeliveryTarget], payload: NotificationPayload
    ) -> list[DeliveryResult]:
        return list(
            await asyncio.gather(*(self._deliver_one(t, payload) for t in targets))
        )

    async def _deliver_one(
        self, target: DeliveryTarget, payload: NotificationPayload
    ) -> DeliveryResult:
        channel = self._channels[target.kind]
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            await channel.deliver(target, payload)

        try:
            await asyncio.wait_for(
                retry_async(
                    attempt,
                    self._config.delivery_retry,
                    is_transient_delivery_error,
                    operation=f"deliver:{target.kind.value}",
                    sleep=self._sleep,
                ),
                timeout=self._config.delivery_budget_secs,
            )
        except asyncio.CancelledError:
            raise
        except PermanentDeliveryError as exc:
            disabled = await self._disable(target, str(exc))
            return DeliveryResult(
                target=target,
                ok=False,
                attempts=attempts,
                error=str(exc),
                permanent=True,
                disabled=disabled,
            )
        except Exception as exc:
            logger.warning(
                "notification_delivery_failed",
                workspace_id=target.workspace_id,
                target=target.label,
                attempts=attempts,
                error=repr(exc),
            )
            return DeliveryResult(
                target=target, ok=False, attempts=attempts, error=str(exc) or repr(exc)
            )

        logger.info(
            "notification_delivered",
            workspace_id=target.workspace_id,
            target=target.label,
            notification=payload.event,
            attempts=attempts,
        )
        return DeliveryResult(target=target, ok=True, attempts=attempts)

    async def _disable(self, target: DeliveryTarget, reason: str) -> bool:
        """Turn off a target that permanently rejected delivery."""
        try:
            if target.is_channel:
                await self._config_store.disable_channel(
                    target.workspace_id, target.target_id, reason
                )
            elif target.kind == TargetKind.EMAIL:
                await self._config_store.update_notification_settings(
                    target.workspace_id, {"email_enabled": False}
                )
                logger.warning(
                    "email_notifications_disabled",
                    workspace_id=target.workspace_id,
                    reason=reason,
                )
            else:
                return False
        except Exception:
            logger.exception(
                "channel_disable_failed",
                workspace_id=target.workspace_id,
                target=target.label,
            )
            return False
        return True

    # ── Rate-limit summaries ────────────────────────────────────

    def _schedule_flush(self, workspace_id: str, limit: int | None) -> None:
        task = self._flush_tasks.get(workspace_id)
        if task is not None and not task.done():
            return
        delay = self._limiter.time_until_available(workspace_id, limit)
        self._flush_tasks[workspace_id] = asyncio.create_task(
            self._flush_later(workspace_id, delay)
        )

    async def _flush_later(self, workspace_id: str, delay: float) -> None:
        await self._sleep(delay)
        self._flush_tasks.pop(workspace_id, None)
        try:
            await self._flush_workspace(workspace_id)
        except Exception:
            logger.exception("summary_flush_error", workspace_id=workspace_id)

    async def _flush_workspace(self, workspace_id: str) -> list[DeliveryResult]:
        batch = self._pending.pop(workspace_id, {})
        if not batch:
            return []
        deliveries = [
            self._deliver_one(p.target, format_summary(p.events))
            for p in batch.values()
            if p.events
        ]
        logger.info(
            "notification_summaries_sent",
            workspace_id=workspace_id,
            targets=len(deliveries),
        )
        return list(await asyncio.gather(*deliveries))

    async def flush_summaries(
        self, workspace_id: str | None = None
    ) -> list[DeliveryResult]:
        """Send pending summaries now instead of waiting for the window."""
        workspaces = [workspace_id] if workspace_id else list(self._pending)
        results: list[DeliveryResult] = []
        for ws in workspaces:
            task = self._flush_tasks.pop(ws, None)
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            results.extend(await self._flush_workspace(ws))
        return results

    def _log_decision(self, event: AlertTransitionEvent) -> None:
        alert = event.alert
        decision_logger.info(
            "decision",
            transition=event.transition.value,
            workspace_id=event.workspace_id,
            alert_id=alert.id,
            fingerprint=alert.key.fingerprint,
            severity=alert.severity.value,
            previous_severity=(
                event.previous_severity.value if event.previous_severity else None
            ),
            raw=alert.to_wire(),
        )

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        """Flush pending summaries, then release channel resources."""
        try:
            await self.flush_summaries()
        except Exception:
            logger.exception("summary_flush_error")
        for ch in self._channels.values():
            try:
                await ch.close()
            except Exception:
                logger.exception("channel_close_error", channel=type(ch).__name__)
