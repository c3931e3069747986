"""Convenience factory for wiring the alerting stack."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.alerts.service import AlertService
from src.alerts.state import AlertStateManager
from src.alerts.store import AlertStore, InMemoryAlertStore
from src.core.config import Settings
from src.metrics.provider import MetricsProvider
from src.monitor.channels import (
    BrowserChannel,
    DiscordChannel,
    EmailChannel,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)
from src.monitor.dispatcher import NotificationDispatcher
from src.monitor.poller import PollScheduler
from src.monitor.router import TransitionRouter
from src.monitor.types import TargetKind
from src.workspace.config_store import ConfigBackend, ConfigStore, InMemoryConfigBackend

logger = structlog.get_logger(__name__)


@dataclass
class AlertingStack:
    """Every long-lived component, wired together.

    Usage::

        stack = create_alerting_stack(settings, provider)
        await stack.start()
        # ...
        await stack.stop()
    """

    config_store: ConfigStore
    alert_store: AlertStore
    state: AlertStateManager
    dispatcher: NotificationDispatcher
    router: TransitionRouter
    scheduler: PollScheduler
    service: AlertService
    browser: BrowserChannel
    provider: MetricsProvider

    async def add_configured_targets(self, targets: list[dict[str, str]]) -> int:
        """Register poll targets given as ``workspace_id``/``server_id``/``vhost`` dicts."""
        added = 0
        for raw in targets:
            try:
                await self.scheduler.add_target(
                    raw["workspace_id"],
                    raw["server_id"],
                    vhost=raw.get("vhost", "/"),
                    resource_type=raw.get("resource_type", "cluster"),
                )
            except KeyError as exc:
                logger.error("invalid_poll_target", target=raw, missing=str(exc))
                continue
            added += 1
        return added

    async def start(self) -> None:
        await self.router.start()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop polling, drain queued transitions, then close channels."""
        await self.scheduler.stop()
        await self.router.stop(drain=True)
        await self.dispatcher.close()
        try:
            await self.provider.close()
        except Exception:
            logger.exception("provider_close_error")


def build_channels(settings: Settings) -> dict[TargetKind, NotificationChannel]:
    """One channel instance per target kind."""
    notifications = settings.notifications
    timeout = notifications.delivery_retry.attempt_timeout_secs or 10.0
    return {
        TargetKind.WEBHOOK: WebhookChannel(notifications.webhook_event_prefix),
        TargetKind.SLACK: SlackChannel(notifications.frontend_url),
        TargetKind.DISCORD: DiscordChannel(),
        TargetKind.EMAIL: EmailChannel(settings.email, timeout_secs=timeout),
        TargetKind.BROWSER: BrowserChannel(notifications.browser_inbox_size),
    }


def create_alerting_stack(
    settings: Settings,
    provider: MetricsProvider,
    backend: ConfigBackend | None = None,
    alert_store: AlertStore | None = None,
    channels: dict[TargetKind, NotificationChannel] | None = None,
) -> AlertingStack:
    """Build the full evaluation and notification pipeline from settings."""
    config_store = ConfigStore(
        backend or InMemoryConfigBackend(),
        ttl_secs=settings.config_store.ttl_secs,
        default_hysteresis_cycles=settings.engine.default_hysteresis_cycles,
    )
    store = alert_store or InMemoryAlertStore()
    state = AlertStateManager(store, settings.engine)

    if channels is None:
        channels = build_channels(settings)
    browser = channels.get(TargetKind.BROWSER)
    if not isinstance(browser, BrowserChannel):
        browser = BrowserChannel(settings.notifications.browser_inbox_size)
        channels[TargetKind.BROWSER] = browser

    dispatcher = NotificationDispatcher(config_store, channels, settings.notifications)
    router = TransitionRouter(
        dispatcher.on_transition, partitions=settings.notifications.router_partitions
    )
    state.on_transition(router.publish)

    scheduler = PollScheduler(provider, config_store, state, settings.poller)
    service = AlertService(state, config_store, scheduler)

    return AlertingStack(
        config_store=config_store,
        alert_store=store,
        state=state,
        dispatcher=dispatcher,
        router=router,
        scheduler=scheduler,
        service=service,
        browser=browser,
        provider=provider,
    )
