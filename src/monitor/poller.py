"""Per-target polling loops and the scheduler that owns them."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel, ConfigDict

from src.alerts.evaluator import evaluate
from src.alerts.state import AlertStateManager
from src.core.config import PollerConfig
from src.core.logging import poll_scope
from src.core.retry import retry_async
from src.core.types import AlertTransitionEvent, MetricSnapshot
from src.metrics.exceptions import is_transient_metrics_error
from src.metrics.provider import MetricsProvider
from src.workspace.config_store import ConfigStore

logger = structlog.get_logger(__name__)

ScopeKey = tuple[str, str, str]


class PollTarget(BaseModel):
    """One monitored ``(workspace, server, vhost)``."""

    model_config = ConfigDict(frozen=True)

    workspace_id: str
    server_id: str
    vhost: str = "/"
    # Selects the polling interval; see PollerConfig.intervals.
    resource_type: str = "cluster"

    @property
    def scope(self) -> ScopeKey:
        return (self.workspace_id, self.server_id, self.vhost)


class ServerPoller:
    """Background task that fetches, evaluates and applies one target.

    Usage::

        poller = ServerPoller(target, provider, config_store, state_manager)
        await poller.start()
        # ...
        await poller.stop()
    """

    def __init__(
        self,
        target: PollTarget,
        provider: MetricsProvider,
        config_store: ConfigStore,
        state: AlertStateManager,
        config: PollerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if config is None:
            from src.core.config import get_settings

            config = get_settings().poller
        self._target = target
        self._provider = provider
        self._config_store = config_store
        self._state = state
        self._config = config
        self._sleep = sleep
        self._interval = config.interval_for(target.resource_type)
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.cycles = 0

    @property
    def target(self) -> PollTarget:
        return self._target

    @property
    def interval_secs(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "poller_started",
            workspace_id=self._target.workspace_id,
            server_id=self._target.server_id,
            vhost=self._target.vhost,
            interval=self._interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _scoped(self, snapshots: list[MetricSnapshot]) -> list[MetricSnapshot]:
        # Providers may not know the tenant; pin every key to this target's workspace.
        ws = self._target.workspace_id
        return [
            s
            if s.key.workspace_id == ws
            else s.model_copy(update={"key": s.key.model_copy(update={"workspace_id": ws})})
            for s in snapshots
        ]

    async def run_cycle(self) -> list[AlertTransitionEvent]:
        """One fetch + evaluate + apply pass. Never raises on fetch failure."""
        with poll_scope(*self._target.scope):
            return await self._run_cycle()

    async def _run_cycle(self) -> list[AlertTransitionEvent]:
        ws, server_id, vhost = self._target.scope
        try:
            snapshots = await retry_async(
                lambda: self._provider.get_snapshot(server_id, vhost),
                self._config.fetch_retry,
                is_transient_metrics_error,
                operation="metrics_fetch",
                sleep=self._sleep,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self._state.record_fetch_failure(ws, server_id, vhost, exc)

        snapshots = self._scoped(snapshots)
        thresholds = await self._config_store.get_thresholds(ws)
        violations = evaluate(snapshots, thresholds)
        events = await self._state.apply_cycle(
            ws, server_id, vhost, snapshots, violations, thresholds
        )
        self.cycles += 1
        logger.debug(
            "poll_cycle_complete",
            workspace_id=ws,
            server_id=server_id,
            vhost=vhost,
            snapshots=len(snapshots),
            violations=len(violations),
            transitions=len(events),
        )
        return events

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception(
                    "poll_cycle_error",
                    workspace_id=self._target.workspace_id,
                    server_id=self._target.server_id,
                )
            await self._sleep(self._interval)


class PollScheduler:
    """Owns one :class:`ServerPoller` per target; cancellable per server."""

    def __init__(
        self,
        provider: MetricsProvider,
        config_store: ConfigStore,
        state: AlertStateManager,
        config: PollerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._config_store = config_store
        self._state = state
        self._config = config
        self._sleep = sleep
        self._pollers: dict[ScopeKey, ServerPoller] = {}
        self._running = False

    @property
    def targets(self) -> list[PollTarget]:
        return [p.target for p in self._pollers.values()]

    def poller_for(
        self, workspace_id: str, server_id: str, vhost: str = "/"
    ) -> ServerPoller | None:
        return self._pollers.get((workspace_id, server_id, vhost))

    async def add_target(
        self,
        workspace_id: str,
        server_id: str,
        vhost: str = "/",
        resource_type: str = "cluster",
    ) -> ServerPoller:
        target = PollTarget(
            workspace_id=workspace_id,
            server_id=server_id,
            vhost=vhost,
            resource_type=resource_type,
        )
        existing = self._pollers.get(target.scope)
        if existing is not None:
            return existing
        poller = ServerPoller(
            target,
            self._provider,
            self._config_store,
            self._state,
            self._config,
            self._sleep,
        )
        self._pollers[target.scope] = poller
        if self._running:
            await poller.start()
        return poller

    async def remove_target(
        self, workspace_id: str, server_id: str, vhost: str = "/"
    ) -> bool:
        poller = self._pollers.pop((workspace_id, server_id, vhost), None)
        if poller is None:
            return False
        await poller.stop()
        return True

    async def remove_server(
        self, workspace_id: str, server_id: str, note: str = "server removed"
    ) -> list[AlertTransitionEvent]:
        """Cancel every poller of the server, then resolve its active alerts."""
        scopes = [s for s in self._pollers if s[:2] == (workspace_id, server_id)]
        for scope in scopes:
            await self._pollers.pop(scope).stop()
        logger.info(
            "server_removed",
            workspace_id=workspace_id,
            server_id=server_id,
            pollers=len(scopes),
        )
        return await self._state.force_resolve_server(workspace_id, server_id, note)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for poller in self._pollers.values():
            await poller.start()

    async def stop(self) -> None:
        self._running = False
        for poller in list(self._pollers.values()):
            await poller.stop()
