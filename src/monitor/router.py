"""Partitioned FIFO delivery of transitions, preserving per-key order."""

from __future__ import annotations

import asyncio
import zlib
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.core.types import AlertTransitionEvent

logger = structlog.get_logger(__name__)

TransitionHandler = Callable[[AlertTransitionEvent], Awaitable[Any]]


class TransitionRouter:
    """Fans transitions out to N worker queues keyed by alert fingerprint.

    All events of one monitored key land in the same queue, so they are
    handled in the order they were published; different keys proceed in
    parallel.

    Usage::

        router = TransitionRouter(dispatcher.on_transition, partitions=8)
        await router.start()
        state_manager.on_transition(router.publish)
        # ...
        await router.stop()
    """

    def __init__(self, handler: TransitionHandler, partitions: int = 8) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._handler = handler
        self._partitions = partitions
        self._queues: list[asyncio.Queue[AlertTransitionEvent]] = []
        self._workers: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def partition_for(self, event: AlertTransitionEvent) -> int:
        fingerprint = event.alert.key.scoped_fingerprint
        return zlib.crc32(fingerprint.encode()) % self._partitions

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._queues = [asyncio.Queue() for _ in range(self._partitions)]
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self._partitions)
        ]

    async def publish(self, event: AlertTransitionEvent) -> None:
        """Enqueue *event*; handled inline when the router is not running."""
        if not self._running:
            await self._handle(event)
            return
        await self._queues[self.partition_for(event)].put(event)

    async def join(self) -> None:
        """Wait until every queued transition has been handled."""
        for queue in self._queues:
            await queue.join()

    async def stop(self, drain: bool = True) -> None:
        if not self._running:
            return
        if drain:
            await self.join()
        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        self._queues = []

    async def _worker(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            event = await queue.get()
            try:
                await self._handle(event)
            finally:
                queue.task_done()

    async def _handle(self, event: AlertTransitionEvent) -> None:
        try:
            await self._handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "transition_handler_error",
                alert_id=event.alert.id,
                transition=event.transition.value,
            )
