#!/usr/bin/env python3
"""Alerting engine entrypoint: polls every configured target until stopped.

Usage::

    # Poll forever with config/settings.yaml
    python scripts/run.py

    # Alternate config and a provider override
    python scripts/run.py --config /etc/queuewatch.yaml --provider myco.rabbit:build

    # One poll cycle per target, deliver notifications, exit
    python scripts/run.py --once --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from src.core.config import Settings, load_settings
from src.core.logging import setup_logging
from src.metrics.provider import load_provider
from src.monitor.factory import AlertingStack, create_alerting_stack

logger = structlog.get_logger(__name__)


def _fail(event: str, hint: str) -> int:
    logger.error(event)
    print(hint, file=sys.stderr)
    return 1


async def _wait_for_signal() -> None:
    """Block until SIGINT or SIGTERM."""
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal(signame: str) -> None:
        logger.info("shutdown_signal_received", signal=signame)
        stopped.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except NotImplementedError:
            # No loop signal support on Windows; KeyboardInterrupt still works.
            pass
    await stopped.wait()


async def _poll_once(stack: AlertingStack) -> int:
    transitions = 0
    for target in stack.scheduler.targets:
        poller = stack.scheduler.poller_for(*target.scope)
        if poller is not None:
            transitions += len(await poller.run_cycle())
    await stack.router.join()
    return transitions


async def run(args: argparse.Namespace) -> int:
    settings: Settings = load_settings(args.config)
    setup_logging(level=args.log_level, config=settings.logging)

    provider_path = args.provider or settings.metrics.provider
    if not provider_path:
        return _fail(
            "no_metrics_provider",
            "No metrics provider configured. Set metrics.provider in the settings "
            "file or pass --provider package.module:factory.",
        )

    provider = load_provider(provider_path)
    stack = create_alerting_stack(settings, provider)
    added = await stack.add_configured_targets(settings.metrics.targets)
    if not added:
        await provider.close()
        return _fail(
            "no_poll_targets",
            "No poll targets configured. Add workspace_id/server_id entries "
            "under metrics.targets.",
        )

    if args.once:
        await stack.router.start()
        transitions = await _poll_once(stack)
        logger.info("single_pass_complete", targets=added, transitions=transitions)
        await stack.stop()
        return 0

    await stack.start()
    logger.info(
        "engine_running",
        targets=added,
        router_partitions=settings.notifications.router_partitions,
        rate_limit=settings.notifications.rate_limit_per_window,
    )
    try:
        await _wait_for_signal()
    finally:
        logger.info("engine_shutting_down")
        await stack.stop()
        logger.info("engine_stopped")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Queue-server alerting engine")
    parser.add_argument(
        "--config",
        default=None,
        help="Settings YAML path (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override logging.level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--provider",
        default=None,
        help="Override metrics.provider with a package.module:factory path",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one poll cycle per target, flush notifications and exit",
    )
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
