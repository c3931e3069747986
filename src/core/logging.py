"""structlog setup plus the poll-scope context shared by pollers and the state manager."""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager

import structlog

from src.core.config import LoggingConfig, get_settings

DECISION_LOGGER = "decision_log"

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")


def poll_scope(workspace_id: str, server_id: str, vhost: str) -> AbstractContextManager[None]:
    """Attach the poll target to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(
        workspace_id=workspace_id, server_id=server_id, vhost=vhost
    )


def _pick_renderer(log_format: str) -> tuple[structlog.types.Processor, structlog.types.Processor]:
    """Return (exception processor, final renderer) for the format."""
    if log_format == "json":
        return structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()
    return structlog.processors.format_exc_info, structlog.dev.ConsoleRenderer()


def _decision_file_handler(path: str) -> logging.Handler:
    # Decision records always go to file as JSON, whatever the console format.
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    return handler


def setup_logging(
    level: str | None = None,
    fmt: str | None = None,
    config: LoggingConfig | None = None,
) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer.

    ``level`` and ``fmt`` override the configured values. When
    ``decision_log_path`` is set, transition decisions are additionally
    appended to that file.
    """
    if config is None:
        config = get_settings().logging
    log_level = getattr(logging, (level or config.level).upper(), logging.INFO)
    exc_processor, renderer = _pick_renderer(fmt or config.format)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            exc_processor,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(console)
    root_logger.setLevel(log_level)

    decisions = logging.getLogger(DECISION_LOGGER)
    for old in list(decisions.handlers):
        decisions.removeHandler(old)
        old.close()
    if config.decision_log_path:
        decisions.addHandler(_decision_file_handler(config.decision_log_path))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
