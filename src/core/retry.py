"""Async retry-with-backoff shared by metrics fetches and channel deliveries."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import structlog
from pydantic import BaseModel, Field

logger = structlog.stdlib.get_logger()

P = ParamSpec("P")
T = TypeVar("T")

TransientCheck = Callable[[BaseException], bool]


class RetryPolicy(BaseModel):
    """Bounded retry parameters."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_secs: float = Field(default=1.0, ge=0.0)
    max_delay_secs: float = Field(default=30.0, ge=0.0)
    attempt_timeout_secs: float | None = Field(default=10.0, gt=0.0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following *attempt* (1-based)."""
        return min(self.base_delay_secs * (2 ** (attempt - 1)), self.max_delay_secs)


def always_transient(exc: BaseException) -> bool:
    return True


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_transient: TransientCheck = always_transient,
    *,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call *fn* until it succeeds, a permanent error occurs, or attempts run out.

    Each attempt is bounded by ``policy.attempt_timeout_secs``; a timeout is
    always treated as transient. The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if policy.attempt_timeout_secs is None:
                return await fn()
            return await asyncio.wait_for(fn(), timeout=policy.attempt_timeout_secs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            transient = isinstance(exc, TimeoutError) or is_transient(exc)
            if not transient or attempt >= policy.max_attempts:
                if transient:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=repr(exc),
                    )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "retrying_after_error",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=repr(exc),
            )
            await sleep(delay)


def with_retry(
    policy: RetryPolicy,
    is_transient: TransientCheck = always_transient,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator form of :func:`retry_async`."""

    def decorator(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await retry_async(
                lambda: fn(*args, **kwargs),
                policy,
                is_transient,
                operation=fn.__qualname__,
            )

        return wrapper

    return decorator
