"""Rolling-window notification rate limiter, one window per workspace."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable


class SlidingWindow:
    """Allows at most *limit* acquisitions in any *window_secs* span."""

    def __init__(
        self,
        limit: int,
        window_secs: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_secs = window_secs
        self._clock = clock
        self._stamps: deque[float] = deque()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_secs
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    @property
    def used(self) -> int:
        self._evict(self._clock())
        return len(self._stamps)

    def try_acquire(self) -> bool:
        """Record one send if the window has room. Returns True if allowed."""
        now = self._clock()
        self._evict(now)
        if len(self._stamps) < self.limit:
            self._stamps.append(now)
            return True
        return False

    def time_until_available(self) -> float:
        """Seconds until the next acquisition would succeed."""
        now = self._clock()
        self._evict(now)
        if len(self._stamps) < self.limit:
            return 0.0
        # The window frees up once enough of the oldest sends age out.
        idx = len(self._stamps) - self.limit
        return max(0.0, self._stamps[idx] + self.window_secs - now)


class WorkspaceRateLimiter:
    """Per-workspace sliding windows with optional per-workspace limits.

    Usage::

        limiter = WorkspaceRateLimiter(limit_per_window=10, window_secs=60)
        if limiter.try_acquire("ws-1"):
            ...  # send now
        else:
            wait = limiter.time_until_available("ws-1")
    """

    def __init__(
        self,
        limit_per_window: int = 10,
        window_secs: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_limit = limit_per_window
        self._window_secs = window_secs
        self._clock = clock
        self._windows: dict[str, SlidingWindow] = {}

    @property
    def window_secs(self) -> float:
        return self._window_secs

    def _window(self, workspace_id: str, limit: int | None) -> SlidingWindow:
        window = self._windows.get(workspace_id)
        if window is None:
            window = SlidingWindow(
                limit or self._default_limit, self._window_secs, self._clock
            )
            self._windows[workspace_id] = window
        else:
            window.limit = limit or self._default_limit
        return window

    def try_acquire(self, workspace_id: str, limit: int | None = None) -> bool:
        return self._window(workspace_id, limit).try_acquire()

    def time_until_available(self, workspace_id: str, limit: int | None = None) -> float:
        return self._window(workspace_id, limit).time_until_available()

    def reset(self, workspace_id: str | None = None) -> None:
        if workspace_id is None:
            self._windows.clear()
        else:
            self._windows.pop(workspace_id, None)
