"""Fixed-window per-tenant rate limiter for the inbound API."""

import asyncio
import logging
import math
import time
from typing import Callable, Dict, Optional

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 60.0


class RateLimitInfo:
    """Snapshot of a tenant's window as seen by ``check``."""

    def __init__(self, allowed: bool, remaining: int, reset_at: float, limit: int):
        self.allowed = allowed
        self.remaining = remaining
        self.reset_at = reset_at
        self.limit = limit

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, at least 1."""
        return max(1, math.ceil(self.reset_at - now))


class _Window:
    __slots__ = ("count", "reset_at")

    def __init__(self, reset_at: float):
        self.count = 0
        self.reset_at = reset_at


class RateLimiter:
    """
    Counts requests per tenant in fixed windows.

    ``check`` never consumes; callers ``increment`` once a request is let
    through. Concurrent callers on one key may over- or under-count slightly,
    which is fine for an advisory limit.
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._windows: Dict[str, _Window] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def check(self, tenant_id: str) -> RateLimitInfo:
        """Report whether ``tenant_id`` may make another request."""
        now = self.clock()
        window = self._windows.get(tenant_id)
        if window is None or window.reset_at <= now:
            window = _Window(now + self.window_seconds)
            self._windows[tenant_id] = window

        return RateLimitInfo(
            allowed=window.count < self.limit,
            remaining=max(0, self.limit - window.count),
            reset_at=window.reset_at,
            limit=self.limit,
        )

    def increment(self, tenant_id: str) -> None:
        """Consume one request from the tenant's current window."""
        window = self._windows.get(tenant_id)
        if window is None or window.reset_at <= self.clock():
            # No prior check in this window
            window = _Window(self.clock() + self.window_seconds)
            self._windows[tenant_id] = window
        window.count += 1

    def reset(self) -> None:
        """Forget every window."""
        self._windows.clear()

    def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self.clock()
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def start_cleanup(self, interval: float = 60.0) -> None:
        """Sweep expired windows every ``interval`` seconds in the background."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))

    async def stop_cleanup(self) -> None:
        """Stop the background sweep."""
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                self.logger.debug(f"Swept {removed} expired rate limit windows")

    def __len__(self) -> int:
        return len(self._windows)
