"""Fixed-window request budget shared by every outbound catalog call."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from kiotviet_sync.errors import RateLimitExceeded

logger = structlog.get_logger(__name__)


class RateGovernor:
    """
    Blocks callers once ``max_requests`` have been spent in the current window.

    The counter and window start are only touched under the lock, so concurrent
    category workers see a consistent budget. Waiting happens outside the lock;
    woken callers re-check the budget, and the wait can be cancelled.
    """

    def __init__(
        self,
        max_requests: int = 4900,
        window_seconds: float = 3600,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._count = 0
        self._window_start = self._clock()
        self.total_waits = 0

    async def acquire(self, timeout: Optional[float] = None) -> None:
        remaining = timeout
        while True:
            async with self._lock:
                now = self._clock()
                if now - self._window_start >= self.window_seconds:
                    self._start_window(now)

                if self._count < self.max_requests:
                    self._count += 1
                    return

                wait = self.window_seconds - (now - self._window_start)
                if remaining is not None and wait > remaining:
                    raise RateLimitExceeded(
                        f"Request budget of {self.max_requests} exhausted; "
                        f"window resets in {wait:.1f}s",
                        retry_after=wait,
                    )
                logger.warning(
                    "rate_limit_reached",
                    limit=self.max_requests,
                    wait_seconds=round(wait, 2),
                )
                self.total_waits += 1

            # the lock is never held while sleeping
            await self._sleep(wait)
            if remaining is not None:
                remaining = max(0.0, remaining - wait)

    def _start_window(self, now: float) -> None:
        self._count = 0
        self._window_start = now

    def stats(self) -> Dict[str, Any]:
        elapsed = self._clock() - self._window_start
        in_window = elapsed < self.window_seconds
        return {
            "requests_in_window": self._count if in_window else 0,
            "limit": self.max_requests,
            "window_seconds": self.window_seconds,
            "window_remaining_seconds": max(0.0, self.window_seconds - elapsed) if in_window else 0.0,
            "total_waits": self.total_waits,
        }

    def reset(self) -> None:
        self._start_window(self._clock())
        self.total_waits = 0
