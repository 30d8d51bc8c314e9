from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
import logging
import time
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60.0


class RateLimiter:
    """Throttles calls to an external collaborator.

    Three limits apply to every call passed to ``execute``: at most
    ``max_concurrent`` calls in flight, at least ``min_interval_seconds``
    between two call starts, and at most ``max_per_minute`` call starts in any
    rolling 60 second window. Waiting callers are served in arrival order.
    Errors raised by the wrapped call propagate unchanged.
    """

    def __init__(
        self,
        *,
        name: str,
        max_concurrent: int,
        min_interval_seconds: float,
        max_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.max_concurrent = max(1, max_concurrent)
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self.max_per_minute = max(1, max_per_minute)
        self._clock = clock
        self._sleep = sleep
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._start_gate = asyncio.Lock()
        self._starts: deque[float] = deque()
        self._last_start: float | None = None
        self._queued = 0
        self._running = 0

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._queued += 1
        started = False
        try:
            async with self._slots:
                async with self._start_gate:
                    await self._wait_for_turn()
                    self._record_start()
                self._queued -= 1
                started = True
                self._running += 1
                try:
                    return await fn()
                finally:
                    self._running -= 1
        finally:
            if not started:
                self._queued -= 1

    def get_status(self) -> dict[str, Any]:
        self._prune(self._clock())
        return {
            "name": self.name,
            "queued": self._queued,
            "running": self._running,
            "calls_in_last_minute": len(self._starts),
            "max_concurrent": self.max_concurrent,
            "max_per_minute": self.max_per_minute,
        }

    async def _wait_for_turn(self) -> None:
        while True:
            now = self._clock()
            self._prune(now)
            delay = 0.0
            if self._last_start is not None:
                delay = self._last_start + self.min_interval_seconds - now
            if len(self._starts) >= self.max_per_minute:
                delay = max(delay, self._starts[0] + _WINDOW_SECONDS - now)
            if delay <= 0:
                return
            logger.debug("rate limiter %s waiting %.2fs", self.name, delay)
            await self._sleep(delay)

    def _record_start(self) -> None:
        now = self._clock()
        self._starts.append(now)
        self._last_start = now

    def _prune(self, now: float) -> None:
        while self._starts and self._starts[0] + _WINDOW_SECONDS <= now:
            self._starts.popleft()
