"""Per-source request spacing.

acquire(key) returns only once the configured minimum interval has elapsed
since the previous acquire() for the same key. Callers on one key are
serialized in FIFO order; different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Enforces a minimum spacing between outbound requests per source.

    Usage:
        limiter = RateLimiter(default_interval=2.0, intervals={"finnhub": 1.0})
        await limiter.acquire("finnhub")
    """

    def __init__(
        self,
        default_interval: float = 2.0,
        intervals: dict[str, float] | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._default_interval = max(0.0, float(default_interval))
        self._intervals = {k: max(0.0, float(v)) for k, v in (intervals or {}).items()}
        self._clock = clock
        self._sleep = sleep
        self._last_call: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def interval_for(self, source_key: str) -> float:
        return self._intervals.get(source_key, self._default_interval)

    def set_interval(self, source_key: str, seconds: float) -> None:
        self._intervals[source_key] = max(0.0, float(seconds))

    async def acquire(self, source_key: str) -> float:
        """Wait for this source's slot. Returns the seconds spent waiting."""
        lock = self._locks.setdefault(source_key, asyncio.Lock())
        async with lock:
            waited = 0.0
            last = self._last_call.get(source_key)
            if last is not None:
                remaining = self.interval_for(source_key) - (self._clock() - last)
                if remaining > 0:
                    logger.debug("Rate limit %s: waiting %.3fs", source_key, remaining)
                    await self._sleep(remaining)
                    waited = remaining
            self._last_call[source_key] = self._clock()
            return waited

    def last_call(self, source_key: str) -> float | None:
        return self._last_call.get(source_key)
