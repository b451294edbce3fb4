"""Scheduler runner -- asyncio loop that drives aggregation cycles.

Loop:
1. Pick the interval for the current session (open vs closed)
2. Run one cycle (errors are logged, never fatal)
3. Sleep for the interval picked in step 1

Stopping cancels the timer only. A cycle already in flight runs to
completion so its Snapshot still reaches the cache.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from core.market_hours import TradingHours

logger = logging.getLogger(__name__)

CycleFunc = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


class MarketScheduler:
    """Runs `cycle` immediately on start, then on a session-dependent interval.

    Usage:
        scheduler = MarketScheduler(aggregator.run_cycle, open_interval=30, closed_interval=300)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        cycle: CycleFunc,
        open_interval: float = 30.0,
        closed_interval: float = 300.0,
        trading_hours: TradingHours | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cycle = cycle
        self._open_interval = open_interval
        self._closed_interval = closed_interval
        self._hours = trading_hours or TradingHours()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task | None = None
        self._current: asyncio.Task | None = None
        self.cycles_run = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> asyncio.Task | None:
        """The cycle currently executing, if any."""
        if self._current is not None and not self._current.done():
            return self._current
        return None

    def interval_for(self, now: datetime | None = None) -> float:
        if self._hours.is_open(now or self._clock()):
            return self._open_interval
        return self._closed_interval

    def start(self) -> None:
        """Start the loop. Requires a running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "Scheduler started (every %ss open, %ss closed)",
            self._open_interval, self._closed_interval,
        )

    def cancel(self) -> None:
        """Stop the timer without waiting. Safe to call when stopped."""
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
        logger.info("Scheduler stopped")

    async def stop(self) -> None:
        """Stop the timer and wait for the loop task to exit."""
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def drain(self) -> None:
        """Wait for an in-flight cycle, if any."""
        current = self.in_flight
        if current is not None:
            await asyncio.wait({current})

    async def _loop(self) -> None:
        """Main scheduler loop."""
        while self._running:
            interval = self.interval_for()
            self._current = asyncio.create_task(self._run_cycle())
            # Shield so cancelling the loop leaves the cycle running
            await asyncio.shield(self._current)
            await self._sleep(interval)

    async def _run_cycle(self) -> None:
        try:
            await self._cycle()
        except Exception:
            logger.exception("Error in aggregation cycle")
        finally:
            self.cycles_run += 1
