"""MarketDataService -- the consumer-facing facade.

Owns the aggregator, scheduler, cache and subscription registry. Built once
at startup and passed to whoever needs market data; there is no global
instance.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from core.data.cache import SnapshotCache
from core.market_hours import TradingHours
from core.models.market import ConnectionStatus, Sentiment, Snapshot
from core.protocols import SnapshotCallback
from core.subscriptions import SubscriberHandle, SubscriptionRegistry
from engine.aggregator import Aggregator
from scheduler.runner import MarketScheduler

logger = logging.getLogger(__name__)


class MarketDataService:
    """Subscribe to snapshots, query sentiment and session, force refreshes.

    Usage:
        service = MarketDataService(lambda registry: Aggregator(..., registry=registry), cache)
        service.start()
        unsubscribe = service.subscribe(on_snapshot)
        ...
        unsubscribe()
        await service.close()
    """

    def __init__(
        self,
        aggregator_factory: Callable[[SubscriptionRegistry], Aggregator],
        cache: SnapshotCache,
        trading_hours: TradingHours | None = None,
        open_interval: float = 30.0,
        closed_interval: float = 300.0,
        scheduler_factory: Callable[..., MarketScheduler] = MarketScheduler,
        closers: list[Callable] | None = None,
    ) -> None:
        self._hours = trading_hours or TradingHours()
        self._cache = cache
        self._registry = SubscriptionRegistry(on_active=self._on_active, on_idle=self._on_idle)
        self._aggregator = aggregator_factory(self._registry)
        self._scheduler = scheduler_factory(
            self._cycle,
            open_interval=open_interval,
            closed_interval=closed_interval,
            trading_hours=self._hours,
        )
        self._closers = list(closers or [])
        self._cached: Snapshot | None = None
        self._started = False
        self._status: ConnectionStatus = "loading"
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> Snapshot | None:
        """Load the cached snapshot once. Returns it, if fresh."""
        if not self._started:
            self._started = True
            self._cached = self._cache.load()
            if self._cached is not None:
                logger.info(
                    "Loaded cached snapshot (%.0fs old)", self._cached.age_seconds(),
                )
        return self._cached

    async def close(self) -> None:
        """Stop polling, let the in-flight cycle finish, close HTTP clients."""
        await self._scheduler.stop()
        await self._scheduler.drain()
        for task in list(self._pending):
            task.cancel()
        for closer in self._closers:
            try:
                await closer()
            except Exception:
                logger.exception("Error closing %r", closer)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it.

        If a snapshot is already available the new subscriber gets it once,
        asynchronously, before the next cycle publishes.
        """
        self.start()
        handle = self._registry.subscribe(callback)
        initial = self.latest
        if initial is not None:
            task = asyncio.get_running_loop().create_task(self._registry.deliver(handle, initial))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        def unsubscribe() -> None:
            self._registry.unsubscribe(handle)

        unsubscribe.handle = handle
        return unsubscribe

    def unsubscribe(self, handle: SubscriberHandle) -> None:
        self._registry.unsubscribe(handle)

    @property
    def subscriber_count(self) -> int:
        return self._registry.count

    def _on_active(self) -> None:
        logger.debug("First subscriber, starting scheduler")
        self._scheduler.start()

    def _on_idle(self) -> None:
        logger.debug("No subscribers left, stopping scheduler")
        self._scheduler.cancel()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _cycle(self) -> Snapshot:
        try:
            snapshot = await self._aggregator.run_cycle()
        except Exception:
            self._status = "error"
            raise
        metrics = self._aggregator.last_metrics
        self._status = "connected" if metrics is not None and metrics.live > 0 else "error"
        return snapshot

    async def force_refresh(self) -> Snapshot:
        """Run an out-of-band cycle, serialized with scheduled ones."""
        self.start()
        return await self._cycle()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def latest(self) -> Snapshot | None:
        """Most recent snapshot: this process's last cycle, else the cache."""
        return self._aggregator.latest or self._cached

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._status

    @property
    def aggregator(self) -> Aggregator:
        return self._aggregator

    @property
    def scheduler(self) -> MarketScheduler:
        return self._scheduler

    def get_sentiment(self) -> Sentiment:
        snapshot = self.latest
        if snapshot is None:
            return Sentiment()
        return snapshot.sentiment

    def is_market_open(self, now: datetime | None = None) -> bool:
        return self._hours.is_open(now)

    def market_session(self, now: datetime | None = None) -> dict:
        return self._hours.describe(now)

    def cache_info(self) -> dict:
        info = self._cache.info()
        info["max_age_seconds"] = self._cache.max_age.total_seconds()
        return info
