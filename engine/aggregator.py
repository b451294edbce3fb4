"""Aggregator -- runs one collection cycle across every configured instrument.

Per symbol:  fetch (rate limited, retried with backoff) -> live value,
             or synthesized fallback when every attempt failed.
Per family:  consecutive cycles without any live value trip a circuit
             breaker; the family then skips the network and is synthesized.
Per cycle:   only a complete batch is cached and published.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from core.data.cache import SnapshotCache
from core.errors import AggregationError, FetchError, FetchErrorKind
from core.models.market import CryptoQuote, ForexRate, Quote, Snapshot
from core.protocols import FAMILIES, FetchResult, MarketItem, QuoteSource
from core.rate_limiter import RateLimiter
from core.subscriptions import SubscriptionRegistry
from engine.fallback import FallbackSynthesizer
from engine.sentiment import calculate_sentiment

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Instrument:
    """One configured symbol and how it is presented."""

    symbol: str
    family: str
    display_name: str
    is_index: bool = False


@dataclass
class FamilyState:
    """Circuit breaker bookkeeping for one source family."""

    failed_cycles: int = 0
    fallback_mode: bool = False
    cycles_in_fallback: int = 0


@dataclass
class FamilyMetrics:
    live: int = 0
    synthesized: int = 0
    skipped: int = 0


@dataclass
class CycleMetrics:
    cycle: int
    duration: float = 0.0
    families: dict[str, FamilyMetrics] = field(default_factory=dict)
    delivered: int = 0

    @property
    def live(self) -> int:
        return sum(m.live for m in self.families.values())

    @property
    def total(self) -> int:
        return sum(m.live + m.synthesized + m.skipped for m in self.families.values())


class Aggregator:
    """Drives quote sources through the rate limiter and assembles Snapshots.

    Cycles are serialized: a forced refresh waits for the in-flight cycle.
    """

    def __init__(
        self,
        instruments: list[Instrument],
        sources: dict[str, QuoteSource | None],
        synthesizer: FallbackSynthesizer,
        limiter: RateLimiter,
        cache: SnapshotCache,
        registry: SubscriptionRegistry,
        max_retries: int = 3,
        base_delay: float = 1.0,
        fallback_threshold: int = 3,
        recovery_probe_cycles: int | None = None,
        quote_currency: str = "INR",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        seen: set[str] = set()
        for inst in instruments:
            if inst.family not in FAMILIES:
                raise ValueError(f"Unknown family {inst.family!r} for {inst.symbol}")
            if (inst.family, inst.symbol) in seen:
                raise ValueError(f"Duplicate instrument {inst.symbol}")
            seen.add((inst.family, inst.symbol))

        self._instruments = list(instruments)
        self._sources = dict(sources)
        self._synth = synthesizer
        self._limiter = limiter
        self._cache = cache
        self._registry = registry
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._threshold = fallback_threshold
        self._probe_every = recovery_probe_cycles
        self._quote_currency = quote_currency
        self._sleep = sleep

        self._states = {family: FamilyState() for family in FAMILIES}
        self._lock = asyncio.Lock()
        self._cycle = 0
        self.latest: Snapshot | None = None
        self.last_metrics: CycleMetrics | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def family_state(self, family: str) -> FamilyState:
        return self._states[family]

    def in_fallback_mode(self, family: str) -> bool:
        return self._states[family].fallback_mode

    @property
    def index_symbols(self) -> set[str]:
        return {i.symbol for i in self._instruments if i.is_index}

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _attempt(self, source: QuoteSource, symbol: str) -> FetchResult:
        """One rate-limited request. Self-paced chains wait per member."""
        if not getattr(source, "self_paced", False):
            await self._limiter.acquire(source.name)
        try:
            return await source.try_fetch(symbol)
        except FetchError as e:
            return FetchResult.failure(e)
        except Exception as e:
            logger.exception("%s: unexpected error fetching %s", source.name, symbol)
            return FetchResult.failure(FetchError(
                FetchErrorKind.MALFORMED, f"Unexpected error: {e!r}", source=source.name, symbol=symbol,
            ))

    async def fetch_with_retry(self, source: QuoteSource, symbol: str) -> FetchResult:
        """Fetch with exponential backoff; MALFORMED responses are not retried."""
        error: FetchError | None = None
        attempt = 0
        for attempt in range(self._max_retries + 1):
            result = await self._attempt(source, symbol)

            if result.ok:
                return FetchResult.success(result.value, attempts=attempt + 1)

            error = result.error
            if not error.retryable:
                logger.warning("%s: %s returned malformed data: %s", source.name, symbol, error)
                break
            if attempt < self._max_retries:
                delay = self._base_delay * (2 ** attempt)
                logger.debug(
                    "%s: %s failed (%s), retry %d/%d in %.1fs",
                    source.name, symbol, error.kind.value, attempt + 1, self._max_retries, delay,
                )
                await self._sleep(delay)

        return FetchResult.failure(error, attempts=attempt + 1)

    def _synthesize(self, inst: Instrument) -> MarketItem:
        if inst.family == "equities":
            item = self._synth.synthesize(inst.symbol)
        elif inst.family == "forex":
            item = self._synth.synthesize_forex(inst.symbol)
        else:
            item = self._synth.synthesize_crypto(inst.symbol, self._quote_currency)
        if item is None:
            raise AggregationError(f"No live data and no fallback baseline for {inst.symbol}")
        return item

    def _label(self, inst: Instrument, item: MarketItem) -> MarketItem:
        """Apply configured symbol and display names to a live value."""
        if isinstance(item, Quote):
            return item.model_copy(update={"symbol": inst.symbol, "display_name": inst.display_name})
        if isinstance(item, ForexRate):
            return item.model_copy(update={"symbol": inst.symbol, "pair": inst.display_name})
        if isinstance(item, CryptoQuote):
            return item.model_copy(update={"symbol": inst.symbol, "display_name": inst.display_name})
        return item

    async def _resolve(self, source: QuoteSource, inst: Instrument) -> tuple[MarketItem, bool]:
        result = await self.fetch_with_retry(source, inst.symbol)
        if result.ok:
            return self._label(inst, result.value), True
        logger.info(
            "%s: using fallback for %s after %d attempt(s): %s",
            source.name, inst.symbol, result.attempts, result.error,
        )
        return self._synthesize(inst), False

    async def _probe(self, source: QuoteSource, inst: Instrument) -> MarketItem | None:
        """Single real attempt while in fallback mode."""
        result = await self._attempt(source, inst.symbol)
        if result.ok:
            return self._label(inst, result.value)
        logger.debug("%s: recovery probe for %s failed: %s", source.name, inst.symbol, result.error)
        return None

    async def _resolve_family(self, family: str) -> tuple[list[MarketItem], FamilyMetrics]:
        members = [i for i in self._instruments if i.family == family]
        metrics = FamilyMetrics()
        if not members:
            return [], metrics

        source = self._sources.get(family)
        if source is None:
            metrics.skipped = len(members)
            return [self._synthesize(i) for i in members], metrics

        state = self._states[family]
        probed: MarketItem | None = None
        if state.fallback_mode:
            state.cycles_in_fallback += 1
            if self._probe_every and state.cycles_in_fallback % self._probe_every == 0:
                probed = await self._probe(source, members[0])
            if probed is None:
                metrics.skipped = len(members)
                return [self._synthesize(i) for i in members], metrics
            logger.warning("%s: recovery probe succeeded, leaving fallback mode", family)
            state.fallback_mode = False
            state.cycles_in_fallback = 0
            state.failed_cycles = 0

        if probed is not None:
            rest = await asyncio.gather(*(self._resolve(source, i) for i in members[1:]))
            resolved = [(probed, True), *rest]
        else:
            resolved = await asyncio.gather(*(self._resolve(source, i) for i in members))

        items = [item for item, _ in resolved]
        metrics.live = sum(1 for _, live in resolved if live)
        metrics.synthesized = len(resolved) - metrics.live

        if metrics.live == 0:
            state.failed_cycles += 1
            if state.failed_cycles >= self._threshold:
                state.fallback_mode = True
                state.cycles_in_fallback = 0
                logger.warning(
                    "%s: no live data for %d consecutive cycles, entering fallback mode",
                    family, state.failed_cycles,
                )
        else:
            state.failed_cycles = 0

        return items, metrics

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Snapshot:
        """Resolve every instrument, then cache and publish one Snapshot."""
        async with self._lock:
            self._cycle += 1
            metrics = CycleMetrics(cycle=self._cycle)
            started = time.monotonic()

            results = await asyncio.gather(*(self._resolve_family(f) for f in FAMILIES))
            by_family = dict(zip(FAMILIES, results))
            for family, (_, family_metrics) in by_family.items():
                metrics.families[family] = family_metrics

            quotes = tuple(by_family["equities"][0])
            snapshot = Snapshot(
                quotes=quotes,
                forex=tuple(by_family["forex"][0]),
                crypto=tuple(by_family["crypto"][0]),
                sentiment=calculate_sentiment(quotes, self.index_symbols),
                captured_at=datetime.now(timezone.utc),
            )

            self._cache.save(snapshot)
            self.latest = snapshot

            metrics.delivered = await self._registry.notify(snapshot)
            metrics.duration = time.monotonic() - started
            self.last_metrics = metrics

            logger.info(
                "Cycle %d: %d/%d live in %.2fs, delivered to %d subscriber(s) [%s]",
                metrics.cycle,
                metrics.live,
                metrics.total,
                metrics.duration,
                metrics.delivered,
                ", ".join(
                    f"{f}: live={m.live} synth={m.synthesized} skipped={m.skipped}"
                    for f, m in metrics.families.items()
                ),
            )
            return snapshot
