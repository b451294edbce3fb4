# tests/conftest.py
from __future__ import annotations

import random
from datetime import datetime, timezone

import pytest

from core.data.cache import MemorySnapshotStore, SnapshotCache
from core.errors import FetchError, FetchErrorKind
from core.market_hours import IST, TradingHours
from core.models.market import CryptoQuote, ForexRate, Quote
from core.protocols import FetchResult
from core.rate_limiter import RateLimiter
from core.subscriptions import SubscriptionRegistry
from engine.aggregator import Aggregator, Instrument
from engine.fallback import FallbackSynthesizer

# Wednesday 2024-01-10, 11:00 IST -- regular session
OPEN_TIME = datetime(2024, 1, 10, 11, 0, tzinfo=IST)
# Saturday 2024-01-13, 11:00 IST
WEEKEND_TIME = datetime(2024, 1, 13, 11, 0, tzinfo=IST)


class FakeClock:
    """Monotonic clock advanced only by FakeSleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeSleep:
    """Records requested delays and advances the paired clock instantly."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.now += seconds


class StubSource:
    """QuoteSource whose answers are scripted per symbol.

    A script entry is either a market item (success) or a FetchErrorKind
    (failure). The last entry repeats once the script is exhausted.
    """

    def __init__(self, name: str, family: str, script: dict | None = None):
        self.name = name
        self.family = family
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[str] = []
        self.closed = False

    async def fetch(self, symbol: str):
        result = await self.try_fetch(symbol)
        if result.ok:
            return result.value
        raise result.error

    async def try_fetch(self, symbol: str) -> FetchResult:
        self.calls.append(symbol)
        entries = self.script.get(symbol) or [FetchErrorKind.HTTP_ERROR]
        entry = entries.pop(0) if len(entries) > 1 else entries[0]
        if isinstance(entry, FetchErrorKind):
            return FetchResult.failure(FetchError(entry, source=self.name, symbol=symbol))
        return FetchResult.success(entry)

    def attempts_for(self, symbol: str) -> int:
        return self.calls.count(symbol)

    async def close(self) -> None:
        self.closed = True


def make_quote(symbol: str, price: float, change: float = 0.0, **kwargs) -> Quote:
    percent = change / (price - change) * 100 if price != change else 0.0
    return Quote(
        symbol=symbol,
        display_name=kwargs.pop("display_name", symbol),
        price=price,
        absolute_change=change,
        percent_change=round(percent, 2),
        **kwargs,
    )


def make_forex(symbol: str, rate: float) -> ForexRate:
    return ForexRate(pair=symbol, symbol=symbol, rate=rate)


def make_crypto(symbol: str, price: float) -> CryptoQuote:
    return CryptoQuote(symbol=symbol, display_name=symbol, price_in_quote_currency=price)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def hours() -> TradingHours:
    return TradingHours()


@pytest.fixture
def synthesizer(hours) -> FallbackSynthesizer:
    return FallbackSynthesizer(
        trading_hours=hours,
        rng=random.Random(42),
        clock=lambda: OPEN_TIME.astimezone(timezone.utc),
    )


@pytest.fixture
def store() -> MemorySnapshotStore:
    return MemorySnapshotStore()


@pytest.fixture
def cache(store) -> SnapshotCache:
    return SnapshotCache(store)


@pytest.fixture
def build_aggregator(synthesizer, cache, clock, fake_sleep):
    """Factory: build_aggregator(instruments, sources, **overrides)."""

    def _build(instruments, sources, registry=None, **kwargs):
        limiter = kwargs.pop("limiter", None) or RateLimiter(
            default_interval=0.0, clock=clock, sleep=fake_sleep,
        )
        return Aggregator(
            instruments=instruments,
            sources=sources,
            synthesizer=kwargs.pop("synthesizer", synthesizer),
            limiter=limiter,
            cache=kwargs.pop("cache", cache),
            registry=registry or SubscriptionRegistry(),
            sleep=kwargs.pop("sleep", fake_sleep),
            **kwargs,
        )

    return _build


def equity(symbol: str, display_name: str | None = None, is_index: bool = False) -> Instrument:
    return Instrument(symbol, "equities", display_name or symbol, is_index)
