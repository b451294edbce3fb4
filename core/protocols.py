"""Core protocols -- the extension points of the market data service.

The core imports these protocols. Plugins implement them.
The core NEVER imports concrete source implementations.

All protocols use Python's structural subtyping (typing.Protocol):
if your class has the right methods, it implements the protocol.
No inheritance required.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Generic, Literal, Protocol, TypeVar, Union, runtime_checkable

from core.errors import FetchError
from core.models.market import CryptoQuote, ForexRate, Quote, Snapshot

Family = Literal["equities", "forex", "crypto"]
FAMILIES: tuple[str, ...] = ("equities", "forex", "crypto")

MarketItem = Union[Quote, ForexRate, CryptoQuote]
T = TypeVar("T")

# Subscribers may be plain functions or coroutine functions.
SnapshotCallback = Callable[[Snapshot], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# 1. FetchResult -- explicit success/failure value returned by sources
# ---------------------------------------------------------------------------

class FetchResult(Generic[T]):
    """Outcome of one fetch: either a value or a FetchError, never both.

    The aggregator branches on `error.kind` instead of relying on exception
    propagation, so the retry/fallback policy stays visible as data flow.
    """

    __slots__ = ("value", "error", "attempts")

    def __init__(
        self,
        value: T | None = None,
        error: FetchError | None = None,
        attempts: int = 1,
    ) -> None:
        if (value is None) == (error is None):
            raise ValueError("FetchResult needs exactly one of value or error")
        self.value = value
        self.error = error
        self.attempts = attempts

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> FetchResult[T]:
        return cls(value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: FetchError, attempts: int = 1) -> FetchResult[T]:
        return cls(error=error, attempts=attempts)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        if self.ok:
            return f"FetchResult(ok, attempts={self.attempts})"
        return f"FetchResult({self.error.kind.value}, attempts={self.attempts})"


# ---------------------------------------------------------------------------
# 2. QuoteSource -- fetch one instrument from an upstream API
# ---------------------------------------------------------------------------

@runtime_checkable
class QuoteSource(Protocol):
    """Fetches the latest quote for one symbol of a single data family.

    Multiple sources of the same family can be chained in priority order
    (see plugins.market_data.base.FailoverSource). A chain with
    `self_paced = True` waits on the rate limiter per member itself.
    """

    @property
    def name(self) -> str:
        """Unique source name, also used as the rate-limiter key."""
        ...

    @property
    def family(self) -> str:
        """One of 'equities', 'forex', 'crypto'."""
        ...

    async def fetch(self, symbol: str) -> Any:
        """Return a Quote / ForexRate / CryptoQuote or raise FetchError."""
        ...

    async def try_fetch(self, symbol: str) -> FetchResult:
        """Like fetch(), but return the failure as a FetchResult."""
        ...


# ---------------------------------------------------------------------------
# 3. SnapshotStore -- durable storage for the single cached snapshot
# ---------------------------------------------------------------------------

@runtime_checkable
class SnapshotStore(Protocol):
    """Key/value blob storage holding at most one serialized Snapshot.

    Writes must be atomic: a reader never observes a half-written blob.
    """

    def read(self, key: str) -> str | None:
        ...

    def write(self, key: str, blob: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...
