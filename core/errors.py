"""Error taxonomy for the market data service.

Per-symbol fetch failures (FetchError) are absorbed inside the aggregator.
Whole-cycle failures (AggregationError) are logged by the scheduler.
Subscriber callback failures are isolated by the subscription registry.
"""

from __future__ import annotations

from enum import Enum


class FeedError(Exception):
    """Base class for all errors raised by this package."""


class FetchErrorKind(str, Enum):
    HTTP_ERROR = "HTTP_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    MALFORMED = "MALFORMED"
    TIMEOUT = "TIMEOUT"


class FetchError(FeedError):
    """A single upstream request failed.

    `kind` drives the retry policy: MALFORMED is never retried, every other
    kind is retried with exponential backoff.
    """

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str = "",
        *,
        source: str = "",
        symbol: str = "",
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.source = source
        self.symbol = symbol
        self.status_code = status_code
        super().__init__(message or kind.value)

    @property
    def retryable(self) -> bool:
        return self.kind is not FetchErrorKind.MALFORMED

    def __repr__(self) -> str:
        return (
            f"FetchError({self.kind.value}, source={self.source!r}, "
            f"symbol={self.symbol!r}, message={str(self)!r})"
        )


class AggregationError(FeedError):
    """A whole aggregation cycle failed (e.g. the cache could not be written)."""
