"""Shared plumbing for HTTP quote sources.

HttpQuoteSource turns httpx failures and payload problems into FetchError
kinds. Subclasses only build the request and parse the JSON payload.
FailoverSource chains several sources of one family in priority order.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import ValidationError

from core.errors import FetchError, FetchErrorKind
from core.market_hours import TradingHours
from core.protocols import FetchResult, MarketItem
from core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
USER_AGENT = "FinsightFeed/0.1"


def epoch_to_datetime(value: Any) -> datetime:
    """Unix seconds -> aware UTC datetime; falls back to now."""
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.now(timezone.utc)


class HttpQuoteSource:
    """Base class for single-endpoint JSON quote sources.

    Subclasses set `family` and implement `_request(symbol)` and
    `_parse(symbol, payload)`.
    """

    family: str = ""

    def __init__(
        self,
        name: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        trading_hours: TradingHours | None = None,
    ) -> None:
        self._name = name
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        self._hours = trading_hours or TradingHours()

    @property
    def name(self) -> str:
        return self._name

    def _request(self, symbol: str) -> tuple[str, dict]:
        """Return (url, query params) for one symbol."""
        raise NotImplementedError

    def _parse(self, symbol: str, payload: Any) -> MarketItem:
        raise NotImplementedError

    async def fetch(self, symbol: str) -> MarketItem:
        url, params = self._request(symbol)
        payload = await self._get_json(symbol, url, params)
        if not isinstance(payload, dict):
            raise self._malformed(symbol, f"Expected a JSON object, got {type(payload).__name__}")
        try:
            return self._parse(symbol, payload)
        except FetchError:
            raise
        except (AttributeError, KeyError, IndexError, TypeError, ValueError, ValidationError) as e:
            raise FetchError(
                FetchErrorKind.MALFORMED,
                f"Unexpected payload: {e}",
                source=self._name,
                symbol=symbol,
            ) from e

    async def try_fetch(self, symbol: str) -> FetchResult:
        try:
            return FetchResult.success(await self.fetch(symbol))
        except FetchError as e:
            return FetchResult.failure(e)

    async def _get_json(self, symbol: str, url: str, params: dict) -> Any:
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise FetchError(
                FetchErrorKind.TIMEOUT, f"Request timed out: {e}", source=self._name, symbol=symbol,
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                FetchErrorKind.HTTP_ERROR, f"Request failed: {e}", source=self._name, symbol=symbol,
            ) from e

        if response.status_code == 429:
            raise FetchError(
                FetchErrorKind.RATE_LIMITED,
                "Upstream rate limit (429)",
                source=self._name,
                symbol=symbol,
                status_code=429,
            )
        if not response.is_success:
            raise FetchError(
                FetchErrorKind.HTTP_ERROR,
                f"Upstream returned {response.status_code}",
                source=self._name,
                symbol=symbol,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(
                FetchErrorKind.MALFORMED, "Response is not JSON", source=self._name, symbol=symbol,
            ) from e

    def _malformed(self, symbol: str, message: str) -> FetchError:
        return FetchError(FetchErrorKind.MALFORMED, message, source=self._name, symbol=symbol)

    async def close(self) -> None:
        """Close the HTTP client if this source created it."""
        if self._owns_client:
            await self._client.aclose()


class FailoverSource:
    """Tries each source in order; the first valid response wins.

    If every source fails, the error kind is RATE_LIMITED when all of them
    were rate limited, otherwise the kind of the last failure.

    With a limiter, every member request waits on the member's own key
    (`finnhub`, `yahoo_finance:query1`, ...) and the chain is self-paced.
    """

    def __init__(
        self,
        name: str,
        family: str,
        sources: list,
        limiter: RateLimiter | None = None,
    ) -> None:
        if not sources:
            raise ValueError(f"FailoverSource {name!r} needs at least one source")
        self._name = name
        self._family = family
        self._sources = list(sources)
        self._limiter = limiter

    @property
    def name(self) -> str:
        return self._name

    @property
    def family(self) -> str:
        return self._family

    @property
    def sources(self) -> list:
        return list(self._sources)

    @property
    def self_paced(self) -> bool:
        return self._limiter is not None

    async def fetch(self, symbol: str) -> MarketItem:
        errors: list[FetchError] = []
        for source in self._sources:
            if self._limiter is not None:
                await self._limiter.acquire(source.name)
            result = await source.try_fetch(symbol)
            if result.ok:
                if errors:
                    logger.info(
                        "%s: %s served %s after %d failed endpoint(s)",
                        self._name, source.name, symbol, len(errors),
                    )
                return result.value
            logger.debug("%s: %s failed for %s: %r", self._name, source.name, symbol, result.error)
            errors.append(result.error)

        last = errors[-1]
        if all(e.kind is FetchErrorKind.RATE_LIMITED for e in errors):
            kind = FetchErrorKind.RATE_LIMITED
        else:
            kind = last.kind
        raise FetchError(
            kind,
            f"All {len(errors)} endpoint(s) failed; last: {last}",
            source=self._name,
            symbol=symbol,
            status_code=last.status_code,
        )

    async def try_fetch(self, symbol: str) -> FetchResult:
        try:
            return FetchResult.success(await self.fetch(symbol))
        except FetchError as e:
            return FetchResult.failure(e)

    async def close(self) -> None:
        for source in self._sources:
            await source.close()
