"""Yahoo Finance quote sources -- fetches via httpx (no yfinance dependency).

Uses the public chart API's `meta` block, which carries the latest price,
previous close, day range, volume and market state.
Example tickers: ^NSEI, RELIANCE.NS, USDINR=X
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from core.market_hours import TradingHours
from core.models.market import SESSION_STATES, ForexRate, Quote
from core.rate_limiter import RateLimiter
from plugins.market_data.base import DEFAULT_TIMEOUT, FailoverSource, HttpQuoteSource, epoch_to_datetime

logger = logging.getLogger(__name__)

PLUGIN_META = {
    "name": "yahoo_finance",
    "display_name": "Yahoo Finance",
    "description": "NSE/BSE equities, indices and forex -- free, no API key required",
    "category": "equities",
    "protocols": ["quote_source"],
    "class_name": "YahooEquitySource",
    "pip_dependencies": [],
    "setup_instructions": """
Yahoo Finance requires no API key -- it's free and public.
Requests go to query1.finance.yahoo.com first and fail over to query2.

Supported ticker formats:
  Indices: ^NSEI, ^BSESN
  NSE:     RELIANCE.NS, TCS.NS
  Forex:   USDINR=X, EURINR=X
""",
    "config_fields": [],
}

# Yahoo Finance chart API endpoint, one per host
_CHART_URL = "https://{host}.finance.yahoo.com/v8/finance/chart/{ticker}"
HOSTS = ("query1", "query2")


def _chart_meta(payload: Any) -> dict:
    chart = payload["chart"]
    if not isinstance(chart, dict):
        raise TypeError(f"chart is {type(chart).__name__}, not an object")
    result = chart.get("result")
    if not result:
        raise ValueError(f"No chart result: {chart.get('error')}")
    meta = result[0]["meta"]
    if not isinstance(meta, dict):
        raise TypeError("chart meta is not an object")
    return meta


def _change(price: float, meta: dict) -> tuple[float, float]:
    previous = meta.get("previousClose") or meta.get("chartPreviousClose") or price
    previous = float(previous)
    change = price - previous
    percent = (change / previous) * 100 if previous else 0.0
    return change, percent


def pair_from_ticker(ticker: str) -> str:
    """USDINR=X -> USD/INR"""
    base = ticker.upper().removesuffix("=X")
    if len(base) == 6:
        return f"{base[:3]}/{base[3:]}"
    return base


class YahooEquitySource(HttpQuoteSource):
    """Equity and index quotes from one Yahoo chart host.

    Implements the QuoteSource protocol.
    """

    family = "equities"

    def __init__(
        self,
        host: str = "query1",
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        trading_hours: TradingHours | None = None,
    ) -> None:
        super().__init__(f"yahoo_finance:{host}", client, timeout, trading_hours)
        self._host = host

    def _request(self, symbol: str) -> tuple[str, dict]:
        url = _CHART_URL.format(host=self._host, ticker=symbol)
        return url, {"interval": "1d", "range": "1d"}

    def _parse(self, symbol: str, payload: Any) -> Quote:
        meta = _chart_meta(payload)
        price = float(meta["regularMarketPrice"])
        change, percent = _change(price, meta)

        state = meta.get("marketState")
        if state not in SESSION_STATES:
            state = self._hours.session_state()

        high = meta.get("regularMarketDayHigh")
        low = meta.get("regularMarketDayLow")
        volume = meta.get("regularMarketVolume")

        return Quote(
            symbol=symbol,
            display_name=meta.get("shortName") or symbol,
            price=round(price, 2),
            absolute_change=round(change, 2),
            percent_change=round(percent, 2),
            timestamp=epoch_to_datetime(meta.get("regularMarketTime")),
            session_state=state,
            day_high=round(float(high), 2) if high is not None else None,
            day_low=round(float(low), 2) if low is not None else None,
            volume=int(volume) if volume is not None else None,
        )


class YahooForexSource(HttpQuoteSource):
    """Currency pair rates from the same chart API (USDINR=X style tickers)."""

    family = "forex"

    def __init__(
        self,
        host: str = "query1",
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        trading_hours: TradingHours | None = None,
    ) -> None:
        super().__init__(f"yahoo_forex:{host}", client, timeout, trading_hours)
        self._host = host

    def _request(self, symbol: str) -> tuple[str, dict]:
        url = _CHART_URL.format(host=self._host, ticker=symbol)
        return url, {"interval": "1d", "range": "1d"}

    def _parse(self, symbol: str, payload: Any) -> ForexRate:
        meta = _chart_meta(payload)
        rate = float(meta["regularMarketPrice"])
        change, percent = _change(rate, meta)
        return ForexRate(
            pair=pair_from_ticker(symbol),
            symbol=symbol,
            rate=round(rate, 4),
            absolute_change=round(change, 4),
            percent_change=round(percent, 2),
            timestamp=epoch_to_datetime(meta.get("regularMarketTime")),
        )


def yahoo_equity_chain(
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    trading_hours: TradingHours | None = None,
    limiter: RateLimiter | None = None,
) -> FailoverSource:
    """query1 -> query2 failover for equities."""
    return FailoverSource(
        "yahoo_finance",
        "equities",
        [YahooEquitySource(host, client, timeout, trading_hours) for host in HOSTS],
        limiter=limiter,
    )


def yahoo_forex_chain(
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    limiter: RateLimiter | None = None,
) -> FailoverSource:
    """query1 -> query2 failover for forex."""
    return FailoverSource(
        "yahoo_forex",
        "forex",
        [YahooForexSource(host, client, timeout) for host in HOSTS],
        limiter=limiter,
    )
