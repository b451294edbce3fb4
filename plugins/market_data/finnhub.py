"""Finnhub quote source -- real-time equity quotes via the REST quote endpoint.

Requires a free API key (https://finnhub.io/register). Without a key the
source is left out of the equities chain and Yahoo Finance is used alone.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from core.market_hours import TradingHours
from core.models.market import Quote
from plugins.market_data.base import DEFAULT_TIMEOUT, HttpQuoteSource, epoch_to_datetime

logger = logging.getLogger(__name__)

PLUGIN_META = {
    "name": "finnhub",
    "display_name": "Finnhub",
    "description": "Real-time equity quotes -- free tier, API key required",
    "category": "equities",
    "protocols": ["quote_source"],
    "class_name": "FinnhubEquitySource",
    "pip_dependencies": [],
    "setup_instructions": """
1. Register at https://finnhub.io/register
2. Copy the API key from the dashboard
3. Put it in ~/.finsight/.env as FINNHUB_API_KEY=...
""",
    "config_fields": [
        {
            "key": "api_key",
            "label": "Finnhub API Key",
            "type": "secret",
            "required": True,
            "env_var": "FINNHUB_API_KEY",
            "description": "Your Finnhub API key",
        },
    ],
}

_QUOTE_URL = "https://finnhub.io/api/v1/quote"


class FinnhubEquitySource(HttpQuoteSource):
    """Fetches equity quotes from Finnhub's /quote endpoint.

    Implements the QuoteSource protocol. `symbol_map` translates configured
    symbols to Finnhub tickers where they differ (e.g. indices).
    """

    family = "equities"

    def __init__(
        self,
        api_key: str,
        symbol_map: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        trading_hours: TradingHours | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Finnhub requires an API key")
        super().__init__("finnhub", client, timeout, trading_hours)
        self._api_key = api_key
        self._symbol_map = dict(symbol_map or {})

    def _request(self, symbol: str) -> tuple[str, dict]:
        ticker = self._symbol_map.get(symbol, symbol)
        return _QUOTE_URL, {"symbol": ticker, "token": self._api_key}

    def _parse(self, symbol: str, payload: Any) -> Quote:
        # Finnhub answers unknown symbols with 200 and all-zero fields
        price = payload["c"]
        if price is None or float(price) <= 0:
            raise self._malformed(symbol, f"Invalid price {price!r}")
        price = float(price)

        previous = payload.get("pc")
        change = payload.get("d")
        percent = payload.get("dp")
        if change is None and previous:
            change = price - float(previous)
        if percent is None and previous:
            percent = (price - float(previous)) / float(previous) * 100

        high = payload.get("h")
        low = payload.get("l")

        return Quote(
            symbol=symbol,
            display_name=symbol,
            price=round(price, 2),
            absolute_change=round(float(change or 0.0), 2),
            percent_change=round(float(percent or 0.0), 2),
            timestamp=epoch_to_datetime(payload.get("t")),
            session_state=self._hours.session_state(),
            day_high=round(float(high), 2) if high else None,
            day_low=round(float(low), 2) if low else None,
        )
