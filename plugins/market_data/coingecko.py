"""CoinGecko quote source -- crypto prices in the configured fiat currency.

Free public API, no key required. Crypto trades around the clock, so there
is no session state on these quotes.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from core.models.market import CryptoQuote
from plugins.market_data.base import DEFAULT_TIMEOUT, HttpQuoteSource, epoch_to_datetime

logger = logging.getLogger(__name__)

PLUGIN_META = {
    "name": "coingecko",
    "display_name": "CoinGecko",
    "description": "Crypto prices with 24h change -- free, no API key required",
    "category": "crypto",
    "protocols": ["quote_source"],
    "class_name": "CoinGeckoCryptoSource",
    "pip_dependencies": [],
    "setup_instructions": """
CoinGecko's public API needs no key. Coins are configured by their
CoinGecko id (bitcoin, ethereum) together with the ticker to display.
""",
    "config_fields": [],
}

_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"


class CoinGeckoCryptoSource(HttpQuoteSource):
    """Fetches one coin at a time from /simple/price.

    `coins` maps the display ticker to (coingecko id, display name).
    """

    family = "crypto"

    def __init__(
        self,
        coins: dict[str, tuple[str, str]],
        quote_currency: str = "inr",
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__("coingecko", client, timeout)
        self._coins = dict(coins)
        self._currency = quote_currency.lower()

    def _coin(self, symbol: str) -> tuple[str, str]:
        if symbol in self._coins:
            return self._coins[symbol]
        # Accept the CoinGecko id directly
        return symbol.lower(), symbol

    def _request(self, symbol: str) -> tuple[str, dict]:
        coin_id, _ = self._coin(symbol)
        return _PRICE_URL, {
            "ids": coin_id,
            "vs_currencies": self._currency,
            "include_24hr_change": "true",
            "include_last_updated_at": "true",
        }

    def _parse(self, symbol: str, payload: Any) -> CryptoQuote:
        coin_id, display_name = self._coin(symbol)
        data = payload.get(coin_id)
        if not data or not isinstance(data, dict):
            raise self._malformed(symbol, f"No price for {coin_id}")

        price = float(data[self._currency])
        percent = float(data.get(f"{self._currency}_24h_change") or 0.0)
        # Only the percentage is published; derive the absolute move from it
        opening = price / (1 + percent / 100) if percent > -100 else price
        change = price - opening

        return CryptoQuote(
            symbol=symbol,
            display_name=display_name,
            price_in_quote_currency=round(price, 2),
            quote_currency=self._currency.upper(),
            absolute_change_24h=round(change, 2),
            percent_change_24h=round(percent, 2),
            timestamp=epoch_to_datetime(data.get("last_updated_at")),
        )
