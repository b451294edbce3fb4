"""Fallback synthesizer -- plausible stand-in values when live sources fail.

Every symbol is registered up front with a baseline price and a volatility
(in percent). A synthesized value is the baseline moved by a random percent
within +/- volatility, capped at MAX_MOVE_PERCENT, and damped when the
instrument's session is closed. Unknown symbols yield None.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from core.market_hours import TradingHours, forex_session_open
from core.models.market import CryptoQuote, ForexRate, Quote

logger = logging.getLogger(__name__)

MAX_MOVE_PERCENT = 3.0
CLOSED_SESSION_SCALE = 0.1


@dataclass(frozen=True)
class Baseline:
    symbol: str
    price: float
    volatility: float
    display_name: str
    is_index: bool = False


class FallbackSynthesizer:
    """Generates well-formed Quote / ForexRate / CryptoQuote values offline.

    Usage:
        synth = FallbackSynthesizer()
        synth.register("RELIANCE.NS", 2800, volatility=1.2, display_name="RELIANCE")
        quote = synth.synthesize("RELIANCE.NS")
    """

    def __init__(
        self,
        trading_hours: TradingHours | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._hours = trading_hours or TradingHours()
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._baselines: dict[str, Baseline] = {}

    def register(
        self,
        symbol: str,
        price: float,
        volatility: float = 1.0,
        display_name: str | None = None,
        is_index: bool = False,
    ) -> None:
        if price <= 0:
            raise ValueError(f"Baseline price for {symbol} must be positive, got {price}")
        self._baselines[symbol] = Baseline(
            symbol=symbol,
            price=float(price),
            volatility=abs(float(volatility)),
            display_name=display_name or symbol,
            is_index=is_index or symbol.startswith("^"),
        )

    def _move_percent(self, volatility: float, session_open: bool) -> float:
        bound = min(volatility, MAX_MOVE_PERCENT)
        percent = self._rng.uniform(-1.0, 1.0) * bound
        if not session_open:
            percent *= CLOSED_SESSION_SCALE
        return percent

    def synthesize(self, symbol: str) -> Quote | None:
        """Equity or index quote; None if the symbol has no baseline."""
        base = self._baselines.get(symbol)
        if base is None:
            logger.warning("No fallback baseline for %s", symbol)
            return None

        now = self._clock()
        state = self._hours.session_state(now)
        is_open = state == "REGULAR"
        percent = self._move_percent(base.volatility, is_open)
        price = base.price * (1 + percent / 100)
        spread = abs(percent) / 100 + 0.01

        if base.is_index:
            volume = 0
        else:
            volume = int(self._rng.randint(2_000_000, 7_000_000) * (1.5 if is_open else 0.2))

        return Quote(
            symbol=symbol,
            display_name=base.display_name,
            price=round(price, 2),
            absolute_change=round(price - base.price, 2),
            percent_change=round(percent, 2),
            timestamp=now,
            session_state=state,
            day_high=round(price * (1 + spread), 2),
            day_low=round(price * (1 - spread), 2),
            volume=volume,
        )

    def synthesize_forex(self, symbol: str) -> ForexRate | None:
        base = self._baselines.get(symbol)
        if base is None:
            logger.warning("No fallback baseline for %s", symbol)
            return None

        now = self._clock()
        percent = self._move_percent(base.volatility, forex_session_open(now))
        rate = base.price * (1 + percent / 100)
        return ForexRate(
            pair=base.display_name,
            symbol=symbol,
            rate=round(rate, 4),
            absolute_change=round(rate - base.price, 4),
            percent_change=round(percent, 2),
            timestamp=now,
        )

    def synthesize_crypto(self, symbol: str, quote_currency: str = "INR") -> CryptoQuote | None:
        """Crypto trades around the clock, so the move is never damped."""
        base = self._baselines.get(symbol)
        if base is None:
            logger.warning("No fallback baseline for %s", symbol)
            return None

        now = self._clock()
        percent = self._move_percent(base.volatility, True)
        price = base.price * (1 + percent / 100)
        return CryptoQuote(
            symbol=symbol,
            display_name=base.display_name,
            price_in_quote_currency=round(price, 2),
            quote_currency=quote_currency.upper(),
            absolute_change_24h=round(price - base.price, 2),
            percent_change_24h=round(percent, 2),
            timestamp=now,
        )
