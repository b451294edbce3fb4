"""Market data models -- quotes, rates, sentiment and the published snapshot.

All models are frozen: a Snapshot is handed by reference to every subscriber
and must never change after it is built.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

SessionState = Literal["REGULAR", "PRE", "POST", "CLOSED"]
SentimentLabel = Literal["bullish", "bearish", "neutral"]
ConnectionStatus = Literal["connected", "loading", "error"]

SESSION_STATES: tuple[str, ...] = ("REGULAR", "PRE", "POST", "CLOSED")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Quote(BaseModel):
    """Latest price and change data for one equity or index."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    display_name: str
    price: float = Field(gt=0, allow_inf_nan=False)
    absolute_change: float = Field(default=0.0, allow_inf_nan=False)
    percent_change: float = Field(default=0.0, allow_inf_nan=False)
    timestamp: datetime = Field(default_factory=_utcnow)
    session_state: SessionState = "CLOSED"
    day_high: float | None = None
    day_low: float | None = None
    volume: int | None = None


class ForexRate(BaseModel):
    """Exchange rate for one currency pair, e.g. USD/INR."""

    model_config = ConfigDict(frozen=True)

    pair: str
    symbol: str = ""
    rate: float = Field(gt=0, allow_inf_nan=False)
    absolute_change: float = Field(default=0.0, allow_inf_nan=False)
    percent_change: float = Field(default=0.0, allow_inf_nan=False)
    timestamp: datetime = Field(default_factory=_utcnow)


class CryptoQuote(BaseModel):
    """Price of one crypto asset in the configured quote currency."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    display_name: str
    price_in_quote_currency: float = Field(gt=0, allow_inf_nan=False)
    quote_currency: str = "INR"
    absolute_change_24h: float = Field(default=0.0, allow_inf_nan=False)
    percent_change_24h: float = Field(default=0.0, allow_inf_nan=False)
    timestamp: datetime = Field(default_factory=_utcnow)


class Sentiment(BaseModel):
    """Advance/decline based market mood, recomputed every cycle."""

    model_config = ConfigDict(frozen=True)

    label: SentimentLabel = "neutral"
    advance_decline_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    positive_count: int = Field(default=0, ge=0)
    total_count: int = Field(default=0, ge=0)


class Snapshot(BaseModel):
    """The full, internally consistent batch published in one cycle."""

    model_config = ConfigDict(frozen=True)

    quotes: tuple[Quote, ...] = ()
    forex: tuple[ForexRate, ...] = ()
    crypto: tuple[CryptoQuote, ...] = ()
    sentiment: Sentiment = Field(default_factory=Sentiment)
    captured_at: datetime = Field(default_factory=_utcnow)

    def age_seconds(self, now: datetime | None = None) -> float:
        ref = now or _utcnow()
        return max((ref - self.captured_at).total_seconds(), 0.0)
