"""Pydantic data models shared across all components."""

from core.models.market import (
    ConnectionStatus,
    CryptoQuote,
    ForexRate,
    Quote,
    Sentiment,
    SentimentLabel,
    SessionState,
    Snapshot,
)

__all__ = [
    "ConnectionStatus",
    "CryptoQuote",
    "ForexRate",
    "Quote",
    "Sentiment",
    "SentimentLabel",
    "SessionState",
    "Snapshot",
]
