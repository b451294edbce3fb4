"""Advance/decline market sentiment over the equities in a batch."""

from __future__ import annotations

from typing import Iterable

from core.models.market import Quote, Sentiment

BULLISH_ABOVE = 0.6
BEARISH_BELOW = 0.4


def is_index(quote: Quote, index_symbols: Iterable[str] = ()) -> bool:
    return quote.symbol.startswith("^") or quote.symbol in set(index_symbols)


def calculate_sentiment(quotes: Iterable[Quote], index_symbols: Iterable[str] = ()) -> Sentiment:
    """Share of advancing equities, indices excluded.

    A quote advances when its absolute change is strictly positive. With no
    equities the ratio is 0.5 (neutral).
    """
    indices = set(index_symbols)
    equities = [q for q in quotes if not is_index(q, indices)]
    total = len(equities)
    positive = sum(1 for q in equities if q.absolute_change > 0)
    ratio = positive / total if total else 0.5

    if ratio > BULLISH_ABOVE:
        label = "bullish"
    elif ratio < BEARISH_BELOW:
        label = "bearish"
    else:
        label = "neutral"

    return Sentiment(
        label=label,
        advance_decline_ratio=ratio,
        positive_count=positive,
        total_count=total,
    )
