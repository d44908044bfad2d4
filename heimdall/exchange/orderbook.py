"""Order-book reduction: mid price, top-of-book imbalance, data-quality checks."""
from __future__ import annotations

import time
from typing import Iterable, Optional

from heimdall.exchange.models import BookSample


class FeedError(Exception):
    """Feed unavailable or its data failed a quality check."""


def _level_size(level) -> float:
    if isinstance(level, dict):
        return float(level.get("sz", level.get("qty", 0)))
    return float(level[1])


def _level_price(level) -> float:
    if isinstance(level, dict):
        return float(level.get("px", level.get("price", 0)))
    return float(level[0])


def compute_imbalance(bids: Iterable, asks: Iterable, depth: int = 15) -> float:
    """(bid size - ask size) / (bid size + ask size) over the top ``depth`` levels."""
    bid_size = sum(_level_size(b) for b in list(bids)[:depth])
    ask_size = sum(_level_size(a) for a in list(asks)[:depth])
    total = bid_size + ask_size
    if total <= 0:
        return 0.0
    return (bid_size - ask_size) / total


def book_to_sample(
    symbol: str,
    bids: list,
    asks: list,
    depth: int = 15,
    max_spread_pct: float = 0.5,
    book_time: Optional[float] = None,
    max_age_seconds: float = 60.0,
    now: Optional[float] = None,
) -> BookSample:
    """Reduce a raw book snapshot to a ``BookSample``.

    Raises FeedError for empty/crossed books, a spread wider than
    ``max_spread_pct`` or a snapshot older than ``max_age_seconds``.
    """
    now = time.time() if now is None else now
    if not bids or not asks:
        raise FeedError(f"{symbol}: empty order book")

    best_bid = _level_price(bids[0])
    best_ask = _level_price(asks[0])
    if best_bid <= 0 or best_ask <= 0 or best_bid >= best_ask:
        raise FeedError(f"{symbol}: invalid top of book bid={best_bid} ask={best_ask}")

    mid = (best_bid + best_ask) / 2
    spread_pct = (best_ask - best_bid) / mid * 100
    if spread_pct > max_spread_pct:
        raise FeedError(f"{symbol}: spread {spread_pct:.3f}% wider than {max_spread_pct}%")

    if book_time is not None and now - book_time > max_age_seconds:
        raise FeedError(f"{symbol}: book stale ({now - book_time:.0f}s old)")

    return BookSample(
        symbol=symbol,
        price=mid,
        imbalance=compute_imbalance(bids, asks, depth),
        timestamp=now,
        spread_pct=spread_pct,
    )
