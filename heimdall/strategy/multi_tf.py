"""Multi-timeframe analysis over rolling price / imbalance buffers.

Each timeframe samples the feed at its own interval into a ring buffer
capped at 3x the points it needs. Once ready, a timeframe reports:

  trend        UPTREND / DOWNTREND / RANGING   (first-in-window vs latest)
  price action RISING / FALLING / FLAT         (last 5 samples)
  volatility   mean |%change| over last <=10 samples

and a per-timeframe vote:

  UPTREND   + FALLING|FLAT                      -> LONG  @ 0.7  (buy the dip)
  DOWNTREND + RISING|FLAT                       -> SHORT @ 0.7  (sell the rip)
  RANGING   + stable imbalance against the tape -> LONG/SHORT @ 0.5
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from heimdall.exchange.models import Direction
from heimdall.market_state import MarketState, TimeframeBuffer

log = logging.getLogger("heimdall.strategy.multi_tf")

TREND_STRENGTH = 0.7
RANGE_STRENGTH = 0.5
PRICE_ACTION_WINDOW = 5
VOLATILITY_WINDOW = 10
STABILITY_WINDOW = 4
STABILITY_MIN_HITS = 3
STABILITY_FRACTION = 0.7


class TrendMode(Enum):
    UPTREND = "UPTREND"
    DOWNTREND = "DOWNTREND"
    RANGING = "RANGING"


class PriceAction(Enum):
    RISING = "RISING"
    FALLING = "FALLING"
    FLAT = "FLAT"


@dataclass
class TimeframeAnalysis:
    """Analysis result for a single timeframe."""
    label: str
    ready: bool = False
    points: int = 0
    trend: TrendMode = TrendMode.RANGING
    price_action: PriceAction = PriceAction.FLAT
    volatility: float = 0.0
    change_pct: float = 0.0
    signal: Optional[Direction] = None
    strength: float = 0.0

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "ready": self.ready,
            "points": self.points,
            "trend": self.trend.value,
            "price_action": self.price_action.value,
            "volatility": round(self.volatility, 4),
            "change_pct": round(self.change_pct, 4),
            "signal": self.signal.value if self.signal else None,
            "strength": self.strength,
        }


def trend_threshold_pct(base_pct: float, window_minutes: float) -> float:
    """Trend threshold grows with the square root of the window length."""
    return base_pct * math.sqrt(max(window_minutes, 1e-9))


def classify_trend(prices: list[float], points_needed: int, threshold_pct: float) -> tuple[TrendMode, float]:
    if len(prices) < 2:
        return TrendMode.RANGING, 0.0
    anchor = prices[-points_needed] if len(prices) >= points_needed else prices[0]
    if anchor <= 0:
        return TrendMode.RANGING, 0.0
    change = (prices[-1] - anchor) / anchor * 100
    if change > threshold_pct:
        return TrendMode.UPTREND, change
    if change < -threshold_pct:
        return TrendMode.DOWNTREND, change
    return TrendMode.RANGING, change


def classify_price_action(prices: list[float]) -> PriceAction:
    recent = prices[-PRICE_ACTION_WINDOW:]
    ups = sum(1 for a, b in zip(recent, recent[1:]) if b > a)
    downs = sum(1 for a, b in zip(recent, recent[1:]) if b < a)
    if ups >= 3:
        return PriceAction.RISING
    if downs >= 3:
        return PriceAction.FALLING
    return PriceAction.FLAT


def measure_volatility(prices: list[float]) -> float:
    recent = np.asarray(prices[-VOLATILITY_WINDOW:], dtype=float)
    if recent.size < 2:
        return 0.0
    prev = recent[:-1]
    valid = prev > 0
    if not valid.any():
        return 0.0
    changes = np.abs(np.diff(recent)[valid] / prev[valid]) * 100
    return float(changes.mean())


def imbalance_stable(imbalances: list[float], threshold: float, direction: Direction) -> bool:
    """At least 3 of the last 4 samples beyond 0.7x threshold in ``direction``."""
    recent = imbalances[-STABILITY_WINDOW:]
    if len(recent) < STABILITY_WINDOW:
        return False
    bar = threshold * STABILITY_FRACTION
    if direction is Direction.LONG:
        hits = sum(1 for v in recent if v > bar)
    else:
        hits = sum(1 for v in recent if v < -bar)
    return hits >= STABILITY_MIN_HITS


class MultiTimeframeAnalyzer:
    """Feeds per-timeframe buffers and turns them into per-timeframe votes."""

    def __init__(self, imbalance_threshold: float = 0.3, trend_base_pct: float = 0.05):
        self._imb_threshold = imbalance_threshold
        self._trend_base = trend_base_pct

    def ingest(self, state: MarketState, price: float, imbalance: float, now: float) -> None:
        """Append the sample to every timeframe whose interval has elapsed."""
        state.last_price = price
        state.last_imbalance = imbalance
        for buf in state.buffers.values():
            if buf.due(now):
                buf.append(price, imbalance, now)

    def analyze(self, state: MarketState) -> list[TimeframeAnalysis]:
        return [self.analyze_buffer(buf) for buf in state.buffers.values()]

    def analyze_buffer(self, buf: TimeframeBuffer) -> TimeframeAnalysis:
        prices = list(buf.prices)
        result = TimeframeAnalysis(label=buf.spec.label, points=len(prices))
        if not buf.ready:
            return result
        result.ready = True

        threshold = trend_threshold_pct(self._trend_base, buf.spec.window_minutes)
        result.trend, result.change_pct = classify_trend(prices, buf.spec.points_needed, threshold)
        result.price_action = classify_price_action(prices)
        result.volatility = measure_volatility(prices)

        trend, action = result.trend, result.price_action
        if trend is TrendMode.UPTREND and action in (PriceAction.FALLING, PriceAction.FLAT):
            result.signal, result.strength = Direction.LONG, TREND_STRENGTH
        elif trend is TrendMode.DOWNTREND and action in (PriceAction.RISING, PriceAction.FLAT):
            result.signal, result.strength = Direction.SHORT, TREND_STRENGTH
        elif trend is TrendMode.RANGING:
            imbalances = list(buf.imbalances)
            latest = imbalances[-1]
            if (
                action is PriceAction.FALLING
                and latest >= self._imb_threshold
                and imbalance_stable(imbalances, self._imb_threshold, Direction.LONG)
            ):
                result.signal, result.strength = Direction.LONG, RANGE_STRENGTH
            elif (
                action is PriceAction.RISING
                and latest <= -self._imb_threshold
                and imbalance_stable(imbalances, self._imb_threshold, Direction.SHORT)
            ):
                result.signal, result.strength = Direction.SHORT, RANGE_STRENGTH
        return result
