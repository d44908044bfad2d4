"""Per-symbol mutable market state.

Buffers are written by the analyzer (``MultiTimeframeAnalyzer.ingest``);
everything position-related is written only by the ``PositionManager``.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from heimdall.config import TimeframeSpec
from heimdall.exchange.models import Direction, PositionSide


@dataclass
class TimeframeBuffer:
    """Ring buffer of (price, imbalance, sample-time) for one timeframe."""
    spec: TimeframeSpec
    prices: deque = field(default_factory=deque)
    imbalances: deque = field(default_factory=deque)
    times: deque = field(default_factory=deque)

    def __post_init__(self) -> None:
        cap = self.spec.capacity
        self.prices = deque(self.prices, maxlen=cap)
        self.imbalances = deque(self.imbalances, maxlen=cap)
        self.times = deque(self.times, maxlen=cap)

    @property
    def ready(self) -> bool:
        return len(self.prices) >= self.spec.points_needed

    def due(self, now: float) -> bool:
        return not self.times or now - self.times[-1] >= self.spec.interval_seconds

    def append(self, price: float, imbalance: float, now: float) -> None:
        self.prices.append(price)
        self.imbalances.append(imbalance)
        self.times.append(now)


@dataclass
class MarketState:
    symbol: str
    buffers: dict[str, TimeframeBuffer] = field(default_factory=dict)

    # Position
    position: PositionSide = PositionSide.NONE
    entry_price: float = 0.0
    entry_time: float = 0.0
    entry_volatility: float = 0.0
    entry_confidence: float = 0.0
    highest_price: float = 0.0      # favorable extreme (longs)
    lowest_price: float = 0.0       # favorable extreme (shorts)
    trailing_armed: bool = False
    danger_mode: bool = False
    pattern_key: str = ""
    last_order_time: float = 0.0
    last_close_time: float = 0.0
    last_result: str = ""

    # Same-direction loss streak
    consecutive_losses: int = 0
    loss_direction: Optional[Direction] = None

    # Transient advisory overrides + sizing for the open position
    ai_stop_loss: Optional[float] = None
    ai_take_profit: Optional[float] = None
    ai_max_hold: Optional[float] = None     # minutes
    size_multiplier: float = 1.0
    notional_usd: float = 0.0

    # Latest observation
    last_price: float = 0.0
    last_imbalance: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.position is not PositionSide.NONE

    @property
    def direction(self) -> Optional[Direction]:
        if self.position is PositionSide.NONE:
            return None
        return Direction(self.position.value)

    def history(self) -> tuple[list[float], list[float]]:
        """(prices, times) from every timeframe buffer merged by time, oldest first."""
        merged: dict[float, float] = {}
        for buf in self.buffers.values():
            merged.update(zip(buf.times, buf.prices))
        times = sorted(merged)
        return [merged[t] for t in times], times

    def reset_position(self) -> None:
        self.position = PositionSide.NONE
        self.entry_price = 0.0
        self.entry_time = 0.0
        self.entry_volatility = 0.0
        self.entry_confidence = 0.0
        self.highest_price = 0.0
        self.lowest_price = 0.0
        self.trailing_armed = False
        self.danger_mode = False
        self.pattern_key = ""
        self.ai_stop_loss = None
        self.ai_take_profit = None
        self.ai_max_hold = None
        self.size_multiplier = 1.0
        self.notional_usd = 0.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "position": self.position.value,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time,
            "last_price": self.last_price,
            "imbalance": round(self.last_imbalance, 4),
            "trailing_armed": self.trailing_armed,
            "danger_mode": self.danger_mode,
            "pattern": self.pattern_key,
            "consecutive_losses": self.consecutive_losses,
            "loss_direction": self.loss_direction.value if self.loss_direction else None,
            "size_multiplier": self.size_multiplier,
            "max_hold_minutes": self.ai_max_hold,
            "buffers": {label: len(b.prices) for label, b in self.buffers.items()},
        }


class MarketStateStore:
    """One ``MarketState`` per symbol, created with empty timeframe buffers."""

    def __init__(self, symbols: tuple[str, ...], timeframes: tuple[TimeframeSpec, ...]):
        self._timeframes = timeframes
        self._states: dict[str, MarketState] = {}
        for sym in symbols:
            self.get(sym)

    def get(self, symbol: str) -> MarketState:
        state = self._states.get(symbol)
        if state is None:
            state = MarketState(
                symbol=symbol,
                buffers={tf.label: TimeframeBuffer(tf) for tf in self._timeframes},
            )
            self._states[symbol] = state
        return state

    def all(self) -> list[MarketState]:
        return list(self._states.values())

    def open_count(self) -> int:
        return sum(1 for s in self._states.values() if s.is_open)
