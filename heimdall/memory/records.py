"""Trade and shadow-trade records: the rows Pattern Memory folds over."""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

WIN = "WIN"
LOSS = "LOSS"

MAX_SHADOW_HISTORY = 200


@dataclass(frozen=True)
class TradeRecord:
    """A closed trade. Immutable once appended."""
    timestamp: float
    symbol: str
    pattern: str
    direction: str
    entry_price: float
    exit_price: float
    result: str
    profit_percent: float
    exit_reason: str
    simulated: bool = False
    entry_time: float = 0.0
    volatility: float = 0.0
    confidence: float = 0.0

    @property
    def is_win(self) -> bool:
        return self.result == WIN

    @property
    def outcome_time(self) -> float:
        return self.timestamp

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TradeRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ShadowTrade:
    """An unexecuted signal tracked under widened risk until it resolves.

    Resolution fields are written exactly once by ``resolve``.
    """
    symbol: str
    pattern: str
    direction: str
    anchor_price: float
    skip_reason: str
    opened_at: float
    stop_pct: float
    target_pct: float
    trail_pct: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    high: float = 0.0
    low: float = 0.0
    last_price: float = 0.0
    price_history: list = field(default_factory=list)
    result: Optional[str] = None
    profit_percent: Optional[float] = None
    exit_reason: Optional[str] = None
    resolved_at: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.high:
            self.high = self.anchor_price
        if not self.low:
            self.low = self.anchor_price
        if not self.last_price:
            self.last_price = self.anchor_price

    @property
    def resolved(self) -> bool:
        return self.result is not None

    @property
    def is_win(self) -> bool:
        return self.result == WIN

    @property
    def outcome_time(self) -> float:
        return self.resolved_at or self.opened_at

    def observe(self, price: float, now: float) -> None:
        if self.resolved:
            return
        self.last_price = price
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.price_history.append([now, price])
        if len(self.price_history) > MAX_SHADOW_HISTORY:
            del self.price_history[: len(self.price_history) - MAX_SHADOW_HISTORY]

    def resolve(self, result: str, profit_percent: float, exit_reason: str, now: float) -> None:
        if self.resolved:
            raise ValueError(f"shadow {self.id} already resolved")
        self.result = result
        self.profit_percent = profit_percent
        self.exit_reason = exit_reason
        self.resolved_at = now

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ShadowTrade":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
