"""Data models shared across the feed, strategy and execution layers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class PositionSide(Enum):
    NONE = "NONE"
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class BookSample:
    """One feed observation for a symbol, derived from the top of the book."""

    symbol: str
    price: float            # mid price
    imbalance: float        # [-1, 1], positive = bid pressure
    timestamp: float
    spread_pct: float = 0.0


@dataclass(frozen=True)
class OrderRequest:
    """Instruction handed to the execution collaborator."""

    symbol: str
    direction: Direction
    notional_usd: float
    price: float = 0.0
    reduce_only: bool = False

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "notional_usd": round(self.notional_usd, 2),
            "price": self.price,
            "reduce_only": self.reduce_only,
        }


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    tx_id: Optional[str] = None
    error: str = ""
    attempts: int = 0
