"""Consensus across timeframes: strict unanimity or no trade."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from heimdall.exchange.models import Direction
from heimdall.strategy.multi_tf import TimeframeAnalysis, TrendMode

log = logging.getLogger("heimdall.strategy.consensus")

MIN_READY_TIMEFRAMES = 2
MIN_SIGNALS = 2


@dataclass
class ConsensusSignal:
    """Combined multi-timeframe trading signal."""
    direction: Optional[Direction] = None
    confidence: float = 0.0
    reason: str = ""
    volatility: float = 0.0
    analyses: list[TimeframeAnalysis] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.direction is not None

    @property
    def ready(self) -> list[TimeframeAnalysis]:
        return [a for a in self.analyses if a.ready]

    @property
    def trend(self) -> TrendMode:
        """Trend of the slowest ready timeframe (the pattern's trend mode)."""
        ready = self.ready
        return ready[-1].trend if ready else TrendMode.RANGING

    @property
    def recent_change_pct(self) -> float:
        ready = self.ready
        return ready[0].change_pct if ready else 0.0

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value if self.direction else None,
            "confidence": round(self.confidence, 3),
            "reason": self.reason,
            "volatility": round(self.volatility, 4),
            "timeframes": [a.to_dict() for a in self.analyses],
        }


def build_consensus(
    analyses: list[TimeframeAnalysis], max_volatility_pct: float,
) -> ConsensusSignal:
    """Merge per-timeframe votes into one signal.

    Order of rejection: insufficient ready timeframes, volatility ceiling,
    too few directional votes, any disagreement.
    """
    signal = ConsensusSignal(analyses=analyses)
    ready = [a for a in analyses if a.ready]
    if len(ready) < MIN_READY_TIMEFRAMES:
        signal.reason = f"insufficient timeframes ({len(ready)}/{MIN_READY_TIMEFRAMES} ready)"
        return signal

    signal.volatility = sum(a.volatility for a in ready) / len(ready)
    if signal.volatility > max_volatility_pct:
        signal.reason = f"high volatility ({signal.volatility:.3f}% > {max_volatility_pct}%)"
        return signal

    voting = [a for a in ready if a.signal is not None]
    if len(voting) < MIN_SIGNALS:
        signal.reason = f"too few signals ({len(voting)}/{MIN_SIGNALS})"
        return signal

    directions = {a.signal for a in voting}
    if len(directions) > 1:
        signal.reason = "conflicting timeframes, no signal"
        return signal

    signal.direction = directions.pop()
    signal.confidence = sum(a.strength for a in voting) / len(voting)
    signal.reason = (
        f"{len(voting)}/{len(ready)} timeframes agree {signal.direction.value} "
        f"({', '.join(a.label for a in voting)})"
    )
    return signal
