"""Pattern Memory: time-decayed outcome statistics per market condition.

A pattern key is ``imbalanceClass|trendMode|priceAction``. Stats are a
pure fold over real trades plus *resolved* shadow trades; nothing is
patched incrementally, so recomputing from the same rows always gives
the same answer.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional

from heimdall.exchange.models import Direction
from heimdall.strategy.multi_tf import PriceAction, TrendMode

log = logging.getLogger("heimdall.memory.patterns")

# (max age in hours, weight): lower bound of each bucket is inclusive
AGE_WEIGHTS = [
    (1, 1.0),
    (6, 0.9),
    (24, 0.7),
    (72, 0.5),
    (168, 0.3),
]
OLDEST_WEIGHT = 0.1

MIN_WEIGHTED_SAMPLES = 3.0
MIN_WIN_RATE = 0.55
STRONG_IMBALANCE_FRACTION = 1.0
MILD_IMBALANCE_FRACTION = 0.4


@dataclass(frozen=True)
class Pattern:
    """Market-condition signature for one decision cycle."""
    imbalance_class: str
    trend: str
    price_action: str

    @property
    def key(self) -> str:
        return f"{self.imbalance_class}|{self.trend}|{self.price_action}"

    @classmethod
    def from_key(cls, key: str) -> "Pattern":
        parts = key.split("|")
        if len(parts) != 3:
            raise ValueError(f"bad pattern key: {key!r}")
        return cls(*parts)


def classify_imbalance(imbalance: float, threshold: float) -> str:
    if imbalance >= threshold * STRONG_IMBALANCE_FRACTION:
        return "STRONG_BUY"
    if imbalance >= threshold * MILD_IMBALANCE_FRACTION:
        return "BUY"
    if imbalance <= -threshold * STRONG_IMBALANCE_FRACTION:
        return "STRONG_SELL"
    if imbalance <= -threshold * MILD_IMBALANCE_FRACTION:
        return "SELL"
    return "NEUTRAL"


def build_pattern(
    imbalance: float, threshold: float, trend: TrendMode, price_action: PriceAction,
) -> Pattern:
    return Pattern(classify_imbalance(imbalance, threshold), trend.value, price_action.value)


def age_weight(age_seconds: float) -> float:
    hours = age_seconds / 3600
    for limit, weight in AGE_WEIGHTS:
        if hours < limit:
            return weight
    return OLDEST_WEIGHT


@dataclass
class SideStats:
    wins: int = 0
    losses: int = 0
    weighted_wins: float = 0.0
    weighted_losses: float = 0.0
    profit_sum: float = 0.0     # sum of winning profit %
    loss_sum: float = 0.0       # sum of |losing profit %|

    @property
    def samples(self) -> int:
        return self.wins + self.losses

    @property
    def weighted_samples(self) -> float:
        return self.weighted_wins + self.weighted_losses

    @property
    def win_rate(self) -> float:
        total = self.weighted_samples
        return self.weighted_wins / total if total > 0 else 0.0

    @property
    def raw_win_rate(self) -> float:
        return self.wins / self.samples if self.samples else 0.0

    @property
    def avg_win(self) -> float:
        return self.profit_sum / self.wins if self.wins else 0.0

    @property
    def avg_loss(self) -> float:
        return self.loss_sum / self.losses if self.losses else 0.0

    @property
    def expected_value(self) -> float:
        wr = self.win_rate
        return wr * self.avg_win - (1 - wr) * self.avg_loss


@dataclass
class PatternStats:
    long: SideStats
    short: SideStats

    @property
    def samples(self) -> int:
        return self.long.samples + self.short.samples

    @property
    def win_rate(self) -> float:
        total = self.samples
        return (self.long.wins + self.short.wins) / total if total else 0.0

    def side(self, direction: Direction) -> SideStats:
        return self.long if direction is Direction.LONG else self.short

    def to_dict(self) -> dict:
        out = {}
        for name, side in (("long", self.long), ("short", self.short)):
            out[name] = {
                **{k: round(v, 4) if isinstance(v, float) else v for k, v in asdict(side).items()},
                "win_rate": round(side.win_rate, 4),
                "avg_win": round(side.avg_win, 4),
                "avg_loss": round(side.avg_loss, 4),
            }
        return out


def compute_pattern_stats(records: Iterable, now: float) -> dict[str, PatternStats]:
    """Fold trades and shadow trades into per-pattern stats.

    Unresolved shadows are skipped. Each row needs ``pattern``,
    ``direction``, ``result``, ``profit_percent`` and ``outcome_time``.
    """
    stats: dict[str, PatternStats] = {}
    for rec in records:
        if rec.result is None or not rec.pattern:
            continue
        ps = stats.get(rec.pattern)
        if ps is None:
            ps = stats[rec.pattern] = PatternStats(long=SideStats(), short=SideStats())
        side = ps.long if rec.direction == Direction.LONG.value else ps.short
        weight = age_weight(now - rec.outcome_time)
        profit = float(rec.profit_percent or 0.0)
        if rec.is_win:
            side.wins += 1
            side.weighted_wins += weight
            side.profit_sum += profit
        else:
            side.losses += 1
            side.weighted_losses += weight
            side.loss_sum += abs(profit)
    return stats


@dataclass(frozen=True)
class AdaptiveBias:
    direction: Optional[Direction]
    win_rate: float = 0.0
    expected_value: float = 0.0
    samples: float = 0.0


def adaptive_confidence(stats: Optional[PatternStats]) -> AdaptiveBias:
    """Directional bias from a pattern's history, or no bias.

    A side qualifies with >=3 weighted samples, win rate > 0.55 and
    positive EV; when both qualify the higher EV wins.
    """
    if stats is None:
        return AdaptiveBias(None)
    best: Optional[AdaptiveBias] = None
    for direction in (Direction.LONG, Direction.SHORT):
        side = stats.side(direction)
        if side.weighted_samples < MIN_WEIGHTED_SAMPLES:
            continue
        if side.win_rate <= MIN_WIN_RATE or side.expected_value <= 0:
            continue
        candidate = AdaptiveBias(direction, side.win_rate, side.expected_value, side.weighted_samples)
        if best is None or candidate.expected_value > best.expected_value:
            best = candidate
    return best or AdaptiveBias(None)
