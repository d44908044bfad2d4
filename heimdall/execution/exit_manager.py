"""Exit evaluation shared by live positions and shadow trades.

One pure function decides, from (entry, direction, price extremes since
entry, current price, minutes held, rules), whether a position should:

  1. stop out     : adverse excursion reached ``stop_pct``
  2. trail out    : favorable excursion reached ``target_pct`` (trailing
                     armed) and price pulled back ``trail_pct`` from the
                     extreme, or ``target_hold_minutes`` elapsed once armed
  3. time out     : ``max_hold_minutes`` elapsed with neither of the above

All distances are percent of entry price. Live trading uses mark-to-market
profit; shadow trades use "locked" profit (-stop on a stop-out, favorable
excursion minus trail on a trailing exit).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from heimdall.exchange.models import Direction

log = logging.getLogger("heimdall.execution.exit")

EPSILON = 1e-9


class ExitAction(Enum):
    HOLD = "hold"
    STOP_LOSS = "stop_loss"
    TRAILING_TP = "trailing_tp"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ExitRules:
    stop_pct: float
    target_pct: float
    trail_pct: float
    max_hold_minutes: Optional[float] = None
    target_hold_minutes: Optional[float] = None
    locked_profit: bool = False


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    profit_pct: float = 0.0
    armed: bool = False
    favorable_pct: float = 0.0
    adverse_pct: float = 0.0
    reason: str = ""

    @property
    def should_close(self) -> bool:
        return self.action is not ExitAction.HOLD


def excursions(
    direction: Direction, entry: float, high: float, low: float, price: float,
) -> tuple[float, float, float]:
    """(current %, favorable excursion %, adverse excursion %) vs entry."""
    current = direction.sign * (price - entry) / entry * 100
    if direction is Direction.LONG:
        favorable = (high - entry) / entry * 100
        adverse = (entry - low) / entry * 100
    else:
        favorable = (entry - low) / entry * 100
        adverse = (high - entry) / entry * 100
    return current, max(favorable, 0.0), max(adverse, 0.0)


def evaluate_exit(
    direction: Direction,
    entry: float,
    high: float,
    low: float,
    price: float,
    elapsed_minutes: float,
    rules: ExitRules,
) -> ExitDecision:
    if entry <= 0:
        return ExitDecision(ExitAction.HOLD, reason="no entry price")

    current, favorable, adverse = excursions(direction, entry, high, low, price)
    armed = favorable + EPSILON >= rules.target_pct

    # ── 1. Stop loss ──
    if adverse + EPSILON >= rules.stop_pct:
        profit = -rules.stop_pct if rules.locked_profit else current
        return ExitDecision(
            ExitAction.STOP_LOSS, profit, armed, favorable, adverse,
            reason=f"adverse {adverse:.3f}% >= stop {rules.stop_pct:.2f}%",
        )

    # ── 2. Trailing take-profit ──
    if armed:
        pullback = favorable - current
        pulled_back = pullback + EPSILON >= rules.trail_pct
        held_long_enough = (
            rules.target_hold_minutes is not None
            and elapsed_minutes >= rules.target_hold_minutes
        )
        if pulled_back or held_long_enough:
            profit = favorable - rules.trail_pct if rules.locked_profit else current
            why = (
                f"pullback {pullback:.3f}% >= trail {rules.trail_pct:.2f}%"
                if pulled_back else f"target held {elapsed_minutes:.0f}min"
            )
            return ExitDecision(
                ExitAction.TRAILING_TP, profit, armed, favorable, adverse,
                reason=f"peak +{favorable:.3f}%, {why}",
            )

    # ── 3. Time exit ──
    if rules.max_hold_minutes is not None and elapsed_minutes >= rules.max_hold_minutes:
        return ExitDecision(
            ExitAction.TIMEOUT, current, armed, favorable, adverse,
            reason=f"timeout after {elapsed_minutes:.0f}min ({current:+.3f}%)",
        )

    return ExitDecision(ExitAction.HOLD, current, armed, favorable, adverse)
