"""Shadow trades: counterfactual outcomes of signals we did not take.

A skipped signal is tracked under risk deliberately wider than live
trading (stop x3, target x2, trailing x2). If shadows keep winning where
real trades stop out, the live stop is too tight rather than the
direction being wrong; the self-tuner reads exactly that.
"""
from __future__ import annotations

import logging
from typing import Optional

from heimdall.exchange.models import Direction
from heimdall.execution.exit_manager import ExitAction, ExitRules, evaluate_exit
from heimdall.memory.records import LOSS, WIN, ShadowTrade
from heimdall.memory.store import TradeMemory

log = logging.getLogger("heimdall.memory.shadow")

STOP_MULTIPLIER = 3.0
TARGET_MULTIPLIER = 2.0
TRAIL_MULTIPLIER = 2.0
TARGET_HOLD_MINUTES = 20.0
TIMEOUT_MINUTES = 45.0


def shadow_rules(shadow: ShadowTrade) -> ExitRules:
    return ExitRules(
        stop_pct=shadow.stop_pct,
        target_pct=shadow.target_pct,
        trail_pct=shadow.trail_pct,
        max_hold_minutes=TIMEOUT_MINUTES,
        target_hold_minutes=TARGET_HOLD_MINUTES,
        locked_profit=True,
    )


class ShadowSimulator:
    """Opens, advances and resolves shadow trades held in ``TradeMemory``."""

    def __init__(self, memory: TradeMemory):
        self._memory = memory

    def open(
        self,
        symbol: str,
        pattern_key: str,
        direction: Direction,
        price: float,
        skip_reason: str,
        stop_pct: float,
        target_pct: float,
        trail_pct: float,
        now: float,
    ) -> Optional[ShadowTrade]:
        """Record a skipped signal. One pending shadow per symbol+direction."""
        if price <= 0:
            return None
        for pending in self._memory.pending_shadows(symbol):
            if pending.direction == direction.value:
                return None
        shadow = ShadowTrade(
            symbol=symbol,
            pattern=pattern_key,
            direction=direction.value,
            anchor_price=price,
            skip_reason=skip_reason,
            opened_at=now,
            stop_pct=round(stop_pct * STOP_MULTIPLIER, 4),
            target_pct=round(target_pct * TARGET_MULTIPLIER, 4),
            trail_pct=round(trail_pct * TRAIL_MULTIPLIER, 4),
        )
        self._memory.add_shadow(shadow)
        log.info("[SHADOW] Opened %s %s @ %.4f (%s) | stop=%.2f%% target=%.2f%%",
                 direction.value, symbol, price, skip_reason,
                 shadow.stop_pct, shadow.target_pct)
        return shadow

    def on_tick(self, symbol: str, price: float, now: float) -> list[ShadowTrade]:
        """Advance every pending shadow for ``symbol``; return those resolved now."""
        resolved: list[ShadowTrade] = []
        for shadow in self._memory.pending_shadows(symbol):
            shadow.observe(price, now)
            if self.evaluate(shadow, now):
                resolved.append(shadow)
        if resolved:
            self._memory.shadows_resolved(len(resolved), now)
        return resolved

    def evaluate(self, shadow: ShadowTrade, now: float) -> bool:
        """Resolve ``shadow`` if an exit rule fires. Returns True when resolved."""
        if shadow.resolved:
            return False
        elapsed = (now - shadow.opened_at) / 60
        decision = evaluate_exit(
            Direction(shadow.direction),
            shadow.anchor_price,
            shadow.high,
            shadow.low,
            shadow.last_price,
            elapsed,
            shadow_rules(shadow),
        )
        if decision.action is ExitAction.HOLD:
            return False

        if decision.action is ExitAction.STOP_LOSS:
            result = LOSS
        elif decision.action is ExitAction.TRAILING_TP:
            result = WIN
        else:
            result = WIN if decision.profit_pct > 0 else LOSS

        shadow.resolve(result, round(decision.profit_pct, 4), decision.action.value, now)
        log.info("[SHADOW] Resolved %s %s: %s %+.2f%% (%s)",
                 shadow.direction, shadow.symbol, result,
                 shadow.profit_percent, decision.reason)
        return True
