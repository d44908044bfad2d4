"""Position lifecycle: NONE → OPEN → NONE, one position per market.

Entry gates, first failure wins:
  signal → cooldown → pattern enabled → direction override → same-direction
  loss throttle → advisory confirms → tuner admission → daily breaker

Any gate failing on a valid signal records a shadow trade instead. Exits
are evaluated every tick by the shared exit evaluator: stop-loss first,
then trailing take-profit. A close computes realized profit, classifies
WIN/LOSS, appends an immutable TradeRecord and resets the market to NONE.

An order that outlives the execution timeout is parked per market and
applied when its worker returns; the market takes no other order until then.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional, Union

from heimdall.config import HeimdallConfig
from heimdall.exchange.models import Direction, ExecutionResult, OrderRequest, PositionSide
from heimdall.execution.executor import OrderExecutor, execute_with_retry
from heimdall.execution.exit_manager import ExitAction, ExitDecision, ExitRules, evaluate_exit
from heimdall.intelligence.advisory import (
    AdvisoryBrain,
    AdvisoryDecision,
    AdvisoryRequest,
    StaticAdvisor,
    wait_decision,
)
from heimdall.intelligence.thinking import ThinkingLog
from heimdall.market_state import MarketState
from heimdall.memory.patterns import Pattern, adaptive_confidence, build_pattern
from heimdall.memory.records import LOSS, WIN, TradeRecord
from heimdall.memory.shadow import ShadowSimulator
from heimdall.memory.store import TradeMemory
from heimdall.risk.circuit_breaker import CircuitBreaker
from heimdall.strategy.consensus import ConsensusSignal
from heimdall.strategy.indicators import technical_context
from heimdall.strategy.multi_tf import PriceAction, TrendMode
from heimdall.tuning.tuner_config import TunerConfig

log = logging.getLogger("heimdall.execution.lifecycle")

BIAS_AGREE_BOOST = 0.10
BIAS_OPPOSE_PENALTY = 0.15
MAX_PROFIT_PCT = 100.0

Advisor = Union[AdvisoryBrain, StaticAdvisor]


@dataclass(frozen=True)
class EntryOutcome:
    opened: bool
    gate: str = ""
    reason: str = ""
    shadowed: bool = False


@dataclass
class PendingOrder:
    """An order whose worker outlived the execution timeout."""
    task: asyncio.Future
    on_result: Callable[[ExecutionResult], bool]
    request: OrderRequest


def _task_result(task: asyncio.Future) -> ExecutionResult:
    if task.cancelled():
        return ExecutionResult(ok=False, error="execution cancelled")
    err = task.exception()
    if err is not None:
        return ExecutionResult(ok=False, error=str(err)[:200])
    return task.result()


def _valid_price(price: float) -> bool:
    return isinstance(price, (int, float)) and math.isfinite(price) and price > 0


def pattern_for(state: MarketState, signal: ConsensusSignal, imbalance_threshold: float) -> Pattern:
    """Pattern of this decision cycle: imbalance class, slow trend, fast price action."""
    ready = signal.ready
    action = ready[0].price_action if ready else PriceAction.FLAT
    return build_pattern(state.last_imbalance, imbalance_threshold, signal.trend, action)


class PositionManager:
    """Owns every position-related mutation of ``MarketState``."""

    def __init__(
        self,
        cfg: HeimdallConfig,
        tuner: TunerConfig,
        memory: TradeMemory,
        shadows: ShadowSimulator,
        advisor: Advisor,
        executor: OrderExecutor,
        breaker: CircuitBreaker,
        thinking: Optional[ThinkingLog] = None,
    ):
        self._cfg = cfg
        self._tuner = tuner
        self._memory = memory
        self._shadows = shadows
        self._advisor = advisor
        self._executor = executor
        self._breaker = breaker
        self._thinking = thinking or ThinkingLog()
        self._closed: list[TradeRecord] = []
        self._pending_orders: dict[str, PendingOrder] = {}

    # ── Tick ──

    async def on_tick(self, state: MarketState, signal: ConsensusSignal, now: float) -> None:
        """Advance shadows, manage the open position or try to enter."""
        price = state.last_price
        if not _valid_price(price):
            return

        resolved = self._shadows.on_tick(state.symbol, price, now)
        if signal.volatility and self._tuner.note_volatility(state.symbol, signal.volatility, now):
            self._tuner.save()
            self._thinking.think(
                f"[{state.symbol}] Volatility spike {signal.volatility:.3f}%, entries frozen",
                "risk", now,
            )

        self.check_pending_orders(state)
        if state.is_open:
            await self.manage_position(state, signal, now)
        elif signal.valid:
            await self.try_enter(state, signal, now)

        if resolved:
            self._memory.save()

    def drain_closed(self) -> list[TradeRecord]:
        """Trades closed since the last call (consumed by the self-tuner between ticks)."""
        closed, self._closed = self._closed, []
        return closed

    # ── Entry ──

    def biased_confidence(self, signal: ConsensusSignal, pattern: Pattern) -> float:
        bias = adaptive_confidence(self._memory.stats_for(pattern.key))
        confidence = signal.confidence
        if bias.direction is None or signal.direction is None:
            return confidence
        if bias.direction is signal.direction:
            confidence += BIAS_AGREE_BOOST
        else:
            confidence -= BIAS_OPPOSE_PENALTY
        return min(1.0, max(0.0, confidence))

    def check_gates(
        self, state: MarketState, direction: Direction, pattern: Pattern, now: float,
    ) -> tuple[bool, str, str]:
        """Local gates before the advisory call: (passed, gate, reason)."""
        cooldown = self._tuner.cooldown_seconds(state.symbol, state.last_result)
        since = now - state.last_order_time
        if state.last_order_time and since < cooldown:
            return False, "cooldown", f"cooldown {since:.0f}s < {cooldown:.0f}s"

        if self._tuner.is_pattern_disabled(pattern.key, now):
            return False, "pattern_disabled", f"pattern {pattern.key} disabled"

        override = self._tuner.direction_override(pattern.key)
        if override is not None and override is not direction:
            return False, "direction_override", f"pattern {pattern.key} is {override.value}-only"

        if (
            state.loss_direction is direction
            and state.consecutive_losses >= self._cfg.loss_throttle_count
        ):
            return False, "loss_throttle", (
                f"{state.consecutive_losses} consecutive {direction.value} losses"
            )
        return True, "", ""

    async def try_enter(self, state: MarketState, signal: ConsensusSignal, now: float) -> EntryOutcome:
        if not signal.valid:
            return EntryOutcome(False, "signal", signal.reason)
        if state.is_open:
            return EntryOutcome(False, "position_open", "position already open")
        if self.has_pending_order(state.symbol):
            return EntryOutcome(False, "order_pending", "previous order still in flight")

        direction = signal.direction
        pattern = pattern_for(state, signal, self._cfg.imbalance_threshold)
        confidence = self.biased_confidence(signal, pattern)

        passed, gate, reason = self.check_gates(state, direction, pattern, now)
        if not passed:
            return self._decline(state, direction, pattern, gate, reason, now)

        decision = await self._ask_advisor(state, signal, direction)
        if not decision.confirms(direction):
            return self._decline(
                state, direction, pattern, "advisory",
                f"advisor said {decision.action}: {decision.reason}", now,
            )

        admission = self._tuner.admit(state.symbol, confidence, now)
        if not admission.allowed:
            return self._decline(state, direction, pattern, "tuner", admission.reason, now)

        breaker = self._breaker.check(now)
        if not breaker.trading_allowed:
            return self._decline(state, direction, pattern, "breaker", breaker.reason, now)

        opened = await self.open_position(
            state, direction, state.last_price, now,
            pattern_key=pattern.key,
            confidence=admission.confidence,
            volatility=signal.volatility,
            stop_loss_pct=decision.stop_loss_pct,
            take_profit_pct=decision.take_profit_pct,
            max_hold_minutes=decision.max_hold_minutes,
            size_multiplier=admission.size_multiplier,
        )
        if not opened:
            return EntryOutcome(False, "execution", "order failed")
        return EntryOutcome(True, reason=signal.reason)

    def _decline(
        self, state: MarketState, direction: Direction, pattern: Pattern,
        gate: str, reason: str, now: float,
    ) -> EntryOutcome:
        self._thinking.think(
            f"[{state.symbol}] {direction.value} blocked at {gate}: {reason}", "gate", now,
        )
        m = self._tuner.market(state.symbol)
        shadow = self._shadows.open(
            state.symbol, pattern.key, direction, state.last_price, gate,
            stop_pct=float(m["stopLoss"]),
            target_pct=float(m["takeProfit"]),
            trail_pct=float(m["trailingNormal"]),
            now=now,
        )
        return EntryOutcome(False, gate, reason, shadowed=shadow is not None)

    async def _ask_advisor(
        self, state: MarketState, signal: ConsensusSignal, direction: Direction,
    ) -> AdvisoryDecision:
        prices, times = state.history()
        request = AdvisoryRequest(
            symbol=state.symbol,
            price=state.last_price,
            trend=signal.trend.value,
            imbalance=state.last_imbalance,
            volatility=signal.volatility,
            recent_change_pct=signal.recent_change_pct,
            signal_direction=direction,
            technicals=technical_context(prices, times, state.last_price),
        )
        # Primary + fallback model each get the per-call timeout
        timeout = self._cfg.advisory_timeout_seconds * 2 + 5
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._advisor.ask, request, self._memory.recent_trades()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("[GATE] %s advisory timed out after %.0fs", state.symbol, timeout)
            return wait_decision("advisory timeout")

    async def _execute(
        self, state: MarketState, request: OrderRequest,
        on_result: Callable[[ExecutionResult], bool],
    ) -> bool:
        """Send ``request`` off-loop and hand the result to ``on_result``.

        The worker thread cannot be cancelled, so on timeout the order is
        parked in ``_pending_orders`` and applied by ``check_pending_orders``
        once it completes. The market takes no new orders until then.
        """
        task = asyncio.ensure_future(asyncio.to_thread(
            execute_with_retry, self._executor, request,
            self._cfg.execution_attempts, self._cfg.execution_retry_delay,
        ))
        done, _ = await asyncio.wait({task}, timeout=self._cfg.execution_timeout_seconds)
        if task in done:
            return on_result(_task_result(task))
        self._pending_orders[state.symbol] = PendingOrder(task, on_result, request)
        log.warning("[POS] %s %s order still in flight after %.0fs, parked",
                    state.symbol, request.direction.value, self._cfg.execution_timeout_seconds)
        return False

    def has_pending_order(self, symbol: str) -> bool:
        return symbol in self._pending_orders

    def check_pending_orders(self, state: MarketState) -> bool:
        """Apply a parked order whose worker finished. Returns True when one settled."""
        pending = self._pending_orders.get(state.symbol)
        if pending is None or not pending.task.done():
            return False
        del self._pending_orders[state.symbol]
        result = _task_result(pending.task)
        log.info("[POS] %s late %s result: %s", state.symbol, pending.request.direction.value,
                 "filled" if result.ok else result.error)
        pending.on_result(result)
        return True

    async def open_position(
        self,
        state: MarketState,
        direction: Direction,
        price: float,
        now: float,
        pattern_key: str = "",
        confidence: float = 0.0,
        volatility: float = 0.0,
        stop_loss_pct: Optional[float] = None,
        take_profit_pct: Optional[float] = None,
        max_hold_minutes: Optional[float] = None,
        size_multiplier: float = 1.0,
    ) -> bool:
        """Open ``direction`` at ``price``. Rejected without mutation if already open."""
        if state.is_open:
            log.warning("[POS] %s open rejected: %s already open", state.symbol, state.position.value)
            return False
        if self.has_pending_order(state.symbol):
            log.warning("[POS] %s open rejected: order in flight", state.symbol)
            return False
        if not _valid_price(price):
            log.error("[POS] %s open rejected: invalid price %r", state.symbol, price)
            return False

        notional = self._cfg.base_notional_usd * size_multiplier
        apply = partial(
            self._apply_open, state, direction, price, now, notional,
            pattern_key, confidence, volatility, stop_loss_pct, take_profit_pct, max_hold_minutes,
            size_multiplier,
        )
        return await self._execute(state, OrderRequest(state.symbol, direction, notional, price), apply)

    def _apply_open(
        self, state: MarketState, direction: Direction, price: float, now: float, notional: float,
        pattern_key: str, confidence: float, volatility: float,
        stop_loss_pct: Optional[float], take_profit_pct: Optional[float],
        max_hold_minutes: Optional[float], size_multiplier: float,
        result: ExecutionResult,
    ) -> bool:
        if not result.ok:
            self._thinking.think(
                f"[{state.symbol}] {direction.value} order failed: {result.error}", "error", now,
            )
            return False

        state.position = PositionSide(direction.value)
        state.entry_price = price
        state.entry_time = now
        state.entry_volatility = volatility
        state.entry_confidence = confidence
        state.highest_price = price
        state.lowest_price = price
        state.trailing_armed = False
        state.danger_mode = False
        state.pattern_key = pattern_key
        state.ai_stop_loss = stop_loss_pct
        state.ai_take_profit = take_profit_pct
        state.ai_max_hold = max_hold_minutes
        state.size_multiplier = size_multiplier
        state.notional_usd = notional
        state.last_order_time = now

        self._thinking.think(
            f"[{state.symbol}] OPEN {direction.value} @ {price:.4f} | ${notional:.2f} "
            f"| conf {confidence:.2f} | SL {self.stop_for(state, volatility):.2f}% "
            f"TP {self.target_for(state):.2f}% | tx {result.tx_id}",
            "trade", now,
        )
        return True

    # ── Exit ──

    def stop_for(self, state: MarketState, volatility: float) -> float:
        if state.ai_stop_loss is not None:
            return state.ai_stop_loss
        return self._tuner.effective_stop(state.symbol, volatility)

    def target_for(self, state: MarketState) -> float:
        if state.ai_take_profit is not None:
            return state.ai_take_profit
        return float(self._tuner.market(state.symbol)["takeProfit"])

    def trail_for(self, state: MarketState) -> float:
        m = self._tuner.market(state.symbol)
        return float(m["trailingDanger"] if state.danger_mode else m["trailingNormal"])

    def update_danger(self, state: MarketState, signal: ConsensusSignal) -> None:
        """Danger = book imbalance or fast trend now leaning against the position."""
        direction = state.direction
        if direction is None:
            return
        threshold = self._cfg.imbalance_threshold
        against_book = direction.sign * state.last_imbalance <= -threshold
        ready = signal.ready
        fast_trend = ready[0].trend if ready else TrendMode.RANGING
        against_trend = (
            (direction is Direction.LONG and fast_trend is TrendMode.DOWNTREND)
            or (direction is Direction.SHORT and fast_trend is TrendMode.UPTREND)
        )
        danger = against_book or against_trend
        if danger != state.danger_mode:
            state.danger_mode = danger
            log.info("[POS] %s danger mode %s", state.symbol, "ON" if danger else "off")

    def evaluate(self, state: MarketState, price: float, now: float, volatility: float) -> ExitDecision:
        state.highest_price = max(state.highest_price, price)
        state.lowest_price = min(state.lowest_price, price)
        rules = ExitRules(
            stop_pct=self.stop_for(state, volatility),
            target_pct=self.target_for(state),
            trail_pct=self.trail_for(state),
            max_hold_minutes=state.ai_max_hold,
        )
        decision = evaluate_exit(
            state.direction, state.entry_price, state.highest_price, state.lowest_price,
            price, (now - state.entry_time) / 60, rules,
        )
        if decision.armed and not state.trailing_armed:
            state.trailing_armed = True
            self._thinking.think(
                f"[{state.symbol}] Trailing armed at +{decision.favorable_pct:.2f}%", "trade", now,
            )
        return decision

    async def manage_position(self, state: MarketState, signal: ConsensusSignal, now: float) -> bool:
        """Returns True when the position was closed this tick."""
        price = state.last_price
        if not state.is_open or not _valid_price(price):
            return False
        if self.has_pending_order(state.symbol):
            return False
        self.update_danger(state, signal)
        volatility = signal.volatility or state.entry_volatility
        decision = self.evaluate(state, price, now, volatility)
        if decision.action is ExitAction.HOLD:
            return False
        log.info("[POS] %s exit %s: %s", state.symbol, decision.action.value, decision.reason)
        return await self.close_position(state, price, decision.action.value, now)

    async def close_position(self, state: MarketState, price: float, reason: str, now: float) -> bool:
        """Close and record. No position → no-op success; failed order → no change."""
        if not state.is_open:
            return True
        if not _valid_price(price):
            log.error("[POS] %s close skipped: invalid exit price %r", state.symbol, price)
            return False

        if self.has_pending_order(state.symbol):
            log.warning("[POS] %s close deferred: order in flight", state.symbol)
            return False

        request = OrderRequest(
            state.symbol, state.direction.opposite, state.notional_usd, price, reduce_only=True,
        )
        return await self._execute(
            state, request, partial(self._apply_close, state, price, reason, now),
        )

    def _apply_close(
        self, state: MarketState, price: float, reason: str, now: float, result: ExecutionResult,
    ) -> bool:
        if not state.is_open:
            return True
        direction = state.direction
        if not result.ok:
            self._thinking.think(
                f"[{state.symbol}] close failed ({reason}): {result.error}", "error", now,
            )
            return False

        entry = state.entry_price
        if not _valid_price(entry):
            log.error("[POS] %s invalid entry price %r, trade not recorded", state.symbol, entry)
            state.last_order_time = now
            state.last_close_time = now
            state.reset_position()
            return True

        profit = direction.sign * (price - entry) / entry * 100
        if abs(profit) > MAX_PROFIT_PCT:
            log.warning("[POS] %s implausible P&L %.2f%%, clamping", state.symbol, profit)
            profit = math.copysign(MAX_PROFIT_PCT, profit)
        profit = round(profit, 4)
        outcome = WIN if profit > 0 else LOSS

        if outcome == WIN:
            state.consecutive_losses = 0
            state.loss_direction = None
        elif state.loss_direction is direction:
            state.consecutive_losses += 1
        else:
            state.consecutive_losses = 1
            state.loss_direction = direction

        record = TradeRecord(
            timestamp=now,
            symbol=state.symbol,
            pattern=state.pattern_key,
            direction=direction.value,
            entry_price=entry,
            exit_price=price,
            result=outcome,
            profit_percent=profit,
            exit_reason=reason,
            entry_time=state.entry_time,
            volatility=round(state.entry_volatility, 4),
            confidence=round(state.entry_confidence, 4),
        )
        self._memory.add_trade(record, now)
        self._memory.save()

        state.last_result = outcome
        state.last_order_time = now
        state.last_close_time = now
        state.reset_position()

        self._breaker.record_trade(profit, now)
        self._closed.append(record)
        self._thinking.think(
            f"[{record.symbol}] CLOSE {record.direction} {outcome} {profit:+.2f}% ({reason})",
            "trade", now,
        )
        return True
