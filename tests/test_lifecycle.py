from __future__ import annotations

import asyncio
import time
from dataclasses import replace

import pytest

from heimdall.config import TimeframeSpec
from heimdall.exchange.models import Direction, PositionSide
from heimdall.intelligence.advisory import AdvisoryDecision
from heimdall.market_state import MarketState, TimeframeBuffer
from heimdall.memory.records import LOSS, WIN

from helpers import NOW, FailingExecutor, FakeAdvisor, make_signal


def _state(price=100.0, imbalance=0.1) -> MarketState:
    state = MarketState("SOL")
    state.last_price = price
    state.last_imbalance = imbalance
    return state


def test_end_to_end_long_then_stop_loss(build_manager, confirm_long):
    manager, parts = build_manager(advisor=confirm_long)
    parts["tuner"].sizing["multiplier"] = 0.5
    state = _state()

    outcome = asyncio.run(manager.try_enter(state, make_signal(confidence=0.7), NOW))

    assert outcome.opened
    assert state.position is PositionSide.LONG
    assert state.entry_price == 100.0
    assert state.ai_stop_loss == 1.2
    assert state.ai_take_profit == 2.0
    assert state.size_multiplier == 0.5
    assert state.notional_usd == pytest.approx(50.0)
    assert len(confirm_long.calls) == 1

    state.last_price = 98.8
    closed = asyncio.run(manager.manage_position(state, make_signal(), NOW + 60))

    assert closed
    assert state.position is PositionSide.NONE
    trade = parts["memory"].trades[-1]
    assert trade.result == LOSS
    assert trade.profit_percent == pytest.approx(-1.2)
    assert trade.exit_reason == "stop_loss"
    assert trade.direction == "LONG"
    drained = manager.drain_closed()
    assert [t.exit_reason for t in drained] == ["stop_loss"]
    assert manager.drain_closed() == []


def test_open_while_open_is_rejected_without_mutation(build_manager):
    manager, _ = build_manager()
    state = _state()
    assert asyncio.run(manager.open_position(state, Direction.LONG, 100.0, NOW, pattern_key="a|b|c"))
    snapshot = state.to_dict()

    again = asyncio.run(manager.open_position(state, Direction.SHORT, 105.0, NOW + 1))

    assert not again
    assert state.to_dict() == snapshot
    assert state.position is PositionSide.LONG
    assert state.entry_price == 100.0


def test_close_without_position_is_noop_success(build_manager):
    manager, parts = build_manager()
    state = _state()

    assert asyncio.run(manager.close_position(state, 100.0, "manual", NOW))
    assert parts["memory"].trades == []
    assert parts["executor"].orders == []


def test_execution_failure_leaves_state_untouched(build_manager, confirm_long):
    executor = FailingExecutor()
    manager, parts = build_manager(advisor=confirm_long, executor=executor)
    state = _state()

    outcome = asyncio.run(manager.try_enter(state, make_signal(), NOW))

    assert not outcome.opened
    assert outcome.gate == "execution"
    assert state.position is PositionSide.NONE
    assert state.last_order_time == 0.0
    assert executor.calls == 1


def test_failed_close_keeps_position_open(build_manager):
    manager, parts = build_manager()
    state = _state()
    asyncio.run(manager.open_position(state, Direction.LONG, 100.0, NOW))
    manager._executor = FailingExecutor()

    assert not asyncio.run(manager.close_position(state, 95.0, "stop_loss", NOW + 10))
    assert state.position is PositionSide.LONG
    assert parts["memory"].trades == []


def test_advisory_wait_declines_and_opens_shadow(build_manager):
    advisor = FakeAdvisor(AdvisoryDecision("WAIT", 1.5, 2.5, 0.3, "choppy"))
    manager, parts = build_manager(advisor=advisor)
    state = _state()

    outcome = asyncio.run(manager.try_enter(state, make_signal(), NOW))

    assert not outcome.opened
    assert outcome.gate == "advisory"
    assert outcome.shadowed
    pending = parts["memory"].pending_shadows("SOL")
    assert len(pending) == 1
    assert pending[0].direction == "LONG"
    assert pending[0].skip_reason == "advisory"
    assert pending[0].stop_pct == pytest.approx(4.5)


def test_advisory_direction_mismatch_is_declined(build_manager):
    advisor = FakeAdvisor(AdvisoryDecision("SHORT", 1.0, 2.0, 0.9, "bearish"))
    manager, _ = build_manager(advisor=advisor)
    state = _state()

    outcome = asyncio.run(manager.try_enter(state, make_signal(Direction.LONG), NOW))

    assert outcome.gate == "advisory"
    assert state.position is PositionSide.NONE


def test_cooldown_blocks_before_advisory(build_manager, confirm_long):
    manager, _ = build_manager(advisor=confirm_long)
    state = _state()
    state.last_order_time = NOW - 10

    outcome = asyncio.run(manager.try_enter(state, make_signal(), NOW))

    assert outcome.gate == "cooldown"
    assert confirm_long.calls == []


def test_disabled_pattern_blocks(build_manager, confirm_long):
    manager, parts = build_manager(advisor=confirm_long)
    parts["tuner"].data["patterns"]["disabled"]["NEUTRAL|UPTREND|FLAT"] = NOW + 3600
    state = _state(imbalance=0.0)

    outcome = asyncio.run(manager.try_enter(state, make_signal(), NOW))

    assert outcome.gate == "pattern_disabled"


def test_direction_override_blocks_other_side(build_manager, confirm_long):
    manager, parts = build_manager(advisor=confirm_long)
    parts["tuner"].data["patterns"]["directionOverrides"]["NEUTRAL|UPTREND|FLAT"] = "SHORT"
    state = _state(imbalance=0.0)

    outcome = asyncio.run(manager.try_enter(state, make_signal(Direction.LONG), NOW))

    assert outcome.gate == "direction_override"


def test_same_direction_loss_throttle(build_manager, confirm_long):
    manager, _ = build_manager(advisor=confirm_long)
    state = _state()
    state.consecutive_losses = 2
    state.loss_direction = Direction.LONG

    blocked = asyncio.run(manager.try_enter(state, make_signal(Direction.LONG), NOW))
    assert blocked.gate == "loss_throttle"

    state.loss_direction = Direction.SHORT
    passed = asyncio.run(manager.try_enter(state, make_signal(Direction.LONG), NOW))
    assert passed.opened


def test_caution_mode_gate_in_entry_chain(build_manager, confirm_long):
    manager, parts = build_manager(advisor=confirm_long)
    parts["tuner"].streaks["cautionMode"] = True
    state = _state()

    low = asyncio.run(manager.try_enter(state, make_signal(confidence=0.65), NOW))
    assert low.gate == "tuner"
    assert state.position is PositionSide.NONE

    high = asyncio.run(manager.try_enter(state, make_signal(confidence=0.75), NOW))
    assert high.opened


def test_breaker_is_last_gate(build_manager, confirm_long):
    manager, parts = build_manager(advisor=confirm_long)
    for _ in range(4):
        parts["breaker"].record_trade(-1.0, NOW)
    state = _state()

    outcome = asyncio.run(manager.try_enter(state, make_signal(), NOW))

    assert outcome.gate == "breaker"
    assert outcome.shadowed


def test_loss_counter_tracks_direction_and_resets_on_win(build_manager):
    manager, _ = build_manager()
    state = _state()

    for i, (direction, exit_price) in enumerate([
        (Direction.LONG, 99.0), (Direction.LONG, 99.0), (Direction.SHORT, 101.0),
    ]):
        t = NOW + i * 1000
        asyncio.run(manager.open_position(state, direction, 100.0, t))
        asyncio.run(manager.close_position(state, exit_price, "stop_loss", t + 60))

    assert state.consecutive_losses == 1
    assert state.loss_direction is Direction.SHORT

    asyncio.run(manager.open_position(state, Direction.LONG, 100.0, NOW + 5000))
    asyncio.run(manager.close_position(state, 101.0, "trailing_tp", NOW + 5060))
    assert state.consecutive_losses == 0
    assert state.loss_direction is None
    assert state.last_result == WIN


def test_trailing_take_profit_after_armed(build_manager):
    manager, parts = build_manager()
    state = _state()
    asyncio.run(manager.open_position(state, Direction.LONG, 100.0, NOW))

    # Default market: target 2.5%, trailing 0.3%
    for step, price in enumerate([101.0, 102.6, 102.4]):
        state.last_price = price
        assert not asyncio.run(manager.manage_position(state, make_signal(), NOW + step))
    assert state.trailing_armed

    state.last_price = 102.2
    assert asyncio.run(manager.manage_position(state, make_signal(), NOW + 10))
    trade = parts["memory"].trades[-1]
    assert trade.exit_reason == "trailing_tp"
    assert trade.result == WIN
    assert trade.profit_percent == pytest.approx(2.2)


def test_danger_mode_tightens_trailing(build_manager):
    manager, parts = build_manager()
    state = _state()
    asyncio.run(manager.open_position(state, Direction.LONG, 100.0, NOW))

    state.last_price = 102.6
    asyncio.run(manager.manage_position(state, make_signal(), NOW + 1))

    # Strong sell pressure against the long: trailing drops to 0.15%
    state.last_imbalance = -0.5
    state.last_price = 102.4
    assert asyncio.run(manager.manage_position(state, make_signal(), NOW + 2))
    assert parts["memory"].trades[-1].exit_reason == "trailing_tp"


def test_implausible_profit_is_clamped(build_manager):
    manager, parts = build_manager()
    state = _state()
    asyncio.run(manager.open_position(state, Direction.SHORT, 100.0, NOW))

    asyncio.run(manager.close_position(state, 250.0, "stop_loss", NOW + 60))

    assert parts["memory"].trades[-1].profit_percent == -100.0


def test_position_open_signal_creates_no_shadow(build_manager, confirm_long):
    manager, parts = build_manager(advisor=confirm_long)
    state = _state()
    asyncio.run(manager.open_position(state, Direction.LONG, 100.0, NOW))

    outcome = asyncio.run(manager.try_enter(state, make_signal(), NOW + 5))

    assert outcome.gate == "position_open"
    assert parts["memory"].pending_shadows() == []


def test_on_tick_resolves_shadows_and_manages_position(build_manager):
    manager, parts = build_manager()
    state = _state()
    parts["shadows"].open("SOL", "NEUTRAL|UPTREND|FLAT", Direction.LONG, 100.0, "cooldown",
                          1.5, 2.5, 0.3, NOW)

    state.last_price = 95.0
    asyncio.run(manager.on_tick(state, make_signal(), NOW + 60))

    shadow = parts["memory"].shadows[0]
    assert shadow.result == LOSS
    assert parts["memory"].session_stats["shadowsResolved"] == 1


class SlowExecutor:
    """Fills every order, but only after ``delay`` seconds."""

    def __init__(self, delay):
        self.delay = delay
        self.sent = []

    def execute(self, request):
        time.sleep(self.delay)
        self.sent.append(request)
        return f"slow_{len(self.sent)}"


def test_timed_out_open_is_applied_when_the_order_lands(build_manager):
    executor = SlowExecutor(0.3)
    manager, _ = build_manager(executor=executor)
    manager._cfg = replace(manager._cfg, execution_timeout_seconds=0.05)
    state = _state()

    async def scenario():
        assert not await manager.open_position(state, Direction.LONG, 100.0, NOW, pattern_key="a|b|c")
        assert state.position is PositionSide.NONE
        assert manager.has_pending_order("SOL")

        blocked = await manager.try_enter(state, make_signal(), NOW + 1)
        assert blocked.gate == "order_pending"
        assert not blocked.shadowed

        await asyncio.sleep(0.5)
        await manager.on_tick(state, make_signal(), NOW + 2)

    asyncio.run(scenario())

    assert len(executor.sent) == 1
    assert state.position is PositionSide.LONG
    assert state.entry_price == 100.0
    assert state.pattern_key == "a|b|c"
    assert not manager.has_pending_order("SOL")


def test_timed_out_close_settles_once_and_blocks_resends(build_manager):
    executor = SlowExecutor(0.3)
    manager, parts = build_manager(executor=executor)
    state = _state()

    async def scenario():
        assert await manager.open_position(state, Direction.LONG, 100.0, NOW)
        manager._cfg = replace(manager._cfg, execution_timeout_seconds=0.05)

        assert not await manager.close_position(state, 98.0, "stop_loss", NOW + 60)
        assert state.position is PositionSide.LONG
        assert not await manager.close_position(state, 97.0, "stop_loss", NOW + 61)

        await asyncio.sleep(0.5)
        assert manager.check_pending_orders(state)

    asyncio.run(scenario())

    assert len(executor.sent) == 2
    assert state.position is PositionSide.NONE
    trade = parts["memory"].trades[-1]
    assert trade.exit_price == 98.0
    assert trade.profit_percent == pytest.approx(-2.0)
    assert [t.exit_reason for t in manager.drain_closed()] == ["stop_loss"]


def test_advisory_max_hold_closes_live_position(build_manager):
    advisor = FakeAdvisor(AdvisoryDecision("LONG", 1.2, 2.0, 0.8, "quick scalp", max_hold_minutes=10))
    manager, parts = build_manager(advisor=advisor)
    state = _state()
    assert asyncio.run(manager.try_enter(state, make_signal(), NOW)).opened
    assert state.ai_max_hold == 10

    state.last_price = 100.2
    assert not asyncio.run(manager.manage_position(state, make_signal(), NOW + 9 * 60))
    assert asyncio.run(manager.manage_position(state, make_signal(), NOW + 11 * 60))

    trade = parts["memory"].trades[-1]
    assert trade.exit_reason == "timeout"
    assert trade.result == WIN


def test_no_time_exit_without_advisory_hold(build_manager):
    manager, _ = build_manager()
    state = _state()
    assert asyncio.run(manager.try_enter(state, make_signal(), NOW)).opened
    assert state.ai_max_hold is None

    state.last_price = 100.2
    assert not asyncio.run(manager.manage_position(state, make_signal(), NOW + 10 * 3600))
    assert state.position is PositionSide.LONG


def test_advisor_request_carries_technicals(build_manager, confirm_long):
    manager, _ = build_manager(advisor=confirm_long)
    state = _state()
    buf = TimeframeBuffer(TimeframeSpec("fast", 5.0, 40))
    for i in range(30):
        buf.append(99.0 + i * 0.05, 0.1, NOW - 150 + i * 5)
    state.buffers["fast"] = buf

    assert asyncio.run(manager.try_enter(state, make_signal(), NOW)).opened

    technicals = confirm_long.calls[0].technicals
    assert technicals.recent_prices == list(buf.prices)[-10:]
    assert [label for label, _ in technicals.frames] == ["5-MIN", "1-MIN"]
    assert not technicals.frames[1][1].ready
