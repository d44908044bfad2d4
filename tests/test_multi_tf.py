from __future__ import annotations

import pytest

from heimdall.config import TimeframeSpec
from heimdall.exchange.models import Direction
from heimdall.market_state import MarketState, TimeframeBuffer
from heimdall.strategy.multi_tf import (
    MultiTimeframeAnalyzer,
    PriceAction,
    TrendMode,
    classify_price_action,
    classify_trend,
    imbalance_stable,
    measure_volatility,
    trend_threshold_pct,
)

FAST = TimeframeSpec("fast", 5, 12)


def _buffer(prices, imbalances=None) -> TimeframeBuffer:
    buf = TimeframeBuffer(FAST)
    imbalances = imbalances or [0.0] * len(prices)
    for i, (p, imb) in enumerate(zip(prices, imbalances)):
        buf.append(p, imb, 1000.0 + i * 5)
    return buf


def test_threshold_scales_with_square_root_of_window():
    assert trend_threshold_pct(0.05, 1) == pytest.approx(0.05)
    assert trend_threshold_pct(0.05, 4) == pytest.approx(0.10)


def test_uptrend_with_flat_tape_votes_long():
    prices = [100 + i * 0.1 for i in range(8)] + [100.8] * 4
    result = MultiTimeframeAnalyzer().analyze_buffer(_buffer(prices))

    assert result.ready
    assert result.trend is TrendMode.UPTREND
    assert result.price_action is PriceAction.FLAT
    assert result.signal is Direction.LONG
    assert result.strength == 0.7
    assert result.change_pct == pytest.approx(0.8)


def test_downtrend_with_rising_tape_votes_short():
    prices = [100 - i * 0.2 for i in range(8)] + [98.5, 98.6, 98.7, 98.8]
    result = MultiTimeframeAnalyzer().analyze_buffer(_buffer(prices))

    assert result.trend is TrendMode.DOWNTREND
    assert result.price_action is PriceAction.RISING
    assert result.signal is Direction.SHORT


def test_uptrend_still_rising_gives_no_vote():
    prices = [100 + i * 0.1 for i in range(12)]
    result = MultiTimeframeAnalyzer().analyze_buffer(_buffer(prices))

    assert result.trend is TrendMode.UPTREND
    assert result.price_action is PriceAction.RISING
    assert result.signal is None


def test_ranging_dip_with_stable_bid_pressure_votes_long():
    prices = [100.0] * 7 + [100.01, 100.008, 100.006, 100.004, 100.002]
    imbalances = [0.0] * 8 + [0.35, 0.4, 0.35, 0.4]
    result = MultiTimeframeAnalyzer(imbalance_threshold=0.3).analyze_buffer(_buffer(prices, imbalances))

    assert result.trend is TrendMode.RANGING
    assert result.price_action is PriceAction.FALLING
    assert result.signal is Direction.LONG
    assert result.strength == 0.5


def test_ranging_dip_with_flickering_imbalance_gives_no_vote():
    prices = [100.0] * 7 + [100.01, 100.008, 100.006, 100.004, 100.002]
    imbalances = [0.0] * 8 + [0.35, 0.0, 0.0, 0.4]
    result = MultiTimeframeAnalyzer(imbalance_threshold=0.3).analyze_buffer(_buffer(prices, imbalances))

    assert result.signal is None


def test_not_ready_until_enough_points():
    result = MultiTimeframeAnalyzer().analyze_buffer(_buffer([100.0] * 11))
    assert not result.ready
    assert result.points == 11
    assert result.signal is None


def test_trend_anchor_is_first_point_of_window():
    # Older history beyond the window must not count
    prices = [50.0, 50.0] + [100.0] * 12
    mode, change = classify_trend(prices, 12, 0.05)
    assert mode is TrendMode.RANGING
    assert change == 0.0


def test_price_action_needs_three_moves():
    assert classify_price_action([1, 2, 3, 4, 4]) is PriceAction.RISING
    assert classify_price_action([4, 3, 2, 1, 1]) is PriceAction.FALLING
    assert classify_price_action([1, 2, 1, 2, 1]) is PriceAction.FLAT


def test_volatility_is_mean_absolute_percent_change():
    assert measure_volatility([100.0, 101.0, 100.0]) == pytest.approx((1.0 + 100 / 101) / 2)
    assert measure_volatility([100.0]) == 0.0


def test_imbalance_stability_window():
    assert imbalance_stable([0.3, 0.3, 0.3, 0.0], 0.3, Direction.LONG)
    assert not imbalance_stable([0.3, 0.3, 0.0, 0.0], 0.3, Direction.LONG)
    assert imbalance_stable([-0.3, -0.3, -0.3, -0.3], 0.3, Direction.SHORT)
    assert not imbalance_stable([0.3, 0.3, 0.3], 0.3, Direction.LONG)


def test_ingest_respects_timeframe_intervals():
    slow = TimeframeSpec("slow", 60, 10)
    state = MarketState("SOL", buffers={"fast": TimeframeBuffer(FAST), "slow": TimeframeBuffer(slow)})
    analyzer = MultiTimeframeAnalyzer()

    for i in range(13):
        analyzer.ingest(state, 100.0 + i, 0.1, 1000.0 + i * 5)

    assert len(state.buffers["fast"].prices) == 13
    assert len(state.buffers["slow"].prices) == 2
    assert state.last_price == 112.0
    assert state.last_imbalance == 0.1


def test_buffer_capacity_is_three_times_points_needed():
    buf = _buffer([100.0] * 50)
    assert len(buf.prices) == 36
