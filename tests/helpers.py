"""Shared builders for the test suite."""
from __future__ import annotations

from heimdall.exchange.models import Direction
from heimdall.execution.executor import ExecutionError
from heimdall.intelligence.advisory import AdvisoryDecision
from heimdall.memory.records import WIN, TradeRecord
from heimdall.strategy.consensus import ConsensusSignal
from heimdall.strategy.multi_tf import PriceAction, TimeframeAnalysis, TrendMode

# 2023-11-14 22:13:20 UTC
NOW = 1_700_000_000.0


class FakeAdvisor:
    def __init__(self, decision: AdvisoryDecision):
        self.decision = decision
        self.calls = []

    def ask(self, request, history=()):
        self.calls.append(request)
        return self.decision


class FailingExecutor:
    def __init__(self):
        self.calls = 0

    def execute(self, request):
        self.calls += 1
        raise ExecutionError("exchange down")


def make_trade(
    result=WIN,
    profit=1.0,
    symbol="SOL",
    direction="LONG",
    exit_reason="trailing_tp",
    pattern="NEUTRAL|UPTREND|FLAT",
    ts=NOW,
    entry_time=None,
    volatility=0.05,
) -> TradeRecord:
    return TradeRecord(
        timestamp=ts,
        symbol=symbol,
        pattern=pattern,
        direction=direction,
        entry_price=100.0,
        exit_price=100.0 + profit,
        result=result,
        profit_percent=profit,
        exit_reason=exit_reason,
        entry_time=ts - 300 if entry_time is None else entry_time,
        volatility=volatility,
    )


def make_signal(direction=Direction.LONG, confidence=0.7, volatility=0.05, trend=None) -> ConsensusSignal:
    if trend is None:
        trend = TrendMode.UPTREND if direction is Direction.LONG else TrendMode.DOWNTREND
    analyses = [
        TimeframeAnalysis(
            label, ready=True, points=12, trend=trend, price_action=PriceAction.FLAT,
            volatility=volatility, signal=direction, strength=confidence,
        )
        for label in ("fast", "medium")
    ]
    return ConsensusSignal(direction, confidence, "test signal", volatility, analyses)


