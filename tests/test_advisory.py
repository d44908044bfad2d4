from __future__ import annotations

import json
from dataclasses import replace

import pytest
import requests

from heimdall.config import HeimdallConfig
from heimdall.exchange.models import Direction
from heimdall.intelligence.advisory import (
    AdvisoryBrain,
    AdvisoryError,
    AdvisoryRequest,
    StaticAdvisor,
    build_prompt,
    find_similar,
    parse_decision,
    similarity,
)
from heimdall.intelligence.thinking import ThinkingLog
from heimdall.strategy.indicators import technical_context

from helpers import NOW, make_trade

REQUEST = AdvisoryRequest("SOL", 150.0, "UPTREND", 0.35, 0.05, 0.2, Direction.LONG)


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self._payload


class FakeSession:
    """Answers per model; a model mapped to an exception raises it."""

    def __init__(self, answers):
        self.answers = answers
        self.models = []

    def post(self, url, json=None, headers=None, timeout=None):
        model = json["model"]
        self.models.append(model)
        answer = self.answers[model]
        if isinstance(answer, Exception):
            raise answer
        return FakeResponse({"choices": [{"message": {"content": answer}}]})


@pytest.fixture
def advisory_cfg(tmp_path):
    return HeimdallConfig(
        data_dir=tmp_path,
        advisory_api_key="test-key",
        advisory_model="primary",
        advisory_fallback_model="fallback",
    )


def _answer(action="LONG", **extra):
    return json.dumps({"action": action, "stopLoss": 1.0, "takeProfit": 2.0,
                       "confidence": 0.8, "reason": "ok", **extra})


# ── Parsing ──

def test_parse_plain_fenced_and_embedded_json():
    assert parse_decision(_answer()).action == "LONG"
    assert parse_decision(f"```json\n{_answer('SHORT')}\n```").action == "SHORT"
    assert parse_decision(f"Sure. {_answer('wait')} Good luck").action == "WAIT"


def test_parse_clamps_and_defaults():
    decision = parse_decision(json.dumps({
        "action": "LONG", "stopLoss": 9, "takeProfit": 0.1,
        "confidence": "high", "maxHoldMinutes": 1000,
    }), model="m")

    assert decision.stop_loss_pct == 2.5
    assert decision.take_profit_pct == 0.3
    assert decision.confidence == 0.5
    assert decision.max_hold_minutes == 240
    assert decision.model == "m"


def test_parse_rejects_bad_answers():
    with pytest.raises(AdvisoryError):
        parse_decision("no json here")
    with pytest.raises(AdvisoryError):
        parse_decision(_answer("BUY"))


# ── Routing ──

def test_no_api_key_declines(tmp_path):
    brain = AdvisoryBrain(HeimdallConfig(data_dir=tmp_path, advisory_api_key=""),
                          session=FakeSession({}))
    assert brain.ask(REQUEST).action == "WAIT"


def test_primary_answer_is_used(advisory_cfg):
    session = FakeSession({"primary": _answer()})
    decision = AdvisoryBrain(advisory_cfg, session=session).ask(REQUEST)

    assert decision.confirms(Direction.LONG)
    assert decision.model == "primary"
    assert session.models == ["primary"]


def test_fallback_used_when_primary_fails(advisory_cfg):
    session = FakeSession({"primary": requests.ConnectionError("down"), "fallback": _answer("SHORT")})
    decision = AdvisoryBrain(advisory_cfg, session=session).ask(REQUEST)

    assert decision.action == "SHORT"
    assert not decision.confirms(Direction.LONG)
    assert session.models == ["primary", "fallback"]


def test_fallback_first_after_three_failed_rounds(advisory_cfg):
    session = FakeSession({"primary": requests.Timeout("slow"), "fallback": "garbage"})
    brain = AdvisoryBrain(advisory_cfg, thinking=ThinkingLog(), session=session)

    for _ in range(3):
        assert brain.ask(REQUEST).action == "WAIT"
    assert brain.consecutive_failures == 3
    assert brain.models_to_try() == ["fallback", "primary"]

    session.answers["fallback"] = _answer()
    session.models.clear()
    assert brain.ask(REQUEST).action == "LONG"
    assert session.models == ["fallback"]
    assert brain.consecutive_failures == 0
    assert brain.models_to_try() == ["primary", "fallback"]


def test_duplicate_models_tried_once(tmp_path):
    cfg = HeimdallConfig(data_dir=tmp_path, advisory_model="same", advisory_fallback_model="same")
    assert AdvisoryBrain(cfg, session=FakeSession({})).models_to_try() == ["same"]


# ── Memory retrieval ──

def test_similarity_scoring():
    exact = make_trade(pattern="STRONG_BUY|UPTREND|FLAT", volatility=0.05)
    opposite = make_trade(pattern="BUY|DOWNTREND|FLAT", volatility=0.15, symbol="BTC")
    trend_only = make_trade(pattern="NEUTRAL|UPTREND|FLAT", volatility=0.3, symbol="BTC")

    assert similarity(exact, REQUEST, 0.3) == 8
    assert similarity(opposite, REQUEST, 0.3) == 2
    assert similarity(trend_only, REQUEST, 0.3) == 3
    assert similarity(make_trade(pattern="junk"), REQUEST, 0.3) == 0


def test_find_similar_keeps_best_three():
    rows = [make_trade(pattern="STRONG_BUY|UPTREND|FLAT", ts=NOW + i) for i in range(5)]
    rows.append(make_trade(pattern="BUY|DOWNTREND|FLAT", symbol="BTC", volatility=0.3))

    found = find_similar(rows, REQUEST, 0.3)

    assert [t.timestamp for t in found] == [NOW + 4, NOW + 3, NOW + 2]


def test_prompt_mentions_history():
    recent = [make_trade(profit=1.5)]
    prompt = build_prompt(REQUEST, recent, recent)

    assert "MARKET: SOL" in prompt
    assert "YOUR LAST 1 TRADES" in prompt
    assert "SIMILAR PAST TRADES" in prompt
    assert prompt.endswith("Respond in JSON only.")


def test_static_advisor_echoes_signal():
    decision = StaticAdvisor().ask(REQUEST)
    assert decision.action == "LONG"
    assert decision.stop_loss_pct is None
    assert StaticAdvisor().ask(AdvisoryRequest("SOL", 1.0, "RANGING", 0.0, 0.0, 0.0)).action == "WAIT"


def test_prompt_includes_technicals_before_history():
    times = [i * 5.0 for i in range(120)]
    prices = [150 + abs(i - 59) * 0.1 for i in range(120)]
    request = replace(REQUEST, technicals=technical_context(prices, times, 150.5))

    prompt = build_prompt(request, [make_trade()], [])

    assert "Recent prices (oldest to newest): $155.1000" in prompt
    assert "1-MIN INDICATORS" in prompt
    assert "SUPPORT/RESISTANCE LEVELS:" in prompt
    assert prompt.index("CANDLE PATTERNS (1m)") < prompt.index("YOUR LAST 1 TRADES")
    assert "INDICATORS" not in build_prompt(REQUEST, [], [])
