"""Advisory brain: second opinion from an LLM before any entry.

The engine already has a direction; the advisor either confirms it
(same action) or declines (WAIT or the other side). A confirmation may
also carry a stop/target that overrides the tuner's for that trade.

Routing: OpenAI-compatible ``/chat/completions`` endpoint, primary model
then fallback. After 3 consecutive rounds where every model failed the
fallback is tried first. No API key, or every model failing, yields WAIT.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Sequence

import requests

from heimdall.config import HeimdallConfig
from heimdall.exchange.models import Direction
from heimdall.intelligence.thinking import ThinkingLog
from heimdall.memory.patterns import Pattern, classify_imbalance
from heimdall.memory.records import TradeRecord
from heimdall.strategy.indicators import TechnicalContext, format_context

log = logging.getLogger("heimdall.advisory")

FAILURES_BEFORE_FALLBACK_FIRST = 3
RECENT_RESULTS = 5
MAX_SIMILAR = 3
MIN_SIMILARITY = 3

DEFAULT_STOP = 1.5
DEFAULT_TARGET = 2.5
DEFAULT_CONFIDENCE = 0.5
DEFAULT_MAX_HOLD = 60.0

SYSTEM_PROMPT = """\
You are a short-term perpetual futures trader confirming signals from an \
order-book driven engine.

## Facts
- 20x leverage. 1% price move = 20% P&L.
- Fees ~0.1% round trip. Minimum 0.15% price move target.
- stopLoss / takeProfit are PRICE MOVE %, not P&L %.

## Style
- Hold 10 minutes to 4 hours. Cut losses fast, let winners run.
- If unsure, WAIT. Missing a trade beats losing money.
- Never trade against a clear trend. Order-book imbalance confirms, it does not lead.
- TP should be 1.5x to 2x your SL.

## Indicators (5-min and 1-min candles)
- RSI above 70 is overbought, below 30 oversold. Avoid chasing either.
- EMA 9 above EMA 21 is short-term bullish. Price above EMA 50 is the longer uptrend.
- MACD histogram sign gives momentum. ADX below 20 means chop: prefer WAIT.
- Respect nearby support/resistance. Do not go LONG into strong resistance.

Respond with ONLY a JSON object:
{"action": "LONG" | "SHORT" | "WAIT", "stopLoss": number, "takeProfit": number,
 "confidence": number 0-1, "reason": "short explanation", "maxHoldMinutes": number 10-240}"""


class AdvisoryError(Exception):
    """The advisory endpoint failed or returned an unusable answer."""


@dataclass(frozen=True)
class AdvisoryRequest:
    symbol: str
    price: float
    trend: str
    imbalance: float
    volatility: float
    recent_change_pct: float
    signal_direction: Optional[Direction] = None
    technicals: Optional[TechnicalContext] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "trend": self.trend,
            "imbalance": round(self.imbalance, 4),
            "volatility": round(self.volatility, 4),
            "recentChangePercent": round(self.recent_change_pct, 4),
        }


@dataclass(frozen=True)
class AdvisoryDecision:
    action: str                            # LONG | SHORT | WAIT
    stop_loss_pct: Optional[float] = None  # None = use the tuner's stop
    take_profit_pct: Optional[float] = None
    confidence: float = 0.0
    reason: str = ""
    max_hold_minutes: Optional[float] = None   # None = no time exit
    model: str = ""

    def confirms(self, direction: Direction) -> bool:
        return self.action == direction.value

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "stopLossPercent": self.stop_loss_pct,
            "takeProfitPercent": self.take_profit_pct,
            "confidence": self.confidence,
            "reason": self.reason,
            "maxHoldMinutes": self.max_hold_minutes,
            "model": self.model,
        }


def wait_decision(reason: str) -> AdvisoryDecision:
    return AdvisoryDecision("WAIT", DEFAULT_STOP, DEFAULT_TARGET, 0.0, reason)


# ── Parsing ──

def _extract_json(text: str) -> Optional[dict]:
    """Extract a JSON object, tolerating markdown fences and trailing text."""
    if not text:
        return None
    text = text.strip()
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fence_match:
        try:
            data = json.loads(fence_match.group(1).strip())
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            pass

    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        try:
            data = json.loads(text[start:end + 1])
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            return None
    return None


def _number(value, default: float, lo: float, hi: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        value = default
    return float(min(max(value, lo), hi))


def parse_decision(raw: str, model: str = "") -> AdvisoryDecision:
    """Validate and clamp a model answer. Raises ``AdvisoryError`` if unusable."""
    data = _extract_json(raw)
    if data is None:
        raise AdvisoryError("no JSON object in response")
    action = str(data.get("action") or "").upper()
    if action not in ("LONG", "SHORT", "WAIT"):
        raise AdvisoryError(f"invalid action {action!r}")
    return AdvisoryDecision(
        action=action,
        stop_loss_pct=_number(data.get("stopLoss"), DEFAULT_STOP, 0.3, 2.5),
        take_profit_pct=_number(data.get("takeProfit"), DEFAULT_TARGET, 0.3, 3.0),
        confidence=_number(data.get("confidence"), DEFAULT_CONFIDENCE, 0.0, 1.0),
        reason=str(data.get("reason") or "")[:300],
        max_hold_minutes=_number(data.get("maxHoldMinutes"), DEFAULT_MAX_HOLD, 10, 240),
        model=model,
    )


# ── Memory retrieval ──

def _imbalance_side(imbalance_class: str) -> str:
    if imbalance_class.endswith("BUY"):
        return "BUY"
    if imbalance_class.endswith("SELL"):
        return "SELL"
    return "NEUTRAL"


def similarity(trade: TradeRecord, request: AdvisoryRequest, imbalance_threshold: float) -> int:
    try:
        pattern = Pattern.from_key(trade.pattern)
    except ValueError:
        return 0
    score = 0
    if pattern.trend == request.trend:
        score += 3

    vol_diff = abs(trade.volatility - request.volatility)
    if vol_diff < 0.05:
        score += 2
    elif vol_diff < 0.15:
        score += 1

    imb_class = classify_imbalance(request.imbalance, imbalance_threshold)
    if pattern.imbalance_class == imb_class:
        score += 2
    elif _imbalance_side(pattern.imbalance_class) == _imbalance_side(imb_class):
        score += 1

    if trade.symbol == request.symbol:
        score += 1
    return score


def find_similar(
    trades: Sequence[TradeRecord],
    request: AdvisoryRequest,
    imbalance_threshold: float,
    max_results: int = MAX_SIMILAR,
) -> list[TradeRecord]:
    scored = [(similarity(t, request, imbalance_threshold), t) for t in trades]
    scored = [(s, t) for s, t in scored if s >= MIN_SIMILARITY]
    scored.sort(key=lambda st: (st[0], st[1].timestamp), reverse=True)
    return [t for _, t in scored[:max_results]]


def build_prompt(
    request: AdvisoryRequest,
    recent: Sequence[TradeRecord],
    similar: Sequence[TradeRecord],
) -> str:
    parts = [
        f"MARKET: {request.symbol}",
        f"Price: ${request.price:,.4f}",
        f"Trend: {request.trend}",
        f"Order book imbalance: {request.imbalance * 100:+.1f}%",
        f"Volatility: {request.volatility:.3f}%",
        f"Recent change: {request.recent_change_pct:+.3f}%",
    ]
    if request.technicals is not None:
        parts += format_context(request.technicals)
    if recent:
        parts.append(f"\nYOUR LAST {len(recent)} TRADES ON {request.symbol}:")
        for t in recent:
            parts.append(f"- {t.direction} | {t.result} | P&L {t.profit_percent:+.2f}% | exit {t.exit_reason}")
    if similar:
        parts.append("\nSIMILAR PAST TRADES (same market conditions):")
        for t in similar:
            parts.append(
                f"- [{t.symbol} {t.result} {t.profit_percent:+.1f}%] {t.direction} "
                f"in {t.pattern}, exit {t.exit_reason}"
            )
    parts.append("\nWhat is your trading decision? Respond in JSON only.")
    return "\n".join(parts)


class AdvisoryBrain:
    """LLM confirmation step over ``requests``."""

    def __init__(self, cfg: HeimdallConfig, thinking: Optional[ThinkingLog] = None,
                 session: Optional[requests.Session] = None):
        self._cfg = cfg
        self._thinking = thinking or ThinkingLog()
        self._session = session or requests.Session()
        self._consecutive_failures = 0
        log.info("[ADVISORY] Initialized | model=%s fallback=%s",
                 cfg.advisory_model, cfg.advisory_fallback_model)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def models_to_try(self) -> list[str]:
        primary, fallback = self._cfg.advisory_model, self._cfg.advisory_fallback_model
        models = [primary, fallback]
        if self._consecutive_failures >= FAILURES_BEFORE_FALLBACK_FIRST:
            models = [fallback, primary]
        return [m for i, m in enumerate(models) if m and m not in models[:i]]

    def _call(self, model: str, user_prompt: str) -> str:
        try:
            resp = self._session.post(
                f"{self._cfg.advisory_base_url.rstrip('/')}/chat/completions",
                json={
                    "model": model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": user_prompt},
                    ],
                    "temperature": 0.3,
                    "max_tokens": 1500,
                },
                headers={"Authorization": f"Bearer {self._cfg.advisory_api_key}"},
                timeout=self._cfg.advisory_timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise AdvisoryError(f"request failed: {str(e)[:200]}") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise AdvisoryError("empty API response")
        msg = choices[0].get("message") or {}
        raw = (msg.get("content") or "").strip()
        if not raw and isinstance(msg.get("reasoning"), str) and "{" in msg["reasoning"]:
            raw = msg["reasoning"]
        if not raw:
            raise AdvisoryError("empty content from model")
        return raw

    def ask(self, request: AdvisoryRequest, history: Sequence[TradeRecord] = ()) -> AdvisoryDecision:
        """Blocking call; run it off the event loop."""
        if not self._cfg.advisory_api_key:
            self._thinking.think("No advisory API key configured, declining", "error")
            return wait_decision("no API key")

        recent = [t for t in history if t.symbol == request.symbol][-RECENT_RESULTS:]
        similar = find_similar(history, request, self._cfg.imbalance_threshold)
        if similar:
            self._thinking.think(
                f"[{request.symbol}] Found {len(similar)} similar past trades", "advisory",
            )
        prompt = build_prompt(request, recent, similar)

        self._thinking.think(
            f"Asking advisor about {request.symbol} | ${request.price:,.4f} | "
            f"{request.trend} | imbalance {request.imbalance * 100:+.1f}%",
            "advisory",
        )
        for model in self.models_to_try():
            try:
                raw = self._call(model, prompt)
                decision = parse_decision(raw, model)
            except AdvisoryError as e:
                self._thinking.think(f"Model {model} failed for {request.symbol}: {e}", "error")
                continue
            self._consecutive_failures = 0
            self._thinking.think(
                f"Advisor [{request.symbol}] via {model}: {decision.action} | "
                f"SL {decision.stop_loss_pct}% TP {decision.take_profit_pct}% | "
                f"conf {decision.confidence:.0%} | {decision.reason}",
                "advisory",
            )
            return decision

        self._consecutive_failures += 1
        self._thinking.think(
            f"All advisory models failed ({self._consecutive_failures} consecutive)", "error",
        )
        return wait_decision("all models failed")


class StaticAdvisor:
    """Advisory disabled: confirm the engine's own direction, keep tuner risk."""

    def ask(self, request: AdvisoryRequest, history: Sequence[TradeRecord] = ()) -> AdvisoryDecision:
        if request.signal_direction is None:
            return wait_decision("no signal direction")
        return AdvisoryDecision(
            action=request.signal_direction.value,
            confidence=1.0,
            reason="advisory disabled",
            model="static",
        )
