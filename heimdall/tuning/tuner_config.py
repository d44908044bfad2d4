"""TunerConfig: the single mutable risk document the self-tuner rewrites.

Holds per-market risk parameters, pattern overrides, blocked hours,
streak/caution state, position sizing, cooldown and volatility state,
plus the capped tuning audit log. Loaded with compiled-in defaults
merged under the persisted file; saved whole after each mutation batch.
The object is passed explicitly to every component that reads it.
"""
from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from heimdall.exchange.models import Direction
from heimdall.persistence import load_document, merge_defaults, save_document

log = logging.getLogger("heimdall.tuning.config")

MAX_TUNING_LOG = 200

DEFAULT_MARKET = {
    "stopLoss": 1.5,
    "takeProfit": 2.5,
    "trailingNormal": 0.3,
    "trailingDanger": 0.15,
    "enabled": True,
    "pausedUntil": None,
    "confidenceMultiplier": 1.0,
    "cooldownSeconds": 60.0,
}

DEFAULT_TUNER_CONFIG: dict[str, Any] = {
    "version": 1,
    "lastUpdated": None,
    "tuneCount": 0,
    "defaultMarket": DEFAULT_MARKET,
    "markets": {},
    "patterns": {
        "disabled": {},             # pattern key -> expiry timestamp
        "directionOverrides": {},   # pattern key -> "LONG" | "SHORT"
        "retestSince": {},          # pattern key -> timestamp the last disable expired
    },
    "timing": {
        "blockedHours": [],         # UTC hours 0-23
    },
    "streaks": {
        "cautionMode": False,
        "cautionMinConfidence": 0.70,
        "dailyLossLimit": 3.0,
        "dailyPnl": 0.0,
        "dailyDate": None,
        "recentWinRate": None,
        "postLossCooldownMultiplier": 1.0,
        "postWinCooldownMultiplier": 1.0,
    },
    "volatility": {
        "highThreshold": 0.15,
        "lowThreshold": 0.03,
        "highVolStopMultiplier": 1.3,
        "lowVolStopMultiplier": 0.8,
        "spikeThreshold": 0.3,
        "spikeWaitSeconds": 300,
        "lastSpike": {},            # symbol -> timestamp
    },
    "positionSizing": {
        "multiplier": 1.0,
        "reducedFactor": 0.5,
        "lossStreakTrigger": 3,
        "consecutiveLosses": 0,
    },
    "cooldown": {
        "minSeconds": 30.0,
        "maxSeconds": 600.0,
    },
    "tuningLog": [],
}


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: str = ""
    size_multiplier: float = 1.0
    confidence: float = 0.0


def utc_hour(ts: float) -> int:
    return datetime.fromtimestamp(ts, tz=timezone.utc).hour


def utc_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class TunerConfig:
    """Process-wide tuner document with typed accessors."""

    def __init__(self, data: Optional[dict] = None, path: Optional[Path] = None):
        self._path = path
        self.data: dict = merge_defaults(DEFAULT_TUNER_CONFIG, data or {})

    @classmethod
    def load(cls, path: Path) -> "TunerConfig":
        cfg = cls(load_document(path, DEFAULT_TUNER_CONFIG), path=path)
        log.info("[TUNER] Config loaded: %d markets, %d disabled patterns, %d blocked hours",
                 len(cfg.data["markets"]), len(cfg.data["patterns"]["disabled"]),
                 len(cfg.data["timing"]["blockedHours"]))
        return cfg

    def save(self) -> bool:
        if not self._path:
            return True
        self.data["lastUpdated"] = time.time()
        return save_document(self._path, self.data)

    # ── Sections ──

    @property
    def streaks(self) -> dict:
        return self.data["streaks"]

    @property
    def volatility(self) -> dict:
        return self.data["volatility"]

    @property
    def sizing(self) -> dict:
        return self.data["positionSizing"]

    @property
    def tuning_log(self) -> list[dict]:
        return self.data["tuningLog"]

    def market(self, symbol: str) -> dict:
        markets = self.data["markets"]
        m = markets.get(symbol)
        if m is None:
            m = markets[symbol] = copy.deepcopy(self.data["defaultMarket"])
        else:
            for key, value in self.data["defaultMarket"].items():
                m.setdefault(key, copy.deepcopy(value))
        return m

    # ── Patterns ──

    def is_pattern_disabled(self, key: str, now: float) -> bool:
        expiry = self.data["patterns"]["disabled"].get(key)
        return expiry is not None and now < float(expiry)

    def direction_override(self, key: str) -> Optional[Direction]:
        value = self.data["patterns"]["directionOverrides"].get(key)
        return Direction(value) if value else None

    # ── Risk parameters ──

    def effective_stop(self, symbol: str, volatility: float) -> float:
        """Market stop scaled for the current volatility regime."""
        stop = float(self.market(symbol)["stopLoss"])
        vol = self.volatility
        if volatility > vol["highThreshold"]:
            return stop * float(vol["highVolStopMultiplier"])
        if volatility < vol["lowThreshold"]:
            return stop * float(vol["lowVolStopMultiplier"])
        return stop

    def volatility_regime(self, volatility: float) -> str:
        if volatility > self.volatility["highThreshold"]:
            return "high"
        if volatility < self.volatility["lowThreshold"]:
            return "low"
        return "normal"

    def cooldown_seconds(self, symbol: str, last_result: str = "") -> float:
        base = float(self.market(symbol)["cooldownSeconds"])
        if last_result == "LOSS":
            return base * float(self.streaks["postLossCooldownMultiplier"])
        if last_result == "WIN":
            return base * float(self.streaks["postWinCooldownMultiplier"])
        return base

    def note_volatility(self, symbol: str, volatility: float, now: float) -> bool:
        """Record a volatility spike timestamp. Returns True when one was recorded."""
        if volatility <= float(self.volatility["spikeThreshold"]):
            return False
        self.volatility["lastSpike"][symbol] = now
        return True

    # ── Admission ──

    def admit(self, symbol: str, confidence: float, now: float) -> Admission:
        """Final tuner gate: market enabled, hour open, caution floor, spike wait."""
        m = self.market(symbol)
        paused_until = m.get("pausedUntil")
        if not m.get("enabled", True):
            if paused_until is None or now < float(paused_until):
                return Admission(False, f"market {symbol} paused")

        hour = utc_hour(now)
        if hour in self.data["timing"]["blockedHours"]:
            return Admission(False, f"hour {hour:02d} UTC blocked")

        adjusted = min(1.0, confidence * float(m.get("confidenceMultiplier", 1.0)))
        if self.streaks["cautionMode"]:
            # Floor applies to the requested confidence, before the market multiplier
            floor = float(self.streaks["cautionMinConfidence"])
            if confidence < floor:
                return Admission(False, f"caution mode: confidence {confidence:.2f} < {floor:.2f}",
                                 confidence=adjusted)

        last_spike = self.volatility["lastSpike"].get(symbol)
        wait = float(self.volatility["spikeWaitSeconds"])
        if last_spike is not None and now - float(last_spike) < wait:
            return Admission(False, f"volatility spike {now - float(last_spike):.0f}s ago",
                             confidence=adjusted)

        return Admission(True, "admitted", float(self.sizing["multiplier"]), adjusted)

    # ── Audit log ──

    def log_action(
        self,
        action: str,
        before: Any,
        after: Any,
        reason: str,
        market: Optional[str] = None,
        now: Optional[float] = None,
    ) -> dict:
        entry = {
            "timestamp": time.time() if now is None else now,
            "action": action,
            "market": market,
            "before": before,
            "after": after,
            "reason": reason,
        }
        self.tuning_log.append(entry)
        if len(self.tuning_log) > MAX_TUNING_LOG:
            del self.tuning_log[: len(self.tuning_log) - MAX_TUNING_LOG]
        log.info("[TUNER] %s%s: %s -> %s (%s)",
                 action, f" [{market}]" if market else "", before, after, reason)
        return entry

    def summary(self) -> dict:
        return {
            "markets": self.data["markets"],
            "disabledPatterns": self.data["patterns"]["disabled"],
            "directionOverrides": self.data["patterns"]["directionOverrides"],
            "blockedHours": self.data["timing"]["blockedHours"],
            "cautionMode": self.streaks["cautionMode"],
            "sizeMultiplier": self.sizing["multiplier"],
            "tuneCount": self.data["tuneCount"],
        }
