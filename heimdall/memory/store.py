"""Trade memory document: trades, shadow trades, pattern stats, session stats.

Persisted as one JSON document ``{trades, shadowTrades, patternStats,
sessionStats}`` rewritten in full after each mutating batch. Pattern
stats are derived data: recomputed from scratch whenever trades or
resolved shadows change.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from heimdall.memory.patterns import PatternStats, compute_pattern_stats
from heimdall.memory.records import ShadowTrade, TradeRecord
from heimdall.persistence import load_document, save_document

log = logging.getLogger("heimdall.memory.store")

MAX_SHADOWS = 500

DEFAULT_MEMORY = {
    "trades": [],
    "shadowTrades": [],
    "patternStats": {},
    "sessionStats": {
        "startedAt": None,
        "totalTrades": 0,
        "wins": 0,
        "losses": 0,
        "totalProfitPercent": 0.0,
        "shadowsOpened": 0,
        "shadowsResolved": 0,
    },
}


class TradeMemory:
    """In-memory view of the trade memory document with explicit load/save."""

    def __init__(self, path: Optional[Path] = None):
        self._path = path
        self.trades: list[TradeRecord] = []
        self.shadows: list[ShadowTrade] = []
        self.pattern_stats: dict[str, PatternStats] = {}
        self.session_stats: dict = dict(DEFAULT_MEMORY["sessionStats"])

    # ── Persistence ──

    def load(self) -> None:
        if not self._path:
            return
        doc = load_document(self._path, DEFAULT_MEMORY)
        trades: list[TradeRecord] = []
        for raw in doc.get("trades", []):
            try:
                trades.append(TradeRecord.from_dict(raw))
            except (TypeError, ValueError) as e:
                log.warning("[MEMORY] Dropping unreadable trade row: %s", str(e)[:100])
        shadows: list[ShadowTrade] = []
        for raw in doc.get("shadowTrades", []):
            try:
                shadows.append(ShadowTrade.from_dict(raw))
            except (TypeError, ValueError) as e:
                log.warning("[MEMORY] Dropping unreadable shadow row: %s", str(e)[:100])
        self.trades = trades
        self.shadows = shadows[-MAX_SHADOWS:]
        self.session_stats = doc["sessionStats"]
        self.recompute_stats()
        log.info("[MEMORY] Loaded %d trades, %d shadows, %d patterns",
                 len(self.trades), len(self.shadows), len(self.pattern_stats))

    def save(self) -> bool:
        if not self._path:
            return True
        return save_document(self._path, self.to_document())

    def to_document(self) -> dict:
        return {
            "trades": [t.to_dict() for t in self.trades],
            "shadowTrades": [s.to_dict() for s in self.shadows],
            "patternStats": {k: v.to_dict() for k, v in self.pattern_stats.items()},
            "sessionStats": self.session_stats,
        }

    # ── Mutation ──

    def recompute_stats(self, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        rows = [*self.trades, *(s for s in self.shadows if s.resolved)]
        self.pattern_stats = compute_pattern_stats(rows, now)

    def add_trade(self, record: TradeRecord, now: Optional[float] = None) -> None:
        self.trades.append(record)
        ss = self.session_stats
        ss["totalTrades"] = ss.get("totalTrades", 0) + 1
        if record.is_win:
            ss["wins"] = ss.get("wins", 0) + 1
        else:
            ss["losses"] = ss.get("losses", 0) + 1
        ss["totalProfitPercent"] = round(
            ss.get("totalProfitPercent", 0.0) + record.profit_percent, 4
        )
        self.recompute_stats(now)

    def add_shadow(self, shadow: ShadowTrade) -> None:
        self.shadows.append(shadow)
        if len(self.shadows) > MAX_SHADOWS:
            del self.shadows[: len(self.shadows) - MAX_SHADOWS]
        self.session_stats["shadowsOpened"] = self.session_stats.get("shadowsOpened", 0) + 1

    def shadows_resolved(self, count: int, now: Optional[float] = None) -> None:
        if count <= 0:
            return
        self.session_stats["shadowsResolved"] = (
            self.session_stats.get("shadowsResolved", 0) + count
        )
        self.recompute_stats(now)

    # ── Queries ──

    def stats_for(self, pattern_key: str) -> Optional[PatternStats]:
        return self.pattern_stats.get(pattern_key)

    def recent_trades(self, symbol: Optional[str] = None, limit: Optional[int] = None) -> list[TradeRecord]:
        rows = [t for t in self.trades if not t.simulated and (symbol is None or t.symbol == symbol)]
        return rows[-limit:] if limit else rows

    def resolved_shadows(self, symbol: Optional[str] = None, limit: Optional[int] = None) -> list[ShadowTrade]:
        rows = [s for s in self.shadows if s.resolved and (symbol is None or s.symbol == symbol)]
        return rows[-limit:] if limit else rows

    def pending_shadows(self, symbol: Optional[str] = None) -> list[ShadowTrade]:
        return [s for s in self.shadows if not s.resolved and (symbol is None or s.symbol == symbol)]
