"""Daily safety breaker: last gate before an entry reaches execution.

Monitors:
- Daily P&L (percent, summed over closed trades) → pause for the rest of the UTC day
- Consecutive losses → pause until the next win or day roll
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from heimdall.persistence import load_document, save_document
from heimdall.tuning.tuner_config import utc_date

log = logging.getLogger("heimdall.risk.circuit_breaker")


@dataclass
class DailyStats:
    date: str = ""
    pnl_pct: float = 0.0
    trades: int = 0
    wins: int = 0
    losses: int = 0
    consecutive_losses: int = 0


@dataclass
class BreakerState:
    trading_allowed: bool = True
    reason: str = ""


class CircuitBreaker:
    """
    Level 1: N consecutive losses → no new entries until a win or the next UTC day
    Level 2: daily P&L <= -limit% → no new entries until the next UTC day
    """

    def __init__(
        self,
        daily_loss_limit_pct: float = 10.0,
        max_consecutive_losses: int = 4,
        state_file: Optional[Path] = None,
    ):
        self._daily_limit = daily_loss_limit_pct
        self._max_consec = max_consecutive_losses
        self._state_file = state_file
        self._stats = DailyStats()
        if self._state_file:
            self._load_state()

    @property
    def stats(self) -> DailyStats:
        return self._stats

    def _roll(self, now: float) -> None:
        today = utc_date(now)
        if self._stats.date != today:
            if self._stats.date:
                log.info("[CB] New UTC day %s: resetting daily stats (was %+.2f%% over %d trades)",
                         today, self._stats.pnl_pct, self._stats.trades)
            self._stats = DailyStats(date=today)
            self._save_state()

    def check(self, now: Optional[float] = None) -> BreakerState:
        now = time.time() if now is None else now
        self._roll(now)
        s = self._stats

        if s.pnl_pct <= -self._daily_limit:
            return BreakerState(False, f"daily loss {s.pnl_pct:.2f}% hit limit -{self._daily_limit}%")
        if s.consecutive_losses >= self._max_consec:
            return BreakerState(False, f"{s.consecutive_losses} consecutive losses")
        return BreakerState(True)

    def record_trade(self, profit_pct: float, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self._roll(now)
        s = self._stats
        s.trades += 1
        s.pnl_pct = round(s.pnl_pct + profit_pct, 4)
        if profit_pct > 0:
            s.wins += 1
            s.consecutive_losses = 0
        else:
            s.losses += 1
            s.consecutive_losses += 1

        log.info("[CB] Trade %+.2f%% | Daily: %+.2f%% (%dW/%dL) | Consec losses: %d",
                 profit_pct, s.pnl_pct, s.wins, s.losses, s.consecutive_losses)
        if s.pnl_pct <= -self._daily_limit:
            log.warning("[CB] Daily loss limit reached (%.2f%%): entries paused until UTC midnight",
                        s.pnl_pct)
        elif s.consecutive_losses == self._max_consec:
            log.warning("[CB] %d consecutive losses: entries paused", s.consecutive_losses)
        self._save_state()

    # ── Persistence ──

    def _save_state(self) -> None:
        if self._state_file:
            save_document(self._state_file, asdict(self._stats))

    def _load_state(self) -> None:
        data = load_document(self._state_file, asdict(DailyStats()))
        try:
            self._stats = DailyStats(
                date=str(data.get("date") or ""),
                pnl_pct=float(data.get("pnl_pct", 0.0)),
                trades=int(data.get("trades", 0)),
                wins=int(data.get("wins", 0)),
                losses=int(data.get("losses", 0)),
                consecutive_losses=int(data.get("consecutive_losses", 0)),
            )
        except (TypeError, ValueError) as e:
            log.warning("[CB] Unreadable breaker state, starting fresh: %s", e)
            self._stats = DailyStats()
            return
        log.info("[CB] State loaded: %s %+.2f%% consec=%d",
                 self._stats.date or "-", self._stats.pnl_pct, self._stats.consecutive_losses)
