"""Self-tuner: rewrites TunerConfig from recent trade and shadow outcomes.

Runs synchronously between ticks, once every N newly closed trades.
Every sub-pass is a no-op unless its trigger fires; each change it makes
appends exactly one entry to the tuning audit log.

  stop loss      widen on frequent stop-outs / shadows outperforming, tighten on rare ones
  take profit    lower when wins fall short, raise when trailing wins run, keep TP >= 1.5x SL
  patterns       disable losers for 24h (then retest), force one-sided overrides
  timing         block 4h UTC blocks that keep losing
  streaks        caution mode on drawdown / poor win rate, re-entry cooldown multipliers
  markets        pause weak markets 6h, confidence multiplier by win-rate tier
  volatility     widen high-volatility stop multiplier when those trades underperform
  sizing         cut size after a loss streak, restore on the next win
  cooldown       per-market base cooldown from win rate
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from heimdall.exchange.models import Direction
from heimdall.memory.patterns import PatternStats, compute_pattern_stats
from heimdall.memory.records import TradeRecord
from heimdall.memory.store import TradeMemory
from heimdall.tuning.tuner_config import TunerConfig, utc_date, utc_hour

log = logging.getLogger("heimdall.tuning.self_tuner")

# ── Stop loss ──
SL_LOOKBACK = 30
SL_WIDEN_RATE = 0.60
SL_WIDEN_MIN_SAMPLES = 10
SL_WIDEN_STEP = 0.2
SL_TIGHTEN_RATE = 0.30
SL_TIGHTEN_MIN_SAMPLES = 15
SL_TIGHTEN_STEP = 0.1
SL_SHADOW_STEP = 0.3
SL_SHADOW_GAP = 15.0           # win-rate points
SL_SHADOW_MIN_SAMPLES = 10
SL_CAP = 4.0
SL_FLOOR = 0.5

# ── Take profit ──
TP_MIN_WINS = 5
TP_MIN_TRAILING_WINS = 3
TP_STEP = 0.2
TP_CAP = 5.0
TP_FLOOR = 0.5
TP_TO_SL_RATIO = 1.5

# ── Patterns ──
PATTERN_MIN_SAMPLES = 15
PATTERN_MIN_WIN_RATE = 0.45
PATTERN_DISABLE_SECONDS = 24 * 3600
OVERRIDE_STRONG_RATE = 0.70
OVERRIDE_WEAK_RATE = 0.40
OVERRIDE_MIN_SAMPLES = 5

# ── Timing ──
TIMING_LOOKBACK = 100
TIMING_BLOCK_HOURS = 4
TIMING_MIN_SAMPLES = 5
TIMING_MIN_WIN_RATE = 0.35

# ── Streaks / caution ──
STREAK_LOOKBACK = 30
STREAK_MIN_SAMPLES = 10
CAUTION_ENTER_WIN_RATE = 0.35
CAUTION_EXIT_WIN_RATE = 0.50
REENTRY_WINDOW_SECONDS = 180
REENTRY_MIN_SAMPLES = 5
REENTRY_BAD_RATE = 0.40
REENTRY_GOOD_RATE = 0.60
REENTRY_STEP = 0.25
REENTRY_MULT_CAP = 3.0

# ── Market selection ──
MARKET_LOOKBACK = 50
MARKET_MIN_SAMPLES = 10
MARKET_PAUSE_WIN_RATE = 0.35
MARKET_PAUSE_SECONDS = 6 * 3600
CONFIDENCE_TIERS = ((0.60, 1.3), (0.40, 1.0))
CONFIDENCE_FLOOR_MULT = 0.7

# ── Volatility ──
VOL_LOOKBACK = 50
VOL_MIN_SAMPLES = 5
VOL_UNDERPERFORM_GAP = 0.15
VOL_STEP = 0.1
VOL_MULT_CAP = 2.0

# ── Cooldown ──
COOLDOWN_LOOKBACK = 20
COOLDOWN_MIN_SAMPLES = 10
COOLDOWN_BAD_RATE = 0.40
COOLDOWN_GOOD_RATE = 0.60
COOLDOWN_UP_STEP = 30.0
COOLDOWN_DOWN_STEP = 15.0


def _win_rate(rows) -> float:
    rows = list(rows)
    if not rows:
        return 0.0
    return sum(1 for r in rows if r.is_win) / len(rows)


class SelfTuner:
    """Batch controller over TunerConfig, fed by TradeMemory."""

    def __init__(self, config: TunerConfig, memory: TradeMemory, every_n_trades: int = 5):
        self._cfg = config
        self._memory = memory
        self._every = max(1, every_n_trades)
        self._since_last = 0

    @property
    def trades_until_next_run(self) -> int:
        return self._every - self._since_last

    def on_trade_closed(
        self, now: Optional[float] = None, trade: Optional[TradeRecord] = None,
    ) -> list[dict]:
        """Count a closed trade; run a full pass every N. Returns audit entries.

        The loss-streak counter behind position sizing moves on every trade,
        so a cut or restore never waits for the next full pass.
        """
        now = time.time() if now is None else now
        entries: list[dict] = []
        if trade is not None and not trade.simulated:
            self.record_outcome(trade)
            entries += self.tune_position_sizing(now)
            if entries:
                self._cfg.save()
        self._since_last += 1
        if self._since_last < self._every:
            return entries
        self._since_last = 0
        return entries + self.run(now)

    def record_outcome(self, trade: TradeRecord) -> int:
        sizing = self._cfg.sizing
        if trade.is_win:
            sizing["consecutiveLosses"] = 0
        else:
            sizing["consecutiveLosses"] = int(sizing.get("consecutiveLosses", 0)) + 1
        return sizing["consecutiveLosses"]

    def run(self, now: Optional[float] = None) -> list[dict]:
        now = time.time() if now is None else now
        symbols = sorted(
            {t.symbol for t in self._memory.recent_trades()} | set(self._cfg.data["markets"])
        )
        entries: list[dict] = []
        for sym in symbols:
            entries += self.tune_stop_loss(sym, now)
            entries += self.tune_take_profit(sym, now)
        entries += self.tune_patterns(now)
        entries += self.tune_timing(now)
        entries += self.tune_streaks(now)
        entries += self.tune_reentry_cooldowns(now)
        for sym in symbols:
            entries += self.tune_market_selection(sym, now)
        entries += self.tune_volatility(now)
        entries += self.tune_position_sizing(now)
        for sym in symbols:
            entries += self.tune_cooldown(sym, now)

        self._cfg.data["tuneCount"] = self._cfg.data.get("tuneCount", 0) + 1
        self._cfg.save()
        log.info("[TUNER] Pass #%d complete: %d adjustments",
                 self._cfg.data["tuneCount"], len(entries))
        return entries

    def _log(self, action: str, before, after, reason: str, now: float, market: Optional[str] = None) -> dict:
        return self._cfg.log_action(action, before, after, reason, market=market, now=now)

    # ── Stop loss ──

    def tune_stop_loss(self, symbol: str, now: float) -> list[dict]:
        trades = self._memory.recent_trades(symbol, SL_LOOKBACK)
        m = self._cfg.market(symbol)
        before = float(m["stopLoss"])
        n = len(trades)
        hit_rate = sum(1 for t in trades if t.exit_reason == "stop_loss") / n if n else 0.0

        action, after, reason = None, before, ""
        if n >= SL_WIDEN_MIN_SAMPLES and hit_rate > SL_WIDEN_RATE:
            action, after = "widen_stop_loss", min(SL_CAP, before + SL_WIDEN_STEP)
            reason = f"stop-hit rate {hit_rate:.0%} over {n} trades"
        else:
            shadows = self._memory.resolved_shadows(symbol, SL_LOOKBACK)
            if len(shadows) >= SL_SHADOW_MIN_SAMPLES and n >= SL_WIDEN_MIN_SAMPLES:
                gap = (_win_rate(shadows) - _win_rate(trades)) * 100
                if gap > SL_SHADOW_GAP:
                    action, after = "shadow_widen_stop_loss", min(SL_CAP, before + SL_SHADOW_STEP)
                    reason = f"shadow win rate beats real by {gap:.0f} pts"
            if action is None and n >= SL_TIGHTEN_MIN_SAMPLES and hit_rate < SL_TIGHTEN_RATE:
                action, after = "tighten_stop_loss", max(SL_FLOOR, before - SL_TIGHTEN_STEP)
                reason = f"stop-hit rate {hit_rate:.0%} over {n} trades"

        after = round(after, 2)
        if action is None or after == before:
            return []
        m["stopLoss"] = after
        return [self._log(action, before, after, reason, now, symbol)]

    # ── Take profit ──

    def tune_take_profit(self, symbol: str, now: float) -> list[dict]:
        trades = self._memory.recent_trades(symbol, SL_LOOKBACK)
        wins = [t for t in trades if t.is_win]
        m = self._cfg.market(symbol)
        entries: list[dict] = []

        before = float(m["takeProfit"])
        if len(wins) >= TP_MIN_WINS:
            avg_win = sum(t.profit_percent for t in wins) / len(wins)
            trailing = [t.profit_percent for t in wins if t.exit_reason == "trailing_tp"]
            avg_trailing = sum(trailing) / len(trailing) if trailing else 0.0
            if avg_win < before / 2:
                after = round(max(TP_FLOOR, before - TP_STEP), 2)
                if after != before:
                    m["takeProfit"] = after
                    entries.append(self._log(
                        "lower_take_profit", before, after,
                        f"avg win {avg_win:.2f}% < half of target", now, symbol,
                    ))
            elif len(trailing) >= TP_MIN_TRAILING_WINS and avg_trailing > before * 1.5:
                after = round(min(TP_CAP, before + TP_STEP), 2)
                if after != before:
                    m["takeProfit"] = after
                    entries.append(self._log(
                        "raise_take_profit", before, after,
                        f"trailing wins avg {avg_trailing:.2f}% > 1.5x target", now, symbol,
                    ))

        current = float(m["takeProfit"])
        floor = round(float(m["stopLoss"]) * TP_TO_SL_RATIO, 2)
        if current < floor:
            m["takeProfit"] = floor
            entries.append(self._log(
                "enforce_tp_ratio", current, floor,
                f"target must be >= {TP_TO_SL_RATIO}x stop {m['stopLoss']}", now, symbol,
            ))
        return entries

    # ── Patterns ──

    def tune_patterns(self, now: float) -> list[dict]:
        patterns = self._cfg.data["patterns"]
        disabled: dict = patterns["disabled"]
        overrides: dict = patterns["directionOverrides"]
        retest: dict = patterns["retestSince"]
        entries: list[dict] = []

        for key, expiry in list(disabled.items()):
            if now >= float(expiry):
                del disabled[key]
                retest[key] = now
                entries.append(self._log("retest_pattern", key, "enabled",
                                         "disable window expired, judging fresh outcomes only", now))

        for key, ps in sorted(self._memory.pattern_stats.items()):
            if key in retest:
                ps = self._pattern_stats_since(key, float(retest[key]), now)
                if ps is None:
                    continue
            if (
                key not in disabled
                and ps.samples >= PATTERN_MIN_SAMPLES
                and ps.win_rate < PATTERN_MIN_WIN_RATE
            ):
                disabled[key] = now + PATTERN_DISABLE_SECONDS
                entries.append(self._log(
                    "disable_pattern", key, "disabled_24h",
                    f"win rate {ps.win_rate:.0%} over {ps.samples} samples", now,
                ))

            wanted: Optional[str] = None
            for direction in (Direction.LONG, Direction.SHORT):
                strong, weak = ps.side(direction), ps.side(direction.opposite)
                if (
                    strong.samples >= OVERRIDE_MIN_SAMPLES
                    and strong.raw_win_rate > OVERRIDE_STRONG_RATE
                    and weak.samples > 0
                    and weak.raw_win_rate < OVERRIDE_WEAK_RATE
                ):
                    wanted = direction.value
                    break
            current = overrides.get(key)
            if wanted and wanted != current:
                overrides[key] = wanted
                entries.append(self._log(
                    "direction_override", {key: current}, {key: wanted},
                    f"{wanted} side dominates this pattern", now,
                ))
            elif current and not wanted:
                del overrides[key]
                entries.append(self._log(
                    "clear_direction_override", {key: current}, {key: None},
                    "one-sided edge no longer holds", now,
                ))
        return entries

    def _pattern_stats_since(self, key: str, since: float, now: float) -> Optional[PatternStats]:
        rows = [
            r for r in (*self._memory.trades, *self._memory.resolved_shadows())
            if r.pattern == key and r.outcome_time >= since
        ]
        return compute_pattern_stats(rows, now).get(key)

    # ── Timing ──

    def tune_timing(self, now: float) -> list[dict]:
        trades = self._memory.recent_trades(None, TIMING_LOOKBACK)
        blocks: dict[int, list[TradeRecord]] = {}
        for t in trades:
            block = utc_hour(t.entry_time or t.timestamp) // TIMING_BLOCK_HOURS
            blocks.setdefault(block, []).append(t)

        blocked: list[int] = []
        weak_blocks: list[str] = []
        for block, rows in sorted(blocks.items()):
            if len(rows) >= TIMING_MIN_SAMPLES and _win_rate(rows) < TIMING_MIN_WIN_RATE:
                start = block * TIMING_BLOCK_HOURS
                blocked.extend(range(start, start + TIMING_BLOCK_HOURS))
                weak_blocks.append(f"{start:02d}-{start + TIMING_BLOCK_HOURS:02d}h {_win_rate(rows):.0%}")

        timing = self._cfg.data["timing"]
        before = sorted(timing["blockedHours"])
        if blocked == before:
            return []
        timing["blockedHours"] = blocked
        return [self._log("update_blocked_hours", before, blocked,
                          ", ".join(weak_blocks) or "no weak blocks", now)]

    # ── Streaks / caution ──

    def tune_streaks(self, now: float) -> list[dict]:
        streaks = self._cfg.streaks
        today = utc_date(now)
        daily_pnl = sum(
            t.profit_percent for t in self._memory.recent_trades() if utc_date(t.timestamp) == today
        )
        recent = self._memory.recent_trades(None, STREAK_LOOKBACK)
        win_rate = _win_rate(recent) if len(recent) >= STREAK_MIN_SAMPLES else None

        streaks["dailyPnl"] = round(daily_pnl, 4)
        streaks["dailyDate"] = today
        streaks["recentWinRate"] = round(win_rate, 4) if win_rate is not None else None

        limit = float(streaks["dailyLossLimit"])
        daily_breach = daily_pnl < -limit
        if not streaks["cautionMode"]:
            if daily_breach or (win_rate is not None and win_rate < CAUTION_ENTER_WIN_RATE):
                streaks["cautionMode"] = True
                why = (f"daily P&L {daily_pnl:.2f}% below -{limit}%" if daily_breach
                       else f"win rate {win_rate:.0%} over {len(recent)} trades")
                return [self._log("enter_caution_mode", False, True, why, now)]
        elif not daily_breach and win_rate is not None and win_rate >= CAUTION_EXIT_WIN_RATE:
            streaks["cautionMode"] = False
            return [self._log("exit_caution_mode", True, False,
                              f"win rate recovered to {win_rate:.0%}", now)]
        return []

    def tune_reentry_cooldowns(self, now: float) -> list[dict]:
        """Re-entries within 3 minutes of a close: are they worth it?"""
        trades = sorted(self._memory.recent_trades(None, TIMING_LOOKBACK), key=lambda t: t.timestamp)
        after: dict[str, list[TradeRecord]] = {"LOSS": [], "WIN": []}
        last_close: dict[str, TradeRecord] = {}
        for t in sorted(trades, key=lambda r: r.entry_time or r.timestamp):
            prior = last_close.get(t.symbol)
            entered = t.entry_time or t.timestamp
            if prior and 0 <= entered - prior.timestamp <= REENTRY_WINDOW_SECONDS:
                after[prior.result].append(t)
            last_close[t.symbol] = t

        streaks = self._cfg.streaks
        entries: list[dict] = []
        for result, key in (("LOSS", "postLossCooldownMultiplier"), ("WIN", "postWinCooldownMultiplier")):
            rows = after[result]
            if len(rows) < REENTRY_MIN_SAMPLES:
                continue
            wr = _win_rate(rows)
            before = float(streaks[key])
            if wr < REENTRY_BAD_RATE:
                new = round(min(REENTRY_MULT_CAP, before + REENTRY_STEP), 2)
                action = f"raise_{key}"
            elif wr > REENTRY_GOOD_RATE:
                new = round(max(1.0, before - REENTRY_STEP), 2)
                action = f"lower_{key}"
            else:
                continue
            if new != before:
                streaks[key] = new
                entries.append(self._log(
                    action, before, new,
                    f"re-entries after {result.lower()} win {wr:.0%} ({len(rows)} samples)", now,
                ))
        return entries

    # ── Market selection ──

    def tune_market_selection(self, symbol: str, now: float) -> list[dict]:
        m = self._cfg.market(symbol)
        entries: list[dict] = []

        paused_until = m.get("pausedUntil")
        if not m.get("enabled", True) and paused_until is not None and now >= float(paused_until):
            m["enabled"] = True
            m["pausedUntil"] = None
            m["retestSince"] = now
            entries.append(self._log("unpause_market", False, True, "pause expired", now, symbol))

        retest_since = float(m.get("retestSince") or 0)
        trades = [
            t for t in self._memory.recent_trades(symbol, MARKET_LOOKBACK)
            if t.timestamp >= retest_since
        ]
        if len(trades) < MARKET_MIN_SAMPLES:
            return entries
        wr = _win_rate(trades)

        if m.get("enabled", True) and wr < MARKET_PAUSE_WIN_RATE:
            m["enabled"] = False
            m["pausedUntil"] = now + MARKET_PAUSE_SECONDS
            entries.append(self._log(
                "pause_market", True, False,
                f"win rate {wr:.0%} over {len(trades)} trades, paused 6h", now, symbol,
            ))

        mult = CONFIDENCE_FLOOR_MULT
        for threshold, value in CONFIDENCE_TIERS:
            if wr >= threshold:
                mult = value
                break
        before = float(m.get("confidenceMultiplier", 1.0))
        if mult != before:
            m["confidenceMultiplier"] = mult
            entries.append(self._log(
                "set_confidence_multiplier", before, mult, f"win rate {wr:.0%}", now, symbol,
            ))
        return entries

    # ── Volatility ──

    def tune_volatility(self, now: float) -> list[dict]:
        vol = self._cfg.volatility
        wait = float(vol["spikeWaitSeconds"])
        for sym, ts in list(vol["lastSpike"].items()):
            if now - float(ts) >= wait:
                del vol["lastSpike"][sym]

        trades = self._memory.recent_trades(None, VOL_LOOKBACK)
        high = [t for t in trades if self._cfg.volatility_regime(t.volatility) == "high"]
        rest = [t for t in trades if self._cfg.volatility_regime(t.volatility) != "high"]
        if len(high) < VOL_MIN_SAMPLES or len(rest) < VOL_MIN_SAMPLES:
            return []
        high_wr, rest_wr = _win_rate(high), _win_rate(rest)
        if high_wr >= rest_wr - VOL_UNDERPERFORM_GAP:
            return []
        before = float(vol["highVolStopMultiplier"])
        after = round(min(VOL_MULT_CAP, before + VOL_STEP), 2)
        if after == before:
            return []
        vol["highVolStopMultiplier"] = after
        return [self._log(
            "widen_high_vol_stop", before, after,
            f"high-vol win rate {high_wr:.0%} vs {rest_wr:.0%}", now,
        )]

    # ── Position sizing ──

    def tune_position_sizing(self, now: float) -> list[dict]:
        sizing = self._cfg.sizing
        trigger = int(sizing["lossStreakTrigger"])
        streak = int(sizing.get("consecutiveLosses", 0))
        before = float(sizing["multiplier"])

        if streak >= trigger and before >= 1.0:
            after = float(sizing["reducedFactor"])
            sizing["multiplier"] = after
            return [self._log("reduce_position_size", before, after,
                              f"{streak} consecutive losses", now)]
        if streak == 0 and before < 1.0:
            sizing["multiplier"] = 1.0
            return [self._log("restore_position_size", before, 1.0, "win after loss streak", now)]
        return []

    # ── Cooldown ──

    def tune_cooldown(self, symbol: str, now: float) -> list[dict]:
        trades = self._memory.recent_trades(symbol, COOLDOWN_LOOKBACK)
        if len(trades) < COOLDOWN_MIN_SAMPLES:
            return []
        m = self._cfg.market(symbol)
        bounds = self._cfg.data["cooldown"]
        before = float(m["cooldownSeconds"])
        wr = _win_rate(trades)
        if wr < COOLDOWN_BAD_RATE:
            after, action = min(float(bounds["maxSeconds"]), before + COOLDOWN_UP_STEP), "increase_cooldown"
        elif wr > COOLDOWN_GOOD_RATE:
            after, action = max(float(bounds["minSeconds"]), before - COOLDOWN_DOWN_STEP), "decrease_cooldown"
        else:
            return []
        if after == before:
            return []
        m["cooldownSeconds"] = after
        return [self._log(action, before, after, f"win rate {wr:.0%}", now, symbol)]
