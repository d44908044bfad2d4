"""HeimdallBot: adaptive order-book scalper for Hyperliquid perps.

Architecture:
  1. Tick loop      (every tick_seconds): per market: book sample → timeframe
                                            buffers → consensus → lifecycle
  2. Self-tuner     (between ticks)     : every N closed trades, rewrites TunerConfig
  3. Watchdog       (every 15s)         : reconnect the feed when ticks stall

Flow: Feed → MarketState → Multi-TF → Consensus → Gates (memory, advisory,
tuner, breaker) → Execute / Shadow → TradeMemory → SelfTuner → TunerConfig
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Optional

from heimdall.config import HeimdallConfig
from heimdall.debug.health_monitor import HealthMonitor
from heimdall.exchange.hyperliquid_client import HyperliquidClient
from heimdall.exchange.orderbook import FeedError
from heimdall.execution.executor import HyperliquidExecutor, OrderExecutor, PaperExecutor
from heimdall.execution.lifecycle import Advisor, PositionManager
from heimdall.intelligence.advisory import AdvisoryBrain, StaticAdvisor
from heimdall.intelligence.thinking import ThinkingLog
from heimdall.market_state import MarketState, MarketStateStore
from heimdall.memory.shadow import ShadowSimulator
from heimdall.memory.store import TradeMemory
from heimdall.persistence import save_document
from heimdall.risk.circuit_breaker import CircuitBreaker
from heimdall.strategy.consensus import build_consensus
from heimdall.strategy.multi_tf import MultiTimeframeAnalyzer
from heimdall.tuning.self_tuner import SelfTuner
from heimdall.tuning.tuner_config import TunerConfig

log = logging.getLogger("heimdall")

WATCHDOG_POLL_SECONDS = 15


class HeimdallBot:
    """Heimdall: multi-market trading loop with a self-tuning risk layer."""

    def __init__(
        self,
        cfg: Optional[HeimdallConfig] = None,
        feed: Optional[HyperliquidClient] = None,
        executor: Optional[OrderExecutor] = None,
        advisor: Optional[Advisor] = None,
    ):
        self._cfg = cfg or HeimdallConfig()
        self._running = False
        self._tick_count = 0
        self._start_time = 0.0

        # Exchange
        self._feed = feed or HyperliquidClient(self._cfg)
        if executor is None:
            executor = PaperExecutor() if self._cfg.dry_run else HyperliquidExecutor(self._feed)

        # Observability
        self._thinking = ThinkingLog()

        # Memory + tuning
        self._tuner = TunerConfig.load(self._cfg.tuner_file)
        self._tuner.data["defaultMarket"]["cooldownSeconds"] = self._cfg.base_cooldown_seconds
        self._memory = TradeMemory(self._cfg.memory_file)
        self._memory.load()
        if not self._memory.session_stats.get("startedAt"):
            self._memory.session_stats["startedAt"] = time.time()
        self._shadows = ShadowSimulator(self._memory)
        self._self_tuner = SelfTuner(self._tuner, self._memory, self._cfg.tune_every_n_trades)

        # Strategy
        self._store = MarketStateStore(self._cfg.symbols, self._cfg.timeframes)
        self._analyzer = MultiTimeframeAnalyzer(
            imbalance_threshold=self._cfg.imbalance_threshold,
            trend_base_pct=self._cfg.trend_base_pct,
        )

        # Risk + lifecycle
        self._breaker = CircuitBreaker(
            daily_loss_limit_pct=self._cfg.daily_loss_limit_pct,
            max_consecutive_losses=self._cfg.max_consecutive_losses,
            state_file=self._cfg.breaker_file,
        )
        if advisor is None:
            advisor = (
                AdvisoryBrain(self._cfg, self._thinking)
                if self._cfg.advisory_enabled else StaticAdvisor()
            )
        self._positions = PositionManager(
            self._cfg, self._tuner, self._memory, self._shadows,
            advisor, executor, self._breaker, self._thinking,
        )

        # Watchdog
        self._health = HealthMonitor(
            self._feed.reconnect,
            timeout_seconds=self._cfg.watchdog_timeout_seconds,
            max_reconnects=self._cfg.watchdog_max_reconnects,
        )

    @property
    def store(self) -> MarketStateStore:
        return self._store

    @property
    def positions(self) -> PositionManager:
        return self._positions

    @property
    def thinking(self) -> ThinkingLog:
        return self._thinking

    @property
    def health(self) -> HealthMonitor:
        return self._health

    async def run(self) -> None:
        """Start the tick and watchdog loops. Raises on fatal errors."""
        self._setup_logging()
        self._cfg.validate()
        self._running = True
        self._start_time = time.time()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._shutdown)

        mode = "PAPER" if self._cfg.dry_run else "LIVE"
        log.info("=" * 60)
        log.info("  HEIMDALL | ADAPTIVE ORDER-BOOK TRADER | %s MODE", mode)
        log.info("  Markets: %s | Tick: %.0fs | Leverage: %dx | Notional: $%.0f",
                 ", ".join(self._cfg.symbols), self._cfg.tick_seconds,
                 self._cfg.leverage, self._cfg.base_notional_usd)
        log.info("  Timeframes: %s",
                 ", ".join(f"{tf.label}={tf.interval_seconds:.0f}s x{tf.points_needed}"
                           for tf in self._cfg.timeframes))
        log.info("  Advisory: %s | Tuner every %d trades | Memory: %d trades, %d shadows",
                 "ON" if self._cfg.advisory_enabled else "OFF",
                 self._cfg.tune_every_n_trades,
                 len(self._memory.trades), len(self._memory.shadows))
        log.info("=" * 60)

        self._write_status()

        tasks = [
            asyncio.create_task(self._trading_loop(), name="trading"),
            asyncio.create_task(self._watchdog_loop(), name="watchdog"),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            log.info("Heimdall tasks cancelled, shutting down")
        finally:
            self._running = False
            for task in tasks:
                task.cancel()
            self._memory.save()
            self._tuner.save()
            self._write_status()
            log.info("Heimdall stopped.")

    def _shutdown(self) -> None:
        self._running = False
        log.info("Shutdown signal received")
        for task in asyncio.all_tasks():
            if task.get_name() in ("trading", "watchdog"):
                task.cancel()

    # ── Tick ──

    async def _trading_loop(self) -> None:
        while self._running:
            started = time.time()
            await self.tick(started)
            elapsed = time.time() - started
            await asyncio.sleep(max(0.0, self._cfg.tick_seconds - elapsed))

    async def tick(self, now: Optional[float] = None) -> None:
        """One pass over every market, then the self-tuner, then status."""
        now = time.time() if now is None else now
        sampled = 0
        for state in self._store.all():
            try:
                if await self._process_market(state, now):
                    sampled += 1
            except Exception as e:
                log.error("[TICK] %s failed: %s", state.symbol, str(e)[:200], exc_info=True)
        self._tick_count += 1
        # A tick with no book sample anywhere does not count as liveness
        if sampled:
            self._health.tick_completed(now)
        self._run_tuner(now)
        self._write_status()

    async def _process_market(self, state: MarketState, now: float) -> bool:
        """Returns True when a book sample arrived for this market."""
        try:
            sample = await asyncio.wait_for(
                asyncio.to_thread(self._feed.get_book_sample, state.symbol),
                timeout=self._cfg.feed_timeout_seconds,
            )
        except FeedError as e:
            log.info("[FEED] %s skipped: %s", state.symbol, e)
            return False
        except asyncio.TimeoutError:
            log.warning("[FEED] %s timed out after %.0fs", state.symbol, self._cfg.feed_timeout_seconds)
            return False

        self._analyzer.ingest(state, sample.price, sample.imbalance, now)
        signal_ = build_consensus(self._analyzer.analyze(state), self._cfg.max_volatility_pct)
        if signal_.valid:
            log.debug("[SIGNAL] %s %s conf=%.2f | %s", state.symbol,
                      signal_.direction.value, signal_.confidence, signal_.reason)
        await self._positions.on_tick(state, signal_, now)
        return True

    def _run_tuner(self, now: float) -> None:
        for trade in self._positions.drain_closed():
            for entry in self._self_tuner.on_trade_closed(now, trade):
                self._thinking.think(
                    f"Tuner {entry['action']}"
                    f"{' [' + entry['market'] + ']' if entry.get('market') else ''}: "
                    f"{entry['before']} -> {entry['after']} ({entry['reason']})",
                    "tuner", now,
                )

    # ── Watchdog ──

    async def _watchdog_loop(self) -> None:
        while self._running:
            await asyncio.sleep(WATCHDOG_POLL_SECONDS)
            # WatchdogError propagates and ends the process
            if self._health.check() == "reconnected":
                self._thinking.think("Feed stalled, reconnected", "error")

    # ── Status ──

    def status(self) -> dict:
        return {
            "mode": "paper" if self._cfg.dry_run else "live",
            "running": self._running,
            "uptime": round(time.time() - self._start_time, 1) if self._start_time else 0,
            "tick_count": self._tick_count,
            "last_updated": time.time(),
            "markets": {s.symbol: s.to_dict() for s in self._store.all()},
            "open_positions": self._store.open_count(),
            "tuner": self._tuner.summary(),
            "breaker": vars(self._breaker.stats),
            "health": self._health.status(),
            "thinking": self._thinking.entries(),
            "tuning_log": list(self._tuner.tuning_log),
            "session": self._memory.session_stats,
        }

    def _write_status(self) -> None:
        save_document(self._cfg.status_file, self.status())

    def _setup_logging(self) -> None:
        level = getattr(logging, self._cfg.log_level.upper(), logging.INFO)
        root = logging.getLogger("heimdall")
        root.setLevel(level)
        if root.handlers:
            return

        fmt = logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(level)
        ch.setFormatter(fmt)
        root.addHandler(ch)

        fh = logging.FileHandler(self._cfg.data_dir / "heimdall.log")
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

        for lib in ("urllib3", "requests", "websocket"):
            logging.getLogger(lib).setLevel(logging.WARNING)
