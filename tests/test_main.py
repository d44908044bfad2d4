from __future__ import annotations

import asyncio
import json

import pytest

from heimdall.config import HeimdallConfig, TimeframeSpec
from heimdall.exchange.models import BookSample, Direction, PositionSide
from heimdall.exchange.orderbook import FeedError
from heimdall.execution.executor import PaperExecutor
from heimdall.main import HeimdallBot

from helpers import NOW

TICK = 5.0


class FakeFeed:
    """Book samples from a settable price; listed symbols raise FeedError."""

    def __init__(self, price=100.0, broken=()):
        self.price = price
        self.broken = set(broken)
        self.reconnects = 0

    def get_book_sample(self, symbol):
        if symbol in self.broken:
            raise FeedError(f"{symbol}: empty order book")
        return BookSample(symbol, self.price, 0.1, NOW)

    def reconnect(self):
        self.reconnects += 1


@pytest.fixture
def bot_cfg(tmp_path):
    return HeimdallConfig(
        data_dir=tmp_path,
        symbols=("BTC", "SOL"),
        timeframes=(TimeframeSpec("fast", 5, 12), TimeframeSpec("medium", 15, 12)),
        dry_run=True,
        advisory_enabled=False,
        execution_attempts=1,
        execution_retry_delay=0.0,
        base_cooldown_seconds=45.0,
        tune_every_n_trades=5,
    )


def test_broken_market_does_not_stop_the_others(bot_cfg):
    feed = FakeFeed(broken={"BTC"})
    bot = HeimdallBot(bot_cfg, feed=feed, executor=PaperExecutor())

    asyncio.run(bot.tick(NOW))

    assert len(bot.store.get("SOL").buffers["fast"].prices) == 1
    assert bot.store.get("SOL").last_price == 100.0
    assert len(bot.store.get("BTC").buffers["fast"].prices) == 0


def test_tick_writes_status_file(bot_cfg):
    bot = HeimdallBot(bot_cfg, feed=FakeFeed(), executor=PaperExecutor())

    asyncio.run(bot.tick(NOW))

    status = json.loads(bot_cfg.status_file.read_text())
    assert status["tick_count"] == 1
    assert set(status["markets"]) == {"BTC", "SOL"}
    assert status["mode"] == "paper"


def test_startup_seeds_default_cooldown(bot_cfg):
    bot = HeimdallBot(bot_cfg, feed=FakeFeed(), executor=PaperExecutor())
    assert bot.positions._tuner.cooldown_seconds("SOL") == 45.0


def test_staircase_uptrend_opens_paper_long(bot_cfg):
    # One 0.1% step every 30s: both timeframes trend up while the tape stays flat
    feed = FakeFeed()
    paper = PaperExecutor()
    bot = HeimdallBot(bot_cfg, feed=feed, executor=paper)

    for i in range(45):
        feed.price = 100.0 * (1 + 0.001 * (i // 6))
        asyncio.run(bot.tick(NOW + i * TICK))

    assert paper.orders
    assert paper.orders[0]["direction"] == "LONG"
    assert bot.store.get("SOL").position is PositionSide.LONG


def test_closed_trades_feed_the_tuner(bot_cfg):
    bot = HeimdallBot(bot_cfg, feed=FakeFeed(), executor=PaperExecutor())
    state = bot.store.get("SOL")
    state.last_price = 100.0
    positions = bot.positions

    for i in range(bot_cfg.tune_every_n_trades):
        t = NOW + i * 100
        asyncio.run(positions.open_position(state, Direction.LONG, 100.0, t))
        asyncio.run(positions.close_position(state, 99.0, "stop_loss", t + 10))

    bot._run_tuner(NOW + 1000)

    assert bot._tuner.data["tuneCount"] == 1
    assert any(e["category"] == "tuner" for e in bot.thinking.entries())


def test_dead_feed_does_not_count_as_liveness(bot_cfg):
    feed = FakeFeed(broken={"BTC", "SOL"})
    bot = HeimdallBot(bot_cfg, feed=feed, executor=PaperExecutor())
    started = bot.health.last_tick

    for i in range(100):
        asyncio.run(bot.tick(NOW + i * TICK))

    assert bot.health.last_tick == started
    assert bot.health.check(started + bot_cfg.watchdog_timeout_seconds + 1) == "reconnected"
    assert feed.reconnects == 1


def test_one_live_market_keeps_the_watchdog_fed(bot_cfg):
    bot = HeimdallBot(bot_cfg, feed=FakeFeed(broken={"BTC"}), executor=PaperExecutor())

    asyncio.run(bot.tick(NOW))

    assert bot.health.last_tick == NOW
