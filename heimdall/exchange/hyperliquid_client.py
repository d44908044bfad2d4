"""Hyperliquid perpetual futures client: book feed and market orders.

Uses the official hyperliquid-python-sdk:
  - Info: public order-book snapshots (feed input)
  - Exchange: authenticated market open/close (execution)

Symbols on Hyperliquid use bare names (BTC, ETH, SOL). We accept the
USDT / -PERP suffixed forms as well and normalize internally.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import eth_account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils import constants

from heimdall.config import HeimdallConfig
from heimdall.exchange.models import BookSample
from heimdall.exchange.orderbook import FeedError, book_to_sample

log = logging.getLogger("heimdall.exchange")


class HyperliquidAPIError(Exception):
    """Raised when Hyperliquid rejects an authenticated request."""

    def __init__(self, msg: str, endpoint: str = ""):
        self.msg = msg
        self.endpoint = endpoint
        super().__init__(f"{msg} ({endpoint})")


def bare_symbol(symbol: str) -> str:
    """Normalize symbol: SOL-PERP → SOL, BTCUSDT → BTC, ETH → ETH."""
    s = symbol.strip().upper()
    for suffix in ("-PERP", "USDT"):
        if s.endswith(suffix):
            return s[: -len(suffix)]
    return s


class HyperliquidClient:
    """Thin client for Hyperliquid perpetual futures."""

    def __init__(self, cfg: HeimdallConfig):
        self._cfg = cfg
        self._base_url = (
            constants.TESTNET_API_URL if cfg.hl_testnet
            else constants.MAINNET_API_URL
        )
        self._info = Info(self._base_url, skip_ws=True)

        self._exchange: Optional[Exchange] = None
        if cfg.hl_secret_key:
            wallet = eth_account.Account.from_key(cfg.hl_secret_key)
            self._exchange = Exchange(
                wallet, self._base_url,
                account_address=cfg.hl_account_address or None,
            )

        self._sz_decimals: dict[str, int] = {}

        log.info("[HL] Client initialized | testnet=%s | auth=%s",
                 cfg.hl_testnet, bool(self._exchange))

    def reconnect(self) -> None:
        """Rebuild the public Info client (used by the liveness watchdog)."""
        self._info = Info(self._base_url, skip_ws=True)
        log.warning("[HL] Info client reconnected")

    # ── Feed ─────────────────────────────────────────────────────

    def get_book_sample(self, symbol: str) -> BookSample:
        """Order-book derived mid price + imbalance. Raises FeedError."""
        coin = bare_symbol(symbol)
        try:
            l2 = self._info.l2_snapshot(coin)
        except Exception as e:
            raise FeedError(f"{coin}: l2 snapshot failed: {str(e)[:150]}") from e

        levels = l2.get("levels") or [[], []]
        book_ms = l2.get("time")
        return book_to_sample(
            symbol,
            levels[0],
            levels[1] if len(levels) > 1 else [],
            depth=self._cfg.book_depth,
            max_spread_pct=self._cfg.feed_max_spread_pct,
            book_time=book_ms / 1000 if book_ms else None,
            max_age_seconds=self._cfg.feed_max_age_seconds,
            now=time.time(),
        )

    def ping(self) -> bool:
        try:
            mids = self._info.all_mids()
            return isinstance(mids, dict) and len(mids) > 0
        except Exception:
            return False

    # ── Trading (Authenticated) ──────────────────────────────────

    def get_sz_decimals(self, coin: str) -> int:
        if not self._sz_decimals:
            try:
                meta = self._info.meta()
                self._sz_decimals = {
                    a.get("name", ""): a.get("szDecimals", 2)
                    for a in meta.get("universe", [])
                }
            except Exception as e:
                log.debug("[HL] Meta fetch error: %s", str(e)[:100])
        return self._sz_decimals.get(coin, 2)

    def place_market_order(
        self, symbol: str, is_buy: bool, sz: float, slippage: float = 0.01,
    ) -> dict:
        """Place a market order (IoC with slippage)."""
        if not self._exchange:
            raise HyperliquidAPIError("No exchange client (no credentials)", "market_open")

        coin = bare_symbol(symbol)
        rounded_sz = round(sz, self.get_sz_decimals(coin))
        result = self._exchange.market_open(coin, is_buy, rounded_sz, None, slippage)
        log.info("[HL] Market %s %s sz=%.6f | result=%s",
                 "BUY" if is_buy else "SELL", coin, rounded_sz,
                 result.get("status", "?"))
        if result.get("status") != "ok":
            raise HyperliquidAPIError(str(result.get("response", result))[:200], "market_open")
        return result

    def close_position(self, symbol: str, slippage: float = 0.02) -> dict:
        """Close the whole position for a coin."""
        if not self._exchange:
            raise HyperliquidAPIError("No exchange client", "market_close")

        coin = bare_symbol(symbol)
        result = self._exchange.market_close(coin, slippage=slippage)
        log.info("[HL] Close %s | result=%s", coin, (result or {}).get("status", "?"))
        if not result or result.get("status") != "ok":
            raise HyperliquidAPIError(str(result)[:200], "market_close")
        return result
