"""Order execution collaborators with a bounded retry loop.

``PaperExecutor`` simulates fills for dry-run mode; ``HyperliquidExecutor``
sends market orders. Both are driven through ``execute_with_retry`` which
never raises: callers get an ``ExecutionResult`` and abort the open/close
on failure without touching position state.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Optional, Protocol

from heimdall.exchange.hyperliquid_client import HyperliquidClient
from heimdall.exchange.models import Direction, ExecutionResult, OrderRequest

log = logging.getLogger("heimdall.execution")


class ExecutionError(Exception):
    """An order could not be placed."""


class OrderExecutor(Protocol):
    def execute(self, request: OrderRequest) -> str:
        """Place the order and return a transaction id, or raise."""


class PaperExecutor:
    """Dry-run executor: every order fills instantly at the request price."""

    def __init__(self):
        self.orders: list[dict] = []

    def execute(self, request: OrderRequest) -> str:
        tx_id = f"paper_{uuid.uuid4().hex[:12]}"
        self.orders.append({**request.to_dict(), "tx_id": tx_id, "ts": time.time()})
        log.info("[PAPER] %s %s $%.2f%s -> %s",
                 request.direction.value, request.symbol, request.notional_usd,
                 " (close)" if request.reduce_only else "", tx_id)
        return tx_id


class HyperliquidExecutor:
    """Live executor: market orders sized from notional / price."""

    def __init__(self, client: HyperliquidClient):
        self._client = client

    def execute(self, request: OrderRequest) -> str:
        if request.reduce_only:
            result = self._client.close_position(request.symbol)
        else:
            if request.price <= 0:
                raise ExecutionError(f"{request.symbol}: no reference price for sizing")
            sz = request.notional_usd / request.price
            result = self._client.place_market_order(
                request.symbol, request.direction is Direction.LONG, sz,
            )
        return _extract_tx_id(result)


def _extract_tx_id(result: dict) -> str:
    try:
        statuses = result["response"]["data"]["statuses"]
        for st in statuses:
            if "filled" in st:
                return str(st["filled"].get("oid", ""))
            if "error" in st:
                raise ExecutionError(st["error"])
    except (KeyError, TypeError):
        pass
    return f"hl_{uuid.uuid4().hex[:12]}"


def execute_with_retry(
    executor: OrderExecutor,
    request: OrderRequest,
    attempts: int = 2,
    delay_seconds: float = 2.0,
    sleep: Optional[Callable[[float], None]] = None,
) -> ExecutionResult:
    """Run ``executor.execute`` up to ``attempts`` times with a fixed delay."""
    sleep = sleep or time.sleep
    attempts = max(1, attempts)
    last_error = ""
    for attempt in range(1, attempts + 1):
        try:
            tx_id = executor.execute(request)
            return ExecutionResult(ok=True, tx_id=tx_id, attempts=attempt)
        except Exception as e:
            last_error = str(e)[:200]
            log.warning("[EXEC] %s %s attempt %d/%d failed: %s",
                        request.direction.value, request.symbol,
                        attempt, attempts, last_error)
            if attempt < attempts:
                sleep(delay_seconds)
    return ExecutionResult(ok=False, error=last_error, attempts=attempts)
