"""Liveness watchdog: reconnect the feed when ticks stop completing.

Principle: a stalled feed is recoverable, a permanently dead one is not.
Each silent window triggers one reconnect; after ``max_reconnects``
consecutive silent windows the process gives up (``WatchdogError``) and
leaves the restart to the supervisor.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

log = logging.getLogger("heimdall.debug.health_monitor")


class WatchdogError(Exception):
    """No tick completed and reconnect attempts are exhausted."""


class HealthMonitor:
    def __init__(
        self,
        reconnect: Callable[[], None],
        timeout_seconds: float = 120.0,
        max_reconnects: int = 5,
        now: Optional[float] = None,
    ):
        self._reconnect = reconnect
        self._timeout = timeout_seconds
        self._max_reconnects = max_reconnects
        self._last_tick = time.time() if now is None else now
        self._reconnects = 0

    @property
    def last_tick(self) -> float:
        return self._last_tick

    @property
    def reconnects(self) -> int:
        return self._reconnects

    def tick_completed(self, now: Optional[float] = None) -> None:
        self._last_tick = time.time() if now is None else now
        if self._reconnects:
            log.info("[HEALTH] Ticks resumed after %d reconnect(s)", self._reconnects)
        self._reconnects = 0

    def check(self, now: Optional[float] = None) -> str:
        """Returns "ok" or "reconnected"; raises WatchdogError when out of attempts."""
        now = time.time() if now is None else now
        silent = now - self._last_tick
        if silent < self._timeout:
            return "ok"

        if self._reconnects >= self._max_reconnects:
            raise WatchdogError(
                f"no tick for {silent:.0f}s after {self._reconnects} reconnect attempts"
            )

        self._reconnects += 1
        log.warning("[HEALTH] No tick for %.0fs, reconnecting feed (%d/%d)",
                    silent, self._reconnects, self._max_reconnects)
        try:
            self._reconnect()
        except Exception as e:
            log.error("[HEALTH] Reconnect failed: %s", str(e)[:200])
        # Next window starts now
        self._last_tick = now
        return "reconnected"

    def status(self, now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        return {
            "last_tick_age": round(now - self._last_tick, 1),
            "reconnects": self._reconnects,
            "max_reconnects": self._max_reconnects,
        }
