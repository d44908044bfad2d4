"""Thinking log: newest-first ring of human-readable decision notes."""
from __future__ import annotations

import logging
import time
from collections import deque
from typing import Optional

log = logging.getLogger("heimdall.thinking")

MAX_ENTRIES = 100


class ThinkingLog:
    """Capped ring of ``{time, message, category}`` entries, exposed read-only."""

    def __init__(self, maxlen: int = MAX_ENTRIES):
        self._entries: deque[dict] = deque(maxlen=maxlen)

    def think(self, message: str, category: str = "general", now: Optional[float] = None) -> None:
        self._entries.appendleft({
            "time": time.time() if now is None else now,
            "message": message,
            "category": category,
        })
        if category == "error":
            log.warning("[THINK] %s", message)
        else:
            log.info("[THINK] %s", message)

    def entries(self) -> list[dict]:
        return [dict(e) for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
