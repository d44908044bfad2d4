"""JSON document persistence with forward-compatible default merging.

Every persisted document (trade memory, tuner config, breaker state) is
loaded by merging the file *under* the compiled-in defaults, so a file
written by an older build never lacks a field the current code reads.
"""
from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

log = logging.getLogger("heimdall.persistence")


def merge_defaults(defaults: Any, loaded: Any) -> Any:
    """Return a new tree with ``loaded`` layered over ``defaults``.

    Dicts merge key by key (recursively); any other loaded value replaces
    the default outright. Keys only present in ``loaded`` are kept. Neither
    input is mutated.
    """
    if isinstance(defaults, dict) and isinstance(loaded, dict):
        merged = {k: copy.deepcopy(v) for k, v in defaults.items()}
        for key, value in loaded.items():
            if key in defaults:
                merged[key] = merge_defaults(defaults[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged
    if loaded is None:
        return copy.deepcopy(defaults)
    if isinstance(defaults, dict) and not isinstance(loaded, dict):
        # Wrong shape on disk: the default wins
        return copy.deepcopy(defaults)
    return copy.deepcopy(loaded)


def load_document(path: Path, defaults: dict) -> dict:
    """Load a JSON document merged under ``defaults``; never raises."""
    if not path.exists():
        return copy.deepcopy(defaults)
    try:
        with open(path) as f:
            loaded = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("[PERSIST] %s unreadable, using defaults: %s", path.name, str(e)[:150])
        return copy.deepcopy(defaults)
    if not isinstance(loaded, dict):
        log.warning("[PERSIST] %s is not a JSON object, using defaults", path.name)
        return copy.deepcopy(defaults)
    return merge_defaults(defaults, loaded)


def save_document(path: Path, doc: dict) -> bool:
    """Rewrite ``path`` with the whole document. Returns False on I/O error."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(doc, f, indent=2, default=str)
        os.replace(tmp, path)
        return True
    except OSError as e:
        log.error("[PERSIST] Save error for %s: %s", path.name, e)
        return False
