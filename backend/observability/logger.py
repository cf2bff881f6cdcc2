"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Level threshold is process-wide, set once at startup
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable

from constants import DEFAULT_LOG_LEVEL, LOG_LEVELS


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_threshold: int = LOG_LEVELS.index(DEFAULT_LOG_LEVEL)


def set_log_level(level: str) -> None:
    """
    Set the minimum level that reaches the sink.

    Accepts the usual spellings ("INFO", "warning", ...). Unknown levels
    raise ValueError so misconfiguration surfaces at startup.
    """
    global _threshold  # pylint: disable=global-statement
    _threshold = _level_index(level)


def _level_index(level: str) -> int:
    normalized = level.strip().lower()
    if normalized == "warning":
        normalized = "warn"
    if normalized not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level!r}")
    return LOG_LEVELS.index(normalized)


def log_event(event: Mapping[str, Any], *, level: str = "info") -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies the event dict (always with an "event_type").
    "level" and "ts_ms" are filled in when the caller did not set them.

    Never raises: an unknown level is logged as info, and an event that
    cannot be serialized is replaced by a LOGGER_SERIALIZATION_ERROR line.
    """
    try:
        index = _level_index(level)
    except ValueError:
        index = LOG_LEVELS.index("info")
    if index < _threshold:
        return

    record: dict[str, Any] = dict(event)
    record.setdefault("level", LOG_LEVELS[index])
    record.setdefault("ts_ms", time.time_ns() // 1_000_000)

    try:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the runtime
        fallback: dict[str, Any] = {
            "ts_ms": record.get("ts_ms"),
            "level": "error",
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
