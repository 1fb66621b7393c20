"""Time-related helpers for chatengine."""

from __future__ import annotations

import datetime
import time
from collections.abc import Callable

Clock = Callable[[], int]
"""Callable returning the current time in integer milliseconds."""


def utc_now_iso() -> str:
    """Return current UTC time in ISO format without sub-second precision."""
    return datetime.datetime.now(datetime.UTC).isoformat(timespec="seconds")


def now_ms() -> int:
    """Return wall-clock milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def format_ms(value: int) -> str:
    """Render an epoch-milliseconds timestamp as local ``YYYY-MM-DD HH:MM:SS``."""
    try:
        moment = datetime.datetime.fromtimestamp(value / 1000, datetime.UTC)
    except (OverflowError, OSError, ValueError):
        return str(value)
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")
