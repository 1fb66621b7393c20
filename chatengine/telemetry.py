"""Structured events describing assistant traffic and session recovery.

An event is an ordinary record on the ``chatengine`` logger whose ``json``
extra carries ``event``, ``payload`` and ``size_bytes``, plus ``duration_ms``
for timed events. Payload keys naming credentials are masked before the
record is built.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from .log import logger
from .util.json import JsonSanitizerLimits, make_json_safe

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "cookie",
        "password",
        "secret",
        "token",
        "x_api_key",
    }
)

REDACTED = "[REDACTED]"

# Summary events stay small; full bodies go through log_debug_payload.
EVENT_LIMITS = JsonSanitizerLimits(max_depth=6, max_items=50, max_string_length=1000)


def _is_sensitive(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    return key.strip().lower().replace("-", "_") in SENSITIVE_KEYS


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_sensitive(key) else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def sanitize(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a deep copy of *data* with credential values masked."""
    return _redact(dict(data))


def _encode(
    payload: Any, limits: JsonSanitizerLimits | None = None
) -> tuple[Any, int]:
    safe = make_json_safe(payload, limits=limits)
    return safe, len(json.dumps(safe, ensure_ascii=False).encode("utf-8"))


def log_event(
    event: str,
    payload: Mapping[str, Any] | None = None,
    *,
    start_time: float | None = None,
    level: int = logging.INFO,
) -> None:
    """Emit the structured event *event*.

    Parameters
    ----------
    event:
        Upper-case event name such as ``"RECONCILE"``.
    payload:
        Event details; credential-like keys are masked.
    start_time:
        :func:`time.monotonic` reading taken when the timed operation began.
    level:
        Level of the emitted record.
    """
    if not logger.isEnabledFor(level):
        return
    if payload:
        safe, size = _encode(sanitize(payload), EVENT_LIMITS)
    else:
        safe, size = {}, 0
    data: dict[str, Any] = {"event": event, "payload": safe, "size_bytes": size}
    if start_time is not None:
        data["duration_ms"] = int((time.monotonic() - start_time) * 1000)
    logger.log(level, event, extra={"json": data})


def log_debug_payload(
    event: str,
    payload: Mapping[str, Any] | Sequence[Any] | str | None = None,
) -> None:
    """Log the complete *payload* of *event* when DEBUG is enabled."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    data: dict[str, Any] = {"event": event}
    message = event
    if payload is not None:
        safe, _ = _encode(_redact(payload))
        data["payload"] = safe
        message = f"{event} {json.dumps(safe, ensure_ascii=False)}"
    logger.debug(message, extra={"json": data})


__all__ = ["REDACTED", "SENSITIVE_KEYS", "log_debug_payload", "log_event", "sanitize"]
