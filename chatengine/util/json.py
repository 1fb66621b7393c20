"""JSON serialisation helpers."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class JsonSanitizerLimits:
    """Bounds applied while traversing objects for JSON conversion."""

    max_depth: int | None = None
    max_items: int | None = None
    max_string_length: int | None = None


_TRUNCATION_SENTINEL_KEY = "__truncated__"


def _truncate(text: str, limit: int | None) -> str:
    if limit is None or len(text) <= limit:
        return text
    return f"{text[:limit]}… (truncated)"


def make_json_safe(
    value: Any,
    *,
    sort_sets: bool = True,
    default: Callable[[Any], Any] | None = None,
    limits: JsonSanitizerLimits | None = None,
) -> Any:
    """Return a structure compatible with :func:`json.dumps`.

    Mappings get string keys, tuples and sets become lists, enums collapse to
    their values and anything else is passed through *default* (``repr`` by
    default). Optional *limits* bound depth, item count and string length so
    that diagnostic payloads stay readable in the logs.
    """

    if default is None:
        default = repr
    limits = limits or JsonSanitizerLimits()

    def _depth_exceeded(depth: int) -> bool:
        return limits.max_depth is not None and depth >= limits.max_depth

    def _marker(reason: str, omitted: int) -> dict[str, Any]:
        return {_TRUNCATION_SENTINEL_KEY: {"reason": reason, "omitted": omitted}}

    def _convert_items(items: Sequence[Any], depth: int) -> list[Any]:
        converted: list[Any] = []
        omitted = 0
        for index, item in enumerate(items):
            if limits.max_items is not None and index >= limits.max_items:
                omitted += 1
                continue
            converted.append(_convert(item, depth + 1))
        if omitted:
            converted.append(_marker("max_items", omitted))
        return converted

    def _convert(item: Any, depth: int) -> Any:
        if isinstance(item, Enum):
            return _convert(item.value, depth)
        if isinstance(item, Mapping):
            if _depth_exceeded(depth):
                return _marker("max_depth", 0)
            result: dict[str, Any] = {}
            omitted = 0
            for index, (key, val) in enumerate(item.items()):
                if limits.max_items is not None and index >= limits.max_items:
                    omitted += 1
                    continue
                result[key if isinstance(key, str) else str(key)] = _convert(
                    val, depth + 1
                )
            if omitted:
                result.update(_marker("max_items", omitted))
            return result
        if isinstance(item, (list, tuple)):
            if _depth_exceeded(depth):
                return [_marker("max_depth", 0)]
            return _convert_items(item, depth)
        if isinstance(item, (set, frozenset)):
            converted = _convert_items(list(item), depth)
            if sort_sets:
                try:
                    converted.sort()
                except TypeError:
                    pass
            return converted
        if isinstance(item, str):
            return _truncate(item, limits.max_string_length)
        if isinstance(item, (int, float, bool)) or item is None:
            return item
        try:
            fallback = default(item)
        except Exception:
            fallback = f"<unserialisable {type(item).__name__}>"
        if fallback is item:
            fallback = f"<unserialisable {type(item).__name__}>"
        return _convert(fallback, depth)

    return _convert(value, 0)


def dumps_compact(value: Any) -> str:
    """Serialise *value* without whitespace padding, keeping unicode intact."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def summarise_payload(payload: object, *, limit: int = 256) -> tuple[str, int]:
    """Return a short single-line preview and the size of *payload*."""
    if isinstance(payload, str):
        text = payload
        length = len(payload)
    elif isinstance(payload, bytes):
        text = payload.decode("utf-8", errors="replace")
        length = len(payload)
    else:
        text = repr(payload)
        length = len(text)
    snippet = _truncate(text, limit).replace("\n", "\\n")
    return snippet, length


__all__ = [
    "JsonSanitizerLimits",
    "dumps_compact",
    "make_json_safe",
    "summarise_payload",
]
