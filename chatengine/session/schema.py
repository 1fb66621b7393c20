"""JSON Schemas for persisted conversation state."""

from __future__ import annotations

from typing import Any

from jsonschema import validate as _validate
from jsonschema.exceptions import ValidationError

from .model import MessageRole, MessageStatus

_ROLE = {"enum": [e.value for e in MessageRole]}

HISTORY_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["role", "content"],
    "properties": {
        "role": _ROLE,
        "content": {"type": "string"},
    },
}

MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "role", "content", "status", "createdAt"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "role": _ROLE,
        "content": {"type": "string"},
        "status": {"enum": [e.value for e in MessageStatus]},
        "createdAt": {"type": "number"},
    },
}

MARKER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "prompt", "history", "createdAt"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "prompt": {"type": "string"},
        "history": {"type": "array", "items": HISTORY_ITEM_SCHEMA},
        "createdAt": {"type": "number"},
        "userMessageId": {"type": ["string", "null"]},
    },
}


def validate_message(data: Any) -> None:
    """Validate a persisted message payload.

    Raises :class:`ValueError` if validation fails.
    """
    try:
        _validate(data, MESSAGE_SCHEMA)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc


def validate_marker(data: Any) -> None:
    """Validate a persisted pending-request marker payload.

    Raises :class:`ValueError` if validation fails.
    """
    try:
        _validate(data, MARKER_SCHEMA)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc


__all__ = [
    "HISTORY_ITEM_SCHEMA",
    "MARKER_SCHEMA",
    "MESSAGE_SCHEMA",
    "validate_marker",
    "validate_message",
]
