"""Data structures describing a persisted conversation."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class MessageRole(str, Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """Lifecycle state of a message.

    ``PENDING`` moves to exactly one of the terminal states ``READY`` or
    ``ERROR`` and never leaves it.
    """

    READY = "ready"
    PENDING = "pending"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.PENDING


def _coerce_timestamp(value: Any) -> int:
    numeric = float(value)
    if not math.isfinite(numeric):
        raise ValueError(f"timestamp is not finite: {value!r}")
    return int(numeric)


@dataclass(frozen=True, slots=True)
class HistoryItem:
    """A ``{role, content}`` pair sent to the assistant as context."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> HistoryItem:
        return cls(role=MessageRole(payload["role"]), content=str(payload["content"]))


@dataclass(frozen=True, slots=True)
class ConversationMessage:
    """Single message rendered in the conversation log."""

    id: str
    role: MessageRole
    content: str
    status: MessageStatus
    created_at: int

    # ------------------------------------------------------------------
    @property
    def is_pending_assistant(self) -> bool:
        return self.role is MessageRole.ASSISTANT and self.status is MessageStatus.PENDING

    # ------------------------------------------------------------------
    def resolve(self, status: MessageStatus, content: str) -> ConversationMessage:
        """Return a copy transitioned to the terminal *status*.

        Terminal messages are returned unchanged.
        """
        if self.status.is_terminal or not status.is_terminal:
            return self
        return replace(self, status=status, content=content)

    # ------------------------------------------------------------------
    def to_history_item(self) -> HistoryItem:
        return HistoryItem(role=self.role, content=self.content)

    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConversationMessage:
        """Build a message from its persisted form.

        Raises :class:`ValueError` when *payload* does not describe a message.
        """
        from .schema import validate_message

        validate_message(payload)
        return cls(
            id=payload["id"],
            role=MessageRole(payload["role"]),
            content=payload["content"],
            status=MessageStatus(payload["status"]),
            created_at=_coerce_timestamp(payload["createdAt"]),
        )


@dataclass(frozen=True, slots=True)
class PendingRequestMarker:
    """Durable record asserting a request for message ``id`` is outstanding."""

    id: str
    prompt: str
    history: tuple[HistoryItem, ...]
    created_at: int
    user_message_id: str | None = None
    reconstructed: bool = field(default=False, compare=False)

    # ------------------------------------------------------------------
    def refreshed(self, created_at: int) -> PendingRequestMarker:
        """Return a copy re-stamped at *created_at* ready to be dispatched."""
        return replace(self, created_at=created_at, reconstructed=False)

    # ------------------------------------------------------------------
    def history_payload(self) -> list[dict[str, str]]:
        return [item.to_dict() for item in self.history]

    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        """Return the persisted form; ``reconstructed`` is never stored."""
        data: dict[str, Any] = {
            "id": self.id,
            "prompt": self.prompt,
            "history": self.history_payload(),
            "createdAt": self.created_at,
        }
        if self.user_message_id:
            data["userMessageId"] = self.user_message_id
        return data

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PendingRequestMarker:
        """Build a marker from its persisted form.

        Raises :class:`ValueError` when *payload* is malformed.
        """
        from .schema import validate_marker

        validate_marker(payload)
        user_message_id = payload.get("userMessageId")
        if not isinstance(user_message_id, str) or not user_message_id.strip():
            user_message_id = None
        return cls(
            id=payload["id"],
            prompt=payload["prompt"],
            history=tuple(HistoryItem.from_dict(item) for item in payload["history"]),
            created_at=_coerce_timestamp(payload["createdAt"]),
            user_message_id=user_message_id,
        )


__all__ = [
    "ConversationMessage",
    "HistoryItem",
    "MessageRole",
    "MessageStatus",
    "PendingRequestMarker",
]
