"""Observable hooks exposed by the conversation session."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionEvent(Generic[T]):
    """Simple signal implementation for the session model."""

    __slots__ = ("_listeners",)

    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def connect(self, callback: Callable[[T], None]) -> None:
        self._listeners.append(callback)

    def disconnect(self, callback: Callable[[T], None]) -> None:
        with suppress(ValueError):
            self._listeners.remove(callback)

    def emit(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("Session event listener %r failed", listener)


@dataclass(slots=True)
class ChatSessionEvents:
    """Expose observable hooks for the session lifecycle."""

    messages_changed: SessionEvent[tuple[Any, ...]]
    sending_changed: SessionEvent[bool]
    error_changed: SessionEvent[str | None]
    reconciled: SessionEvent[Any]

    @classmethod
    def create(cls) -> ChatSessionEvents:
        return cls(
            messages_changed=SessionEvent(),
            sending_changed=SessionEvent(),
            error_changed=SessionEvent(),
            reconciled=SessionEvent(),
        )


__all__ = ["ChatSessionEvents", "SessionEvent"]
