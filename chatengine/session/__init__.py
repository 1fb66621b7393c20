"""Conversation session engine."""

from typing import TYPE_CHECKING, Any

__all__ = [
    "ChatSession",
    "ConversationMessage",
    "HistoryItem",
    "MessageRole",
    "MessageStatus",
    "PendingRequestMarker",
    "ReconcileOutcome",
]

_EXPORTS = {
    "ChatSession": ".session",
    "ConversationMessage": ".model",
    "HistoryItem": ".model",
    "MessageRole": ".model",
    "MessageStatus": ".model",
    "PendingRequestMarker": ".model",
    "ReconcileOutcome": ".reconcile",
}

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from .model import (
        ConversationMessage,
        HistoryItem,
        MessageRole,
        MessageStatus,
        PendingRequestMarker,
    )
    from .reconcile import ReconcileOutcome
    from .session import ChatSession


def __getattr__(name: str) -> Any:
    """Resolve public names lazily so submodules import in any order."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'chatengine.session' has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
