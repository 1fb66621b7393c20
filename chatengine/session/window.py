"""Context window selection for outgoing assistant requests."""

from __future__ import annotations

from collections.abc import Iterable

from .model import ConversationMessage, HistoryItem, MessageRole, MessageStatus


def is_context_eligible(message: ConversationMessage) -> bool:
    """Return ``True`` for messages allowed into a context window.

    Assistant replies only count once they are ``ready``; pending
    placeholders and failures never reach the endpoint.
    """
    return message.role is MessageRole.USER or message.status is MessageStatus.READY


def build_history_window(
    messages: Iterable[ConversationMessage],
    upcoming: ConversationMessage | None = None,
    *,
    limit: int,
) -> tuple[HistoryItem, ...]:
    """Return the last *limit* eligible messages, *upcoming* included last."""
    pool = [message for message in messages if is_context_eligible(message)]
    if upcoming is not None:
        pool.append(upcoming)
    if limit <= 0:
        return ()
    return tuple(message.to_history_item() for message in pool[-limit:])


__all__ = ["build_history_window", "is_context_eligible"]
