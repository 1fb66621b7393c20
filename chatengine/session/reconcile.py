"""Repair divergence between the message log and the pending marker.

The two pieces of state are written independently, so an uncontrolled stop
can leave either one without its counterpart. :func:`plan_reconciliation`
inspects both and decides what to do without touching storage;
:func:`apply_reconciliation` carries the decision out. Splitting the two keeps
the decision table inspectable from the command line.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..telemetry import log_event
from ..util.ids import IdFactory, new_id
from .marker_store import PendingMarkerStore
from .message_log import MessageLog
from .model import (
    ConversationMessage,
    MessageRole,
    MessageStatus,
    PendingRequestMarker,
)
from .window import build_history_window


logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    """Decision taken by one reconciliation pass."""

    BUSY = "busy"
    IDLE = "idle"
    DISCARDED = "discarded"
    RECONSTRUCTED = "reconstructed"
    REPAIRED = "repaired"
    DEAD_END = "dead_end"
    RESUMED = "resumed"
    WAITING = "waiting"


@dataclass(frozen=True, slots=True)
class ReconcilePlan:
    """What a pass intends to do.

    ``marker`` is written to the marker store, ``messages`` are upserted into
    the log and ``dispatch`` is handed to the request coordinator, in that
    order. ``retry_after_ms`` is set when the pass should run again later.
    """

    outcome: ReconcileOutcome
    message_id: str | None = None
    marker: PendingRequestMarker | None = None
    clear_marker: bool = False
    messages: tuple[ConversationMessage, ...] = ()
    dispatch: PendingRequestMarker | None = None
    retry_after_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "message_id": self.message_id,
            "marker": self.marker.to_dict() if self.marker else None,
            "clear_marker": self.clear_marker,
            "messages": [message.to_dict() for message in self.messages],
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "retry_after_ms": self.retry_after_ms,
        }


def _latest_pending_assistant(
    messages: Sequence[ConversationMessage],
) -> ConversationMessage | None:
    for message in reversed(messages):
        if message.is_pending_assistant:
            return message
    return None


def _find(
    messages: Sequence[ConversationMessage], message_id: str | None
) -> ConversationMessage | None:
    if not message_id:
        return None
    for message in messages:
        if message.id == message_id:
            return message
    return None


# ----------------------------------------------------------------------
def plan_reconciliation(
    messages: Sequence[ConversationMessage],
    marker: PendingRequestMarker | None,
    *,
    busy: bool,
    now: int,
    debounce_ms: int,
    context_window: int,
    placeholder_text: str,
    id_factory: IdFactory = new_id,
) -> ReconcilePlan:
    """Return the action required to bring *messages* and *marker* in line."""
    if busy:
        return ReconcilePlan(ReconcileOutcome.BUSY)

    pending = _latest_pending_assistant(messages)
    if marker is None and pending is None:
        return ReconcilePlan(ReconcileOutcome.IDLE)

    if marker is not None and pending is None:
        existing = _find(messages, marker.id)
        if existing is not None:
            # The outcome reached the log but the marker survived the stop.
            return ReconcilePlan(
                ReconcileOutcome.DISCARDED, message_id=marker.id, clear_marker=True
            )
        return _plan_reconstruction(
            messages,
            marker,
            now=now,
            placeholder_text=placeholder_text,
            id_factory=id_factory,
        )

    assert pending is not None
    if marker is None or marker.id != pending.id:
        return _plan_repair(
            messages,
            pending,
            stale_marker=marker,
            now=now,
            debounce_ms=debounce_ms,
            context_window=context_window,
        )

    elapsed = now - marker.created_at
    if marker.reconstructed or elapsed >= debounce_ms:
        return ReconcilePlan(
            ReconcileOutcome.RESUMED,
            message_id=marker.id,
            dispatch=marker.refreshed(now),
        )
    return ReconcilePlan(
        ReconcileOutcome.WAITING,
        message_id=marker.id,
        retry_after_ms=max(1, debounce_ms - elapsed),
    )


def _plan_reconstruction(
    messages: Sequence[ConversationMessage],
    marker: PendingRequestMarker,
    *,
    now: int,
    placeholder_text: str,
    id_factory: IdFactory,
) -> ReconcilePlan:
    user_message_id = marker.user_message_id or id_factory()
    existing = _find(messages, user_message_id)
    if existing is not None and existing.role is MessageRole.USER:
        user = ConversationMessage(
            id=existing.id,
            role=MessageRole.USER,
            content=marker.prompt,
            status=existing.status,
            created_at=existing.created_at,
        )
    else:
        if existing is not None:
            # The referenced id belongs to an assistant message; do not clobber it.
            user_message_id = id_factory()
        user = ConversationMessage(
            id=user_message_id,
            role=MessageRole.USER,
            content=marker.prompt,
            status=MessageStatus.READY,
            created_at=max(0, marker.created_at - 1),
        )
    assistant_created_at = max(marker.created_at, user.created_at + 1, now)
    assistant = ConversationMessage(
        id=marker.id,
        role=MessageRole.ASSISTANT,
        content=placeholder_text,
        status=MessageStatus.PENDING,
        created_at=assistant_created_at,
    )
    rebuilt = PendingRequestMarker(
        id=marker.id,
        prompt=marker.prompt,
        history=marker.history,
        created_at=assistant_created_at,
        user_message_id=user.id,
        reconstructed=True,
    )
    return ReconcilePlan(
        ReconcileOutcome.RECONSTRUCTED,
        message_id=marker.id,
        marker=rebuilt,
        messages=(user, assistant),
    )


def _plan_repair(
    messages: Sequence[ConversationMessage],
    pending: ConversationMessage,
    *,
    stale_marker: PendingRequestMarker | None,
    now: int,
    debounce_ms: int,
    context_window: int,
) -> ReconcilePlan:
    index = next(i for i, message in enumerate(messages) if message.id == pending.id)
    before = list(messages[:index])
    user = next(
        (message for message in reversed(before) if message.role is MessageRole.USER),
        None,
    )
    if user is None or not user.content.strip():
        return ReconcilePlan(
            ReconcileOutcome.DEAD_END,
            message_id=pending.id,
            clear_marker=stale_marker is not None,
        )

    history = build_history_window(
        [message for message in before if message.id != user.id],
        user,
        limit=context_window,
    )
    repaired = PendingRequestMarker(
        id=pending.id,
        prompt=user.content,
        history=history,
        created_at=now - debounce_ms,
        user_message_id=user.id,
        reconstructed=True,
    )
    return ReconcilePlan(
        ReconcileOutcome.REPAIRED,
        message_id=pending.id,
        marker=repaired,
        dispatch=repaired.refreshed(now),
    )


# ----------------------------------------------------------------------
def apply_reconciliation(
    plan: ReconcilePlan,
    *,
    log: MessageLog,
    marker_store: PendingMarkerStore,
    dispatch: Callable[[PendingRequestMarker], Any],
    identity: str | None = None,
) -> None:
    """Carry out *plan* against the live stores."""
    if plan.clear_marker:
        marker_store.clear()
    if plan.marker is not None:
        marker_store.write(plan.marker)
    if plan.messages:
        log.upsert(plan.messages)
    if plan.dispatch is not None:
        dispatch(plan.dispatch)

    if plan.outcome is ReconcileOutcome.DEAD_END:
        logger.warning(
            "Pending assistant message %s in %s has no preceding user prompt; "
            "leaving it pending",
            plan.message_id,
            log.key,
        )
    level = (
        logging.DEBUG
        if plan.outcome in (ReconcileOutcome.BUSY, ReconcileOutcome.IDLE)
        else logging.INFO
    )
    log_event(
        "RECONCILE",
        {
            "outcome": plan.outcome.value,
            "message_id": plan.message_id,
            "identity": identity,
            "retry_after_ms": plan.retry_after_ms,
        },
        level=level,
    )


__all__ = [
    "ReconcileOutcome",
    "ReconcilePlan",
    "apply_reconciliation",
    "plan_reconciliation",
]
