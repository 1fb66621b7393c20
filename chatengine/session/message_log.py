"""Ordered, bounded record of the conversation."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Collection, Iterable

from ..storage.kv import KeyValueStore
from ..util.json import dumps_compact, summarise_payload
from .events import SessionEvent
from .model import ConversationMessage


logger = logging.getLogger(__name__)


MessageTransform = Callable[[ConversationMessage], ConversationMessage]
PinnedIds = Callable[[], Collection[str]]


def trim_messages(
    messages: list[ConversationMessage],
    limit: int,
    pinned: Collection[str] = (),
) -> list[ConversationMessage]:
    """Drop the oldest messages until at most *limit* remain.

    Messages whose id is in *pinned* are skipped, so a request still in flight
    keeps its placeholder. Relative order is preserved.
    """
    excess = len(messages) - limit
    if excess <= 0:
        return messages
    kept: list[ConversationMessage] = []
    for message in messages:
        if excess > 0 and message.id not in pinned:
            excess -= 1
            continue
        kept.append(message)
    return kept


class MessageLog:
    """Keep the conversation in memory and mirror it into a key-value store.

    Every mutation is persisted on a best-effort basis and announced through
    :attr:`changed` with the new snapshot.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        *,
        max_history: int,
        welcome_factory: Callable[[], ConversationMessage],
        pinned: PinnedIds | None = None,
    ) -> None:
        self._store = store
        self._key = key
        self._max_history = max_history
        self._welcome_factory = welcome_factory
        self._pinned = pinned
        self._messages: tuple[ConversationMessage, ...] = ()
        self.changed: SessionEvent[tuple[ConversationMessage, ...]] = SessionEvent()

    # ------------------------------------------------------------------
    @property
    def key(self) -> str:
        return self._key

    # ------------------------------------------------------------------
    @property
    def max_history(self) -> int:
        return self._max_history

    # ------------------------------------------------------------------
    def snapshot(self) -> tuple[ConversationMessage, ...]:
        """Return the current messages as an immutable tuple."""
        return self._messages

    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    def find(self, message_id: str) -> ConversationMessage | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    # ------------------------------------------------------------------
    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return -1

    # ------------------------------------------------------------------
    def latest_pending_assistant(self) -> ConversationMessage | None:
        for message in reversed(self._messages):
            if message.is_pending_assistant:
                return message
        return None

    # ------------------------------------------------------------------
    def load(self) -> tuple[ConversationMessage, ...]:
        """Restore messages from the store, falling back to the greeting."""
        self._messages = tuple(self._read())
        return self._messages

    # ------------------------------------------------------------------
    def append(self, messages: Iterable[ConversationMessage]) -> None:
        """Add *messages* at the tail, then trim from the head."""
        added = list(messages)
        if not added:
            return
        self._commit(self._trim([*self._messages, *added]))

    # ------------------------------------------------------------------
    def update(
        self, message_id: str, transform: MessageTransform
    ) -> ConversationMessage | None:
        """Apply *transform* to the message matching *message_id*.

        Returns the updated message or ``None`` when no message matches.
        """
        index = self.index_of(message_id)
        if index < 0:
            return None
        current = self._messages[index]
        updated = transform(current)
        if updated == current:
            return current
        messages = list(self._messages)
        messages[index] = updated
        self._commit(messages)
        return updated

    # ------------------------------------------------------------------
    def upsert(self, messages: Iterable[ConversationMessage]) -> None:
        """Replace messages by id, appending the ones not yet present."""
        pending = list(messages)
        if not pending:
            return
        current = list(self._messages)
        positions = {message.id: index for index, message in enumerate(current)}
        for message in pending:
            index = positions.get(message.id)
            if index is None:
                positions[message.id] = len(current)
                current.append(message)
            else:
                current[index] = message
        self._commit(self._trim(current))

    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Replace the whole conversation with the greeting message."""
        self._commit([self._welcome_factory()])

    # ------------------------------------------------------------------
    def _trim(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        pinned = self._pinned() if self._pinned is not None else ()
        return trim_messages(messages, self._max_history, pinned)

    # ------------------------------------------------------------------
    def _commit(self, messages: list[ConversationMessage]) -> None:
        self._messages = tuple(messages)
        self._persist()
        self.changed.emit(self._messages)

    # ------------------------------------------------------------------
    def _persist(self) -> None:
        payload = dumps_compact([message.to_dict() for message in self._messages])
        try:
            self._store.set(self._key, payload)
        except Exception:
            logger.exception("Failed to persist conversation log %s", self._key)

    # ------------------------------------------------------------------
    def _read(self) -> list[ConversationMessage]:
        try:
            raw = self._store.get(self._key)
        except Exception:
            logger.exception("Failed to read conversation log %s", self._key)
            raw = None
        if not raw:
            return [self._welcome_factory()]
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            snippet, length = summarise_payload(raw)
            logger.warning(
                "Unable to restore conversation log %s; payload_length=%d, payload_preview=%r",
                self._key,
                length,
                snippet,
                exc_info=exc,
            )
            return [self._welcome_factory()]
        if not isinstance(payload, list):
            logger.warning("Conversation log %s is not a list; starting fresh", self._key)
            return [self._welcome_factory()]

        messages: list[ConversationMessage] = []
        seen: set[str] = set()
        for position, item in enumerate(payload):
            try:
                message = ConversationMessage.from_dict(item)
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(
                    "Dropping malformed message %d from %s: %s",
                    position,
                    self._key,
                    exc,
                )
                continue
            if message.id in seen:
                logger.warning(
                    "Dropping duplicate message id %s from %s", message.id, self._key
                )
                continue
            seen.add(message.id)
            messages.append(message)
        return messages or [self._welcome_factory()]


__all__ = ["MessageLog", "MessageTransform", "trim_messages"]
