"""Conversation session tying the log, the marker and the coordinator together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from typing import Any

from ..assistant.client import AssistantBackend
from ..settings import SessionSettings
from ..storage.keys import StorageKeys, storage_keys
from ..storage.kv import KeyValueStore
from ..util.ids import IdFactory, new_id
from ..util.time import Clock, now_ms
from .coordinator import RequestCallbacks, RequestCoordinator, RequestHandle, RequestOutcome
from .events import ChatSessionEvents
from .marker_store import PendingMarkerStore
from .message_log import MessageLog
from .model import (
    ConversationMessage,
    MessageRole,
    MessageStatus,
    PendingRequestMarker,
)
from .reconcile import (
    ReconcileOutcome,
    ReconcilePlan,
    apply_reconciliation,
    plan_reconciliation,
)
from .window import build_history_window


logger = logging.getLogger(__name__)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class ChatSession:
    """Client-side conversation with crash-tolerant assistant requests.

    All methods must be called from the thread running the session's event
    loop. Methods that may dispatch a request (:meth:`open`,
    :meth:`submit_prompt`, :meth:`reconcile`, :meth:`switch_identity`)
    require that loop to be running.
    """

    def __init__(
        self,
        backend: AssistantBackend,
        store: KeyValueStore,
        *,
        identity: str | None = None,
        settings: SessionSettings | None = None,
        clock: Clock = now_ms,
        id_factory: IdFactory = new_id,
    ) -> None:
        self._store = store
        self._settings = settings or SessionSettings()
        self._clock = clock
        self._id_factory = id_factory
        self.events = ChatSessionEvents.create()
        self._coordinator = RequestCoordinator(
            backend,
            clock=clock,
            callbacks=RequestCallbacks(
                sending_changed=self._on_sending_changed,
                request_finished=self._on_request_finished,
            ),
        )
        self._error: str | None = None
        self._opened = False
        self._closed = False
        self._soon_handle: asyncio.Handle | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._recent_marker: PendingRequestMarker | None = None
        self._keys = storage_keys(identity)
        self._log = self._create_log(self._keys)
        self._markers = PendingMarkerStore(store, self._keys.marker)

    # ------------------------------------------------------------------
    async def __aenter__(self) -> ChatSession:
        self.open()
        return self

    # ------------------------------------------------------------------
    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    @property
    def identity(self) -> str:
        return self._keys.identity

    # ------------------------------------------------------------------
    @property
    def keys(self) -> StorageKeys:
        return self._keys

    # ------------------------------------------------------------------
    @property
    def settings(self) -> SessionSettings:
        return self._settings

    # ------------------------------------------------------------------
    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        return self._log.snapshot()

    # ------------------------------------------------------------------
    @property
    def is_sending(self) -> bool:
        return self._coordinator.busy

    # ------------------------------------------------------------------
    @property
    def error(self) -> str | None:
        return self._error

    # ------------------------------------------------------------------
    @property
    def marker(self) -> PendingRequestMarker | None:
        """Return the persisted pending-request marker, if any."""
        return self._markers.read()

    # ------------------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    def load(self) -> tuple[ConversationMessage, ...]:
        """Read persisted state without reconciling it."""
        messages = self._log.load()
        self.events.messages_changed.emit(messages)
        return messages

    # ------------------------------------------------------------------
    def open(self) -> ReconcileOutcome:
        """Load persisted state and run the cold-start reconciliation pass."""
        if self._closed:
            raise RuntimeError("session is closed")
        self.load()
        self._opened = True
        return self.reconcile()

    # ------------------------------------------------------------------
    def close(self) -> None:
        """Abort the active request and stop scheduling reconciliation."""
        if self._closed:
            return
        self._closed = True
        self._cancel_scheduled()
        self._coordinator.close()

    # ------------------------------------------------------------------
    async def aclose(self) -> None:
        """Close the session and wait for the aborted request to settle."""
        self.close()
        await self._coordinator.wait_idle()
        self._log.changed.disconnect(self._on_log_changed)

    # ------------------------------------------------------------------
    async def send_message(self, prompt: str) -> ConversationMessage | None:
        """Send *prompt* and wait for the assistant reply.

        Returns the final assistant message, or ``None`` when the prompt was
        blank or another request is still in flight.
        """
        task = self.submit_prompt(prompt)
        if task is None:
            return None
        outcome = await task
        message = self._log.find(outcome.message_id)
        if message is not None:
            return message
        return ConversationMessage(
            id=outcome.message_id,
            role=MessageRole.ASSISTANT,
            content=outcome.content,
            status=outcome.status,
            created_at=self._clock(),
        )

    # ------------------------------------------------------------------
    def submit_prompt(self, prompt: str) -> asyncio.Task[RequestOutcome] | None:
        """Append the prompt and its placeholder, then dispatch the request."""
        text = prompt.strip()
        if not text:
            logger.debug("Ignoring blank prompt")
            return None
        if self._coordinator.busy:
            logger.debug("Ignoring prompt while a request is in flight")
            return None
        if self._closed:
            logger.debug("Ignoring prompt on a closed session")
            return None

        self._set_error(None)
        created_at = self._clock()
        user = ConversationMessage(
            id=self._id_factory(),
            role=MessageRole.USER,
            content=text,
            status=MessageStatus.READY,
            created_at=created_at,
        )
        placeholder = ConversationMessage(
            id=self._id_factory(),
            role=MessageRole.ASSISTANT,
            content=self._settings.placeholder_text,
            status=MessageStatus.PENDING,
            created_at=max(self._clock(), created_at + 1),
        )
        history = build_history_window(
            self._log.snapshot(), user, limit=self._settings.context_window
        )
        self._log.append([user, placeholder])
        marker = PendingRequestMarker(
            id=placeholder.id,
            prompt=text,
            history=history,
            created_at=self._clock(),
            user_message_id=user.id,
        )
        return self._dispatch(marker)

    # ------------------------------------------------------------------
    def stop(self) -> bool:
        """Cancel the active request; returns ``False`` when idle."""
        return self._coordinator.stop() is not None

    # ------------------------------------------------------------------
    def clear_error(self) -> None:
        self._set_error(None)

    # ------------------------------------------------------------------
    def clear_history(self) -> bool:
        """Reset the conversation to the greeting; refused while sending."""
        if self._coordinator.busy:
            logger.debug("Refusing to clear history while a request is in flight")
            return False
        self._markers.clear()
        self._recent_marker = None
        self._log.reset()
        return True

    # ------------------------------------------------------------------
    def switch_identity(self, identity: str | None) -> ReconcileOutcome | None:
        """Move the session to *identity*'s conversation.

        The active request is cancelled; its outcome is still written to the
        conversation it was started from.
        """
        keys = storage_keys(identity)
        if keys == self._keys:
            return None
        self._coordinator.stop("identity changed")
        self._cancel_scheduled()
        self._log.changed.disconnect(self._on_log_changed)
        self._keys = keys
        self._log = self._create_log(keys)
        self._markers = PendingMarkerStore(self._store, keys.marker)
        self._recent_marker = None
        self.load()
        self._set_error(None)
        logger.info("Switched conversation to identity %s", keys.identity)
        return self.reconcile()

    # ------------------------------------------------------------------
    def preview_reconciliation(self) -> ReconcilePlan:
        """Return what a reconciliation pass would do, without doing it."""
        return plan_reconciliation(
            self._log.snapshot(),
            self._current_marker(),
            busy=self._coordinator.busy,
            now=self._clock(),
            debounce_ms=self._settings.resume_debounce_ms,
            context_window=self._settings.context_window,
            placeholder_text=self._settings.placeholder_text,
            id_factory=self._id_factory,
        )

    # ------------------------------------------------------------------
    def reconcile(self) -> ReconcileOutcome:
        """Run one reconciliation pass now and return its decision."""
        if self._closed:
            return ReconcileOutcome.IDLE
        plan = self.preview_reconciliation()
        apply_reconciliation(
            plan,
            log=self._log,
            marker_store=self._markers,
            dispatch=self._dispatch,
            identity=self.identity,
        )
        if plan.marker is not None:
            self._recent_marker = plan.marker
        if plan.retry_after_ms is not None:
            self._schedule_retry(plan.retry_after_ms)
        self.events.reconciled.emit(plan)
        return plan.outcome

    # ------------------------------------------------------------------
    async def wait_idle(self) -> None:
        """Wait until no request is running and no pass is queued."""
        while True:
            await asyncio.sleep(0)
            if self._coordinator.busy:
                await self._coordinator.wait_idle()
                continue
            if self._soon_handle is None:
                return

    # ------------------------------------------------------------------
    def _create_log(self, keys: StorageKeys) -> MessageLog:
        log = MessageLog(
            self._store,
            keys.messages,
            max_history=self._settings.max_history,
            welcome_factory=self._welcome_message,
            pinned=lambda: self._pinned_ids(keys),
        )
        log.changed.connect(self._on_log_changed)
        return log

    # ------------------------------------------------------------------
    def _current_marker(self) -> PendingRequestMarker | None:
        """Return the stored marker, keeping flags lost in serialisation.

        The marker written by the last pass is reused while the store still
        holds the same marker, so a reconstructed request resumes on the next
        pass instead of waiting out the debounce.
        """
        marker = self._markers.read()
        recent = self._recent_marker
        if marker is not None and recent is not None and marker == recent:
            return recent
        return marker

    # ------------------------------------------------------------------
    def _pinned_ids(self, keys: StorageKeys) -> Collection[str]:
        """Return ids of messages that trimming must keep in *keys*' log."""
        pinned: set[str] = set()
        handle = self._coordinator.active_handle
        if handle is not None and handle.marker_store.key == keys.marker:
            pinned.add(handle.marker.id)
        if keys == self._keys:
            marker = self._markers.read()
            if marker is not None:
                pinned.add(marker.id)
        return pinned

    # ------------------------------------------------------------------
    def _welcome_message(self) -> ConversationMessage:
        return ConversationMessage(
            id=self._id_factory(),
            role=MessageRole.ASSISTANT,
            content=self._settings.welcome_message,
            status=MessageStatus.READY,
            created_at=self._clock(),
        )

    # ------------------------------------------------------------------
    def _dispatch(self, marker: PendingRequestMarker) -> asyncio.Task[RequestOutcome] | None:
        return self._coordinator.trigger(
            marker,
            identity=self.identity,
            log=self._log,
            marker_store=self._markers,
        )

    # ------------------------------------------------------------------
    def _set_error(self, error: str | None) -> None:
        if error == self._error:
            return
        self._error = error
        self.events.error_changed.emit(error)

    # ------------------------------------------------------------------
    def _on_log_changed(self, messages: tuple[ConversationMessage, ...]) -> None:
        self.events.messages_changed.emit(messages)
        self._schedule_reconcile()

    # ------------------------------------------------------------------
    def _on_sending_changed(self, sending: bool) -> None:
        self.events.sending_changed.emit(sending)

    # ------------------------------------------------------------------
    def _on_request_finished(self, handle: RequestHandle, outcome: RequestOutcome) -> None:
        if handle.log is self._log and outcome.error is not None:
            self._set_error(outcome.error)
        self._schedule_reconcile()

    # ------------------------------------------------------------------
    def _schedule_reconcile(self) -> None:
        if self._closed or not self._opened or self._soon_handle is not None:
            return
        loop = _running_loop()
        if loop is None:
            logger.debug("No running event loop; reconciliation deferred")
            return
        self._soon_handle = loop.call_soon(self._run_scheduled)

    # ------------------------------------------------------------------
    def _run_scheduled(self) -> None:
        self._soon_handle = None
        self.reconcile()

    # ------------------------------------------------------------------
    def _schedule_retry(self, delay_ms: int) -> None:
        if self._closed:
            return
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        loop = _running_loop()
        if loop is None:
            logger.debug("No running event loop; resume retry dropped")
            return
        self._retry_handle = loop.call_later(delay_ms / 1000, self._run_retry)

    # ------------------------------------------------------------------
    def _run_retry(self) -> None:
        self._retry_handle = None
        self.reconcile()

    # ------------------------------------------------------------------
    def _cancel_scheduled(self) -> None:
        for handle in (self._soon_handle, self._retry_handle):
            if handle is not None:
                handle.cancel()
        self._soon_handle = None
        self._retry_handle = None


__all__ = ["ChatSession"]
