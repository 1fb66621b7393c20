"""Single-flight execution of assistant requests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..assistant.client import UNREACHABLE_MESSAGE, AssistantBackend, AssistantRequest
from ..errors import AssistantRequestError
from ..log import conversation_context
from ..util.cancellation import CancellationTokenSource, OperationCancelledError
from ..util.time import Clock, now_ms
from .marker_store import PendingMarkerStore
from .message_log import MessageLog
from .model import ConversationMessage, MessageRole, MessageStatus, PendingRequestMarker


logger = logging.getLogger(__name__)


EMPTY_RESPONSE_MESSAGE = "No analysis was returned for that prompt."
INTERRUPTED_MESSAGE = "Assistant request was interrupted. Please try again."


@dataclass(frozen=True, slots=True)
class RequestOutcome:
    """Terminal result applied to the assistant message of a request."""

    message_id: str
    status: MessageStatus
    content: str
    cancelled: bool = False

    @property
    def error(self) -> str | None:
        """Reason surfaced to the user, ``None`` on success."""
        if self.status is MessageStatus.ERROR:
            return self.content
        return None


@dataclass(slots=True)
class RequestHandle:
    """Track one in-flight assistant request and the state it writes to."""

    run_id: int
    marker: PendingRequestMarker
    identity: str
    log: MessageLog
    marker_store: PendingMarkerStore
    cancel_source: CancellationTokenSource
    task: asyncio.Task[RequestOutcome] | None = None
    outcome: RequestOutcome | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_source.cancelled

    def cancel(self, reason: str | None = None) -> None:
        self.cancel_source.cancel(reason)


def _ignore_sending(_: bool) -> None:
    return None


def _ignore_finished(_: RequestHandle, __: RequestOutcome) -> None:
    return None


@dataclass(slots=True)
class RequestCallbacks:
    """Callables used by :class:`RequestCoordinator` to notify its owner."""

    sending_changed: Callable[[bool], None] = _ignore_sending
    request_finished: Callable[[RequestHandle, RequestOutcome], None] = _ignore_finished


class RequestCoordinator:
    """Run at most one assistant request at a time.

    The busy flag is taken synchronously in :meth:`trigger`, before the
    request task is created, and released only after the outcome has been
    written to the message log and the pending marker has been cleared.
    """

    def __init__(
        self,
        backend: AssistantBackend,
        *,
        clock: Clock = now_ms,
        callbacks: RequestCallbacks | None = None,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._callbacks = callbacks or RequestCallbacks()
        self._lifetime = CancellationTokenSource()
        self._run_counter = 0
        self._active_handle: RequestHandle | None = None

    # ------------------------------------------------------------------
    @property
    def active_handle(self) -> RequestHandle | None:
        return self._active_handle

    # ------------------------------------------------------------------
    @property
    def busy(self) -> bool:
        return self._active_handle is not None

    # ------------------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._lifetime.cancelled

    # ------------------------------------------------------------------
    def trigger(
        self,
        marker: PendingRequestMarker,
        *,
        identity: str,
        log: MessageLog,
        marker_store: PendingMarkerStore,
    ) -> asyncio.Task[RequestOutcome] | None:
        """Dispatch *marker* unless a request is already running.

        Must be called from a running event loop. Returns the request task,
        or ``None`` when the coordinator is busy or closed.
        """
        if self._active_handle is not None:
            logger.debug("Request %s ignored: another request is in flight", marker.id)
            return None
        if self.closed:
            logger.debug("Request %s ignored: coordinator is closed", marker.id)
            return None
        loop = asyncio.get_running_loop()
        self._run_counter += 1
        handle = RequestHandle(
            run_id=self._run_counter,
            marker=marker,
            identity=identity,
            log=log,
            marker_store=marker_store,
            cancel_source=CancellationTokenSource(self._lifetime.token),
        )
        self._active_handle = handle
        marker_store.write(marker)
        self._notify_sending(True)
        handle.task = loop.create_task(
            self._run(handle), name=f"chatengine-request-{handle.run_id}"
        )
        return handle.task

    # ------------------------------------------------------------------
    def stop(self, reason: str | None = None) -> RequestHandle | None:
        """Cancel the active request, if any, and return its handle."""
        handle = self._active_handle
        if handle is None:
            return None
        handle.cancel(reason or "stopped")
        return handle

    # ------------------------------------------------------------------
    def close(self) -> None:
        """Abort the active request and refuse any further trigger."""
        self._lifetime.cancel("closed")

    # ------------------------------------------------------------------
    async def wait_idle(self) -> RequestOutcome | None:
        handle = self._active_handle
        if handle is None or handle.task is None:
            return None
        return await asyncio.shield(handle.task)

    # ------------------------------------------------------------------
    async def _run(self, handle: RequestHandle) -> RequestOutcome:
        marker = handle.marker
        request = AssistantRequest(
            prompt=marker.prompt,
            history=marker.history,
            identity=handle.identity,
        )
        outcome: RequestOutcome | None = None
        try:
            try:
                with conversation_context(handle.identity, marker.id):
                    body = await self._backend.complete(
                        request, cancellation=handle.cancel_source.token
                    )
            except OperationCancelledError:
                outcome = self._interrupted(marker)
            except asyncio.CancelledError:
                outcome = self._interrupted(marker)
                self._apply(handle, outcome)
                raise
            except AssistantRequestError as exc:
                outcome = RequestOutcome(
                    marker.id, MessageStatus.ERROR, str(exc).strip() or UNREACHABLE_MESSAGE
                )
            except Exception as exc:
                logger.exception("Assistant request %s failed", marker.id)
                outcome = RequestOutcome(
                    marker.id, MessageStatus.ERROR, str(exc).strip() or UNREACHABLE_MESSAGE
                )
            else:
                content = body.strip() or EMPTY_RESPONSE_MESSAGE
                outcome = RequestOutcome(marker.id, MessageStatus.READY, content)
            self._apply(handle, outcome)
            return outcome
        finally:
            handle.marker_store.clear()
            handle.cancel_source.dispose()
            if self._active_handle is handle:
                self._active_handle = None
            self._notify_sending(False)
            if outcome is not None:
                self._notify_finished(handle, outcome)

    # ------------------------------------------------------------------
    @staticmethod
    def _interrupted(marker: PendingRequestMarker) -> RequestOutcome:
        return RequestOutcome(
            marker.id, MessageStatus.ERROR, INTERRUPTED_MESSAGE, cancelled=True
        )

    # ------------------------------------------------------------------
    def _apply(self, handle: RequestHandle, outcome: RequestOutcome) -> None:
        handle.outcome = outcome
        updated = handle.log.update(
            outcome.message_id,
            lambda message: message.resolve(outcome.status, outcome.content),
        )
        if updated is not None:
            return
        logger.info(
            "Assistant message %s vanished from %s; appending the outcome",
            outcome.message_id,
            handle.log.key,
        )
        handle.log.append(
            [
                ConversationMessage(
                    id=outcome.message_id,
                    role=MessageRole.ASSISTANT,
                    content=outcome.content,
                    status=outcome.status,
                    created_at=self._clock(),
                )
            ]
        )

    # ------------------------------------------------------------------
    def _notify_sending(self, sending: bool) -> None:
        try:
            self._callbacks.sending_changed(sending)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Sending-state callback failed")

    # ------------------------------------------------------------------
    def _notify_finished(self, handle: RequestHandle, outcome: RequestOutcome) -> None:
        try:
            self._callbacks.request_finished(handle, outcome)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Request completion callback failed")


__all__ = [
    "EMPTY_RESPONSE_MESSAGE",
    "INTERRUPTED_MESSAGE",
    "RequestCallbacks",
    "RequestCoordinator",
    "RequestHandle",
    "RequestOutcome",
]
