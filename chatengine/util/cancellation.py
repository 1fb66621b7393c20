"""Cancellation primitives shared by the session and the assistant client."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

__all__ = [
    "CancellationRegistration",
    "CancellationToken",
    "CancellationTokenSource",
    "OperationCancelledError",
    "raise_if_cancelled",
]

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "cancelled"


class OperationCancelledError(RuntimeError):
    """Raised when an in-flight operation is aborted via cancellation."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or DEFAULT_CANCEL_REASON)
        self.reason = reason or DEFAULT_CANCEL_REASON


class CancellationRegistration:
    """Handle returned by :meth:`CancellationToken.register`."""

    __slots__ = ("_source", "_callback")

    def __init__(
        self,
        source: CancellationTokenSource | None,
        callback: Callable[[], None] | None,
    ) -> None:
        self._source = source
        self._callback = callback

    def dispose(self) -> None:
        """Detach the callback; safe to call more than once."""
        source, callback = self._source, self._callback
        self._source = None
        self._callback = None
        if source is not None and callback is not None:
            source._unregister(callback)


class CancellationToken:
    """Read-only view of a :class:`CancellationTokenSource`."""

    __slots__ = ("_source",)

    def __init__(self, source: CancellationTokenSource) -> None:
        self._source = source

    @property
    def cancelled(self) -> bool:
        """Return ``True`` when cancellation has been requested."""
        return self._source.cancelled

    @property
    def reason(self) -> str | None:
        return self._source.reason

    def is_set(self) -> bool:
        return self._source.cancelled

    def register(self, callback: Callable[[], None]) -> CancellationRegistration:
        """Invoke *callback* once cancellation is requested.

        Callbacks registered after cancellation run immediately.
        """
        return self._source._register(callback)

    def raise_if_cancelled(self) -> None:
        """Raise :class:`OperationCancelledError` if cancellation occurred."""
        if self._source.cancelled:
            raise OperationCancelledError(self._source.reason)


class CancellationTokenSource:
    """Owner side of a cancellation token.

    A source may be linked to a *parent* token so that cancelling the parent
    (for example the session lifetime) cancels every child run.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None
        self.token = CancellationToken(self)
        self._parent_registration: CancellationRegistration | None = None
        if parent is not None:
            self._parent_registration = parent.register(
                lambda: self.cancel(parent.reason)
            )

    # ------------------------------------------------------------------
    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    # ------------------------------------------------------------------
    @property
    def reason(self) -> str | None:
        return self._reason

    # ------------------------------------------------------------------
    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason or DEFAULT_CANCEL_REASON
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Cancellation callback failed")

    # ------------------------------------------------------------------
    def dispose(self) -> None:
        """Detach from the parent token without cancelling."""
        registration = self._parent_registration
        self._parent_registration = None
        if registration is not None:
            registration.dispose()

    # ------------------------------------------------------------------
    def _register(self, callback: Callable[[], None]) -> CancellationRegistration:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return CancellationRegistration(self, callback)
        callback()
        return CancellationRegistration(None, None)

    # ------------------------------------------------------------------
    def _unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


def raise_if_cancelled(cancellation: CancellationToken | None) -> None:
    """Convenience helper raising when *cancellation* has been signalled."""

    if cancellation is not None:
        cancellation.raise_if_cancelled()
