"""Exception hierarchy for chatengine."""

from __future__ import annotations

from .util.cancellation import OperationCancelledError


class ChatEngineError(Exception):
    """Base class for errors raised by chatengine."""


class AssistantRequestError(ChatEngineError):
    """Raised when the assistant endpoint cannot be reached or fails."""


class AssistantHTTPError(AssistantRequestError):
    """Raised when the assistant endpoint answers with a non-success status."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(ChatEngineError):
    """Raised when a persistence backend cannot be opened or written."""


__all__ = [
    "AssistantHTTPError",
    "AssistantRequestError",
    "ChatEngineError",
    "OperationCancelledError",
    "StorageError",
]
