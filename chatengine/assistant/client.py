"""HTTP client for the external assistant endpoint."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from ..errors import AssistantHTTPError, AssistantRequestError
from ..settings import AssistantSettings
from ..telemetry import log_debug_payload, log_event
from ..util.cancellation import (
    CancellationToken,
    OperationCancelledError,
    raise_if_cancelled,
)

if TYPE_CHECKING:  # pragma: no cover
    from ..session.model import HistoryItem


logger = logging.getLogger(__name__)


UNAVAILABLE_MESSAGE = "Assistant is unavailable right now. Please try again."
UNREACHABLE_MESSAGE = "Unable to fetch the analysis. Please try again later."


@dataclass(frozen=True, slots=True)
class AssistantRequest:
    """Payload posted to the assistant endpoint."""

    prompt: str
    history: tuple[HistoryItem, ...]
    identity: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "history": [item.to_dict() for item in self.history],
            "identity": self.identity,
        }


class AssistantBackend(Protocol):
    """Anything able to answer an :class:`AssistantRequest` with text."""

    async def complete(
        self,
        request: AssistantRequest,
        *,
        cancellation: CancellationToken | None = None,
    ) -> str:  # pragma: no cover - protocol
        """Return the raw response body for *request*."""


class AssistantClient:
    """POST prompts to the assistant webhook and return the raw reply text."""

    def __init__(
        self,
        settings: AssistantSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = httpx.Timeout(settings.timeout_seconds)

    # ------------------------------------------------------------------
    @property
    def endpoint(self) -> str:
        return self.settings.resolve_endpoint()

    # ------------------------------------------------------------------
    async def complete(
        self,
        request: AssistantRequest,
        *,
        cancellation: CancellationToken | None = None,
    ) -> str:
        """Send *request* and return the response body.

        Raises
        ------
        OperationCancelledError
            When *cancellation* fires before the response arrives.
        AssistantHTTPError
            When the endpoint answers with a non-success status.
        AssistantRequestError
            When the endpoint cannot be reached.
        """
        raise_if_cancelled(cancellation)
        endpoint = self.endpoint
        payload = request.to_payload()
        task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        registration = None
        armed = True

        def cancel_request() -> None:
            # Runs on the loop; a late callback must not hit the finished call.
            if armed and task is not None and not task.done():
                task.cancel()

        if cancellation is not None and task is not None:
            registration = cancellation.register(
                lambda: loop.call_soon_threadsafe(cancel_request)
            )

        start = time.monotonic()
        log_event(
            "ASSISTANT_REQUEST",
            {
                "endpoint": endpoint,
                "identity": request.identity,
                "history_length": len(request.history),
                "prompt_length": len(request.prompt),
            },
        )
        log_debug_payload("ASSISTANT_REQUEST", {"endpoint": endpoint, "body": payload})
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    endpoint,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                body = response.text
        except asyncio.CancelledError:
            if cancellation is None or not cancellation.cancelled:
                raise
            if task is not None:
                task.uncancel()
            log_event(
                "ASSISTANT_RESPONSE",
                {"cancelled": True, "reason": cancellation.reason},
                start_time=start,
            )
            raise OperationCancelledError(cancellation.reason) from None
        except httpx.HTTPError as exc:
            message = str(exc).strip() or UNREACHABLE_MESSAGE
            log_event(
                "ASSISTANT_RESPONSE",
                {"error": {"type": type(exc).__name__, "message": message}},
                start_time=start,
                level=logging.WARNING,
            )
            raise AssistantRequestError(message) from exc
        finally:
            armed = False
            if registration is not None:
                registration.dispose()

        if cancellation is not None and cancellation.cancelled:
            log_event(
                "ASSISTANT_RESPONSE",
                {"cancelled": True, "reason": cancellation.reason},
                start_time=start,
            )
            raise OperationCancelledError(cancellation.reason)

        if not response.is_success:
            message = body.strip() or UNAVAILABLE_MESSAGE
            log_event(
                "ASSISTANT_RESPONSE",
                {"status": response.status_code, "error": {"message": message}},
                start_time=start,
                level=logging.WARNING,
            )
            raise AssistantHTTPError(message, status_code=response.status_code)

        log_event(
            "ASSISTANT_RESPONSE",
            {"status": response.status_code, "length": len(body)},
            start_time=start,
        )
        log_debug_payload("ASSISTANT_RESPONSE", {"direction": "inbound", "body": body})
        return body


__all__ = [
    "AssistantBackend",
    "AssistantClient",
    "AssistantRequest",
    "UNAVAILABLE_MESSAGE",
    "UNREACHABLE_MESSAGE",
]
