"""Independently persisted record of the outstanding assistant request."""

from __future__ import annotations

import json
import logging

from ..storage.kv import KeyValueStore
from ..telemetry import log_event
from ..util.json import dumps_compact, summarise_payload
from .model import PendingRequestMarker


logger = logging.getLogger(__name__)


class PendingMarkerStore:
    """Read, write and clear the single pending-request marker.

    Malformed payloads are logged, dropped from the store and reported as
    absent; reads never raise.
    """

    def __init__(self, store: KeyValueStore, key: str) -> None:
        self._store = store
        self._key = key

    # ------------------------------------------------------------------
    @property
    def key(self) -> str:
        return self._key

    # ------------------------------------------------------------------
    def read(self) -> PendingRequestMarker | None:
        try:
            raw = self._store.get(self._key)
        except Exception:
            logger.exception("Failed to read pending request marker %s", self._key)
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._drop_corrupted(raw, "Stored marker is not valid JSON.", exc)
            return None
        try:
            return PendingRequestMarker.from_dict(payload)
        except (ValueError, KeyError, TypeError) as exc:
            self._drop_corrupted(raw, f"Stored marker has an invalid shape: {exc}", None)
            return None

    # ------------------------------------------------------------------
    def write(self, marker: PendingRequestMarker) -> None:
        try:
            self._store.set(self._key, dumps_compact(marker.to_dict()))
        except Exception:
            logger.exception("Failed to persist pending request marker %s", self._key)
            return
        log_event(
            "MARKER_WRITE",
            {"key": self._key, "id": marker.id, "created_at": marker.created_at},
            level=logging.DEBUG,
        )

    # ------------------------------------------------------------------
    def clear(self) -> None:
        try:
            self._store.remove(self._key)
        except Exception:
            logger.exception("Failed to clear pending request marker %s", self._key)
            return
        log_event("MARKER_CLEAR", {"key": self._key}, level=logging.DEBUG)

    # ------------------------------------------------------------------
    def _drop_corrupted(
        self, raw: str, detail: str, exc: Exception | None
    ) -> None:
        snippet, length = summarise_payload(raw)
        logger.warning(
            "Discarding pending request marker %s. %s payload_length=%d, payload_preview=%r",
            self._key,
            detail,
            length,
            snippet,
            exc_info=exc,
        )
        try:
            self._store.remove(self._key)
        except Exception:
            logger.exception("Failed to prune corrupted marker %s", self._key)


__all__ = ["PendingMarkerStore"]
