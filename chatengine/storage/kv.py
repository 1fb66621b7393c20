"""Key-value persistence backends for conversation state."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import closing
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..util.json import summarise_payload


logger = logging.getLogger(__name__)


_SCHEMA_VERSION = 1


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal text-valued store the session engine persists into."""

    def get(self, key: str) -> str | None:  # pragma: no cover - protocol
        """Return the value stored under *key* or ``None``."""

    def set(self, key: str, value: str) -> None:  # pragma: no cover - protocol
        """Store *value* under *key*, replacing any previous value."""

    def remove(self, key: str) -> None:  # pragma: no cover - protocol
        """Delete *key*; missing keys are ignored."""


class MemoryKeyValueStore:
    """Dictionary-backed store for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqliteKeyValueStore:
    """Persist key-value pairs in a single SQLite database file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()

    # ------------------------------------------------------------------
    @property
    def path(self) -> Path:
        """Return the SQLite database path."""
        return self._path

    # ------------------------------------------------------------------
    def get(self, key: str) -> str | None:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                row = conn.execute(
                    "SELECT value FROM entries WHERE key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error:
            logger.exception("Failed to read %s from %s", key, self._path)
            return None
        if row is None:
            return None
        value = row["value"]
        if not isinstance(value, str):
            snippet, length = summarise_payload(value)
            logger.error(
                "Stored value for %s in %s is not text; payload_length=%d, payload_preview=%r",
                key,
                self._path,
                length,
                snippet,
            )
            return None
        return value

    # ------------------------------------------------------------------
    def set(self, key: str, value: str) -> None:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                with conn:
                    conn.execute(
                        """
                        INSERT INTO entries (key, value)
                        VALUES (?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = excluded.value
                        """,
                        (key, value),
                    )
        except sqlite3.Error:
            logger.exception("Failed to persist %s to %s", key, self._path)
            raise

    # ------------------------------------------------------------------
    def remove(self, key: str) -> None:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                with conn:
                    conn.execute("DELETE FROM entries WHERE key = ?", (key,))
        except sqlite3.Error:
            logger.exception("Failed to remove %s from %s", key, self._path)
            raise

    # ------------------------------------------------------------------
    def keys(self) -> list[str]:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                rows = conn.execute("SELECT key FROM entries ORDER BY key").fetchall()
        except sqlite3.Error:  # pragma: no cover - defensive logging
            logger.exception("Failed to list keys in %s", self._path)
            return []
        return [row["key"] for row in rows]

    # ------------------------------------------------------------------
    def check(self) -> None:
        """Open the database and verify its schema, raising on failure."""
        with closing(self._connect()) as conn:
            self._ensure_schema(conn)

    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        path = self._path
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = ?",
            ("schema_version",),
        ).fetchone()
        if row is None:
            with conn:
                conn.execute(
                    "INSERT INTO metadata (key, value) VALUES (?, ?)",
                    ("schema_version", str(_SCHEMA_VERSION)),
                )
        elif row["value"] != str(_SCHEMA_VERSION):
            raise sqlite3.DatabaseError(
                f"Unsupported conversation store schema version: {row['value']!r}"
            )


class JsonFileKeyValueStore:
    """Keep every key in one JSON object file rewritten atomically."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, str) else None

    # ------------------------------------------------------------------
    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    # ------------------------------------------------------------------
    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key not in data:
                return
            del data[key]
            self._write(data)

    # ------------------------------------------------------------------
    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._read())

    # ------------------------------------------------------------------
    def _read(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            snippet, length = summarise_payload(raw)
            logger.error(
                "Ignoring corrupted conversation store %s; payload_length=%d, payload_preview=%r",
                self._path,
                length,
                snippet,
                exc_info=exc,
            )
            return {}
        if not isinstance(payload, dict):
            logger.error("Conversation store %s is not a JSON object", self._path)
            return {}
        return {str(k): v for k, v in payload.items() if isinstance(v, str)}

    # ------------------------------------------------------------------
    def _write(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


__all__ = [
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
]
