"""Logging setup for chatengine.

Records go to three sinks: the console, a rotating text log and a rotating
JSON-lines log. Structured events (see :mod:`chatengine.telemetry`) attach a
``json`` mapping to the record; the JSON sink writes it as the line body and
the console appends its payload to the message.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .util.time import utc_now_iso

LOG_DIR_ENV = "CHATENGINE_LOG_DIR"
_HOME_LOG_DIR = Path(".chatengine") / "logs"
_TEXT_LOG_NAME = "chatengine.log"
_JSON_LOG_NAME = "chatengine.jsonl"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUPS = 5
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("chatengine")

_conversation: contextvars.ContextVar[tuple[str, str | None] | None] = (
    contextvars.ContextVar("chatengine_conversation", default=None)
)
_log_dir: Path | None = None


@contextmanager
def conversation_context(identity: str, request_id: str | None = None) -> Iterator[None]:
    """Tag records emitted inside the block with *identity* and *request_id*.

    The context follows :mod:`contextvars` semantics, so it is scoped to the
    asyncio task that entered it.
    """
    token = _conversation.set((identity, request_id))
    try:
        yield
    finally:
        _conversation.reset(token)


class ConversationFilter(logging.Filter):
    """Copy the active conversation context onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _conversation.get()
        if context is not None:
            record.identity, record.request_id = context
        return True


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the JSON document describing *record*."""
    extra = getattr(record, "json", None)
    if isinstance(extra, dict):
        data = dict(extra)
    elif extra is None:
        data = {}
    else:
        data = {"data": extra}
    data.setdefault("message", record.getMessage())
    data.setdefault("level", record.levelname)
    data.setdefault("logger", record.name)
    for attr in ("identity", "request_id"):
        value = getattr(record, attr, None)
        if value is not None:
            data.setdefault(attr, value)
    data.setdefault("timestamp", utc_now_iso())
    return data


class ConsoleFormatter(logging.Formatter):
    """``LEVEL: message``, followed by the payload of telemetry events."""

    def __init__(self) -> None:
        super().__init__("%(levelname)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        extra = getattr(record, "json", None)
        if not isinstance(extra, dict) or extra.get("event") != record.msg:
            return text
        payload = extra.get("payload")
        if not payload:
            return text
        return f"{text} {json.dumps(payload, ensure_ascii=False, default=str)}"


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        data = structured_fields(record)
        if record.exc_info and "exc_info" not in data:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


class JsonlHandler(RotatingFileHandler):
    """Rotating file handler writing :class:`JsonFormatter` lines."""

    def __init__(
        self,
        filename: Path | str,
        *,
        max_bytes: int = _MAX_BYTES,
        backup_count: int = _BACKUPS,
    ) -> None:
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        self.setFormatter(JsonFormatter())


def _resolve_log_dir(log_dir: str | Path | None) -> Path:
    """Pick *log_dir*, then ``$CHATENGINE_LOG_DIR``, then ``~/.chatengine/logs``."""
    if log_dir is not None:
        path = Path(log_dir).expanduser()
    elif os.environ.get(LOG_DIR_ENV):
        path = Path(os.environ[LOG_DIR_ENV]).expanduser()
    else:
        path = Path.home() / _HOME_LOG_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path.resolve()


def _build_handlers(directory: Path, level: int, console: bool) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if console and sys.stderr is not None:
        stream = logging.StreamHandler()
        stream.setLevel(level)
        stream.setFormatter(ConsoleFormatter())
        handlers.append(stream)

    text = RotatingFileHandler(
        directory / _TEXT_LOG_NAME,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUPS,
        encoding="utf-8",
    )
    text.setLevel(logging.DEBUG)
    text.setFormatter(logging.Formatter(_TEXT_FORMAT))
    handlers.append(text)

    structured = JsonlHandler(directory / _JSON_LOG_NAME)
    structured.setLevel(logging.DEBUG)
    handlers.append(structured)
    return handlers


def configure_logging(
    level: int = logging.INFO,
    *,
    log_dir: str | Path | None = None,
    console: bool = True,
) -> None:
    """Attach the chatengine sinks to :data:`logger`.

    Only the first call installs handlers; later calls merely record the log
    directory if none is known yet. *level* applies to the console, the file
    sinks always receive DEBUG records.
    """
    global _log_dir

    if logger.handlers:
        if _log_dir is None:
            _log_dir = _resolve_log_dir(log_dir)
        return

    directory = _resolve_log_dir(log_dir)
    _log_dir = directory
    context_filter = ConversationFilter()
    for handler in _build_handlers(directory, level, console):
        handler.addFilter(context_filter)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)


def get_log_directory() -> Path:
    """Return the directory holding the log files, configuring logging if needed."""
    if _log_dir is None:
        configure_logging()
    assert _log_dir is not None
    return _log_dir


def get_log_file_paths() -> tuple[Path, Path]:
    """Return the text and JSON-lines log paths."""
    directory = get_log_directory()
    return directory / _TEXT_LOG_NAME, directory / _JSON_LOG_NAME


__all__ = [
    "ConsoleFormatter",
    "ConversationFilter",
    "JsonFormatter",
    "JsonlHandler",
    "LOG_DIR_ENV",
    "configure_logging",
    "conversation_context",
    "get_log_directory",
    "get_log_file_paths",
    "logger",
    "structured_fields",
]
