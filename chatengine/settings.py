"""Typed engine settings with Pydantic validation."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Literal

import tomllib
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


ASSISTANT_URL_ENV = "CHATENGINE_ASSISTANT_URL"
DEFAULT_ASSISTANT_ENDPOINT = "http://localhost:5678/webhook/chat"
DEFAULT_TIMEOUT_SECONDS = 120.0

DEFAULT_MAX_HISTORY = 40
DEFAULT_CONTEXT_WINDOW = 6
DEFAULT_RESUME_DEBOUNCE_MS = 500
DEFAULT_WELCOME_MESSAGE = (
    "Hi! I'm your political intelligence co-pilot. Ask about elections, "
    "coalitions, democratization, or policy shifts and I'll summarize recent "
    "reporting, academic perspectives, and relevant history."
)
DEFAULT_PLACEHOLDER_TEXT = "Analyzing your question..."


def _coerce_int(
    value: int | str | None,
    *,
    default: int,
    minimum: int,
    maximum: int | None = None,
) -> int:
    """Coerce *value* into ``[minimum, maximum]`` falling back to *default*."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise TypeError("Boolean is not a valid numeric setting")
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return default
        try:
            numeric = int(raw)
        except ValueError:  # pragma: no cover - delegated to Pydantic
            return value  # type: ignore[return-value]
    else:
        numeric = int(value)
    if numeric < minimum:
        return minimum
    if maximum is not None and numeric > maximum:
        return maximum
    return numeric


class AssistantSettings(BaseModel):
    """Settings for reaching the assistant endpoint."""

    model_config = ConfigDict(validate_assignment=True)

    endpoint: str = DEFAULT_ASSISTANT_ENDPOINT
    timeout_seconds: float = Field(DEFAULT_TIMEOUT_SECONDS, gt=0)

    @field_validator("endpoint", mode="before")
    @classmethod
    def _normalize_endpoint(cls, value: str | None) -> str:
        """Strip whitespace and fall back to the default endpoint when blank."""
        if value is None:
            return DEFAULT_ASSISTANT_ENDPOINT
        text = str(value).strip()
        return text or DEFAULT_ASSISTANT_ENDPOINT

    @field_validator("timeout_seconds", mode="before")
    @classmethod
    def _normalize_timeout(cls, value: float | str | None) -> float:
        if value is None:
            return DEFAULT_TIMEOUT_SECONDS
        if isinstance(value, str) and not value.strip():
            return DEFAULT_TIMEOUT_SECONDS
        return value  # type: ignore[return-value]

    def resolve_endpoint(self) -> str:
        """Return the endpoint honouring the ``CHATENGINE_ASSISTANT_URL`` override."""
        override = os.environ.get(ASSISTANT_URL_ENV, "").strip()
        return override or self.endpoint


class SessionSettings(BaseModel):
    """Settings controlling the conversation session engine."""

    model_config = ConfigDict(validate_assignment=True)

    max_history: int = DEFAULT_MAX_HISTORY
    context_window: int = DEFAULT_CONTEXT_WINDOW
    resume_debounce_ms: int = DEFAULT_RESUME_DEBOUNCE_MS
    welcome_message: str = DEFAULT_WELCOME_MESSAGE
    placeholder_text: str = DEFAULT_PLACEHOLDER_TEXT

    @field_validator("max_history", mode="before")
    @classmethod
    def _normalize_max_history(cls, value: int | str | None) -> int:
        """Keep room for at least one user/assistant pair."""
        return _coerce_int(value, default=DEFAULT_MAX_HISTORY, minimum=2)

    @field_validator("context_window", mode="before")
    @classmethod
    def _normalize_context_window(cls, value: int | str | None) -> int:
        """The window always carries the new user message."""
        return _coerce_int(value, default=DEFAULT_CONTEXT_WINDOW, minimum=1)

    @field_validator("resume_debounce_ms", mode="before")
    @classmethod
    def _normalize_debounce(cls, value: int | str | None) -> int:
        return _coerce_int(
            value,
            default=DEFAULT_RESUME_DEBOUNCE_MS,
            minimum=0,
            maximum=60_000,
        )

    @field_validator("welcome_message", "placeholder_text", mode="before")
    @classmethod
    def _normalize_text(cls, value: str | None, info) -> str:
        defaults = {
            "welcome_message": DEFAULT_WELCOME_MESSAGE,
            "placeholder_text": DEFAULT_PLACEHOLDER_TEXT,
        }
        if value is None:
            return defaults[info.field_name]
        text = str(value).strip()
        return text or defaults[info.field_name]


def default_storage_path() -> str:
    """Return the default on-disk location for conversation state."""
    return str(Path.home() / ".chatengine" / "conversations.sqlite")


class StorageSettings(BaseModel):
    """Settings selecting the key-value persistence backend."""

    model_config = ConfigDict(validate_assignment=True)

    backend: Literal["memory", "sqlite", "json"] = "sqlite"
    path: str = Field(default_factory=default_storage_path)

    @field_validator("path", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> str:
        if value is None:
            return default_storage_path()
        text = str(value).strip()
        return text or default_storage_path()


class LoggingSettings(BaseModel):
    """Settings for the package logger."""

    model_config = ConfigDict(validate_assignment=True)

    level: int = Field(default=logging.INFO)
    log_dir: str | None = None

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: int | str | None) -> int:
        """Accept level names such as ``"debug"`` as well as numbers."""
        if value is None:
            return logging.INFO
        if isinstance(value, str):
            name = value.strip().upper()
            if not name:
                return logging.INFO
            if name.isdigit():
                return int(name)
            resolved = logging.getLevelName(name)
            if isinstance(resolved, int):
                return resolved
            raise ValueError(f"Unknown log level: {value!r}")
        return value

    @field_validator("log_dir", mode="before")
    @classmethod
    def _normalize_log_dir(cls, value: str | Path | None) -> str | None:
        """Convert empty strings to ``None``."""
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class AppSettings(BaseModel):
    """Aggregate settings for the engine and its CLI."""

    model_config = ConfigDict(validate_assignment=True)

    assistant: AssistantSettings = Field(default_factory=AssistantSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def to_dict(self) -> dict:
        """Return settings as a plain dictionary."""
        return self.model_dump()


def load_app_settings(path: str | Path) -> AppSettings:
    """Load :class:`AppSettings` from *path* with validation.

    Format is detected by file extension: ``.toml`` uses :mod:`tomllib`,
    everything else is treated as JSON.  Any validation errors are wrapped into
    :class:`ValueError` with a human-friendly message.
    """
    p = Path(path)
    with p.open("rb") as fh:
        data = tomllib.load(fh) if p.suffix.lower() == ".toml" else json.load(fh)
    try:
        return AppSettings.model_validate(data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


__all__ = [
    "ASSISTANT_URL_ENV",
    "AppSettings",
    "AssistantSettings",
    "LoggingSettings",
    "SessionSettings",
    "StorageSettings",
    "load_app_settings",
]
