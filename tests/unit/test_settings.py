import json
import logging
from pathlib import Path

import pytest

from chatengine.settings import (
    ASSISTANT_URL_ENV,
    AppSettings,
    AssistantSettings,
    LoggingSettings,
    SessionSettings,
    StorageSettings,
    load_app_settings,
)

pytestmark = pytest.mark.unit


def test_session_defaults():
    settings = SessionSettings()

    assert settings.max_history == 40
    assert settings.context_window == 6
    assert settings.resume_debounce_ms == 500
    assert settings.placeholder_text == "Analyzing your question..."
    assert settings.welcome_message


def test_session_numeric_coercion_and_clamping():
    settings = SessionSettings(
        max_history="",
        context_window="0",
        resume_debounce_ms=10_000_000,
    )

    assert settings.max_history == 40
    assert settings.context_window == 1
    assert settings.resume_debounce_ms == 60_000


def test_session_rejects_boolean_numbers():
    with pytest.raises((TypeError, ValueError)):
        SessionSettings(max_history=True)


def test_blank_texts_fall_back_to_defaults():
    settings = SessionSettings(welcome_message="  ", placeholder_text=None)

    assert settings.welcome_message == SessionSettings().welcome_message
    assert settings.placeholder_text == "Analyzing your question..."


def test_assistant_endpoint_env_override(monkeypatch: pytest.MonkeyPatch):
    settings = AssistantSettings(endpoint="http://configured/chat")
    assert settings.resolve_endpoint() == "http://configured/chat"

    monkeypatch.setenv(ASSISTANT_URL_ENV, "http://override/chat")

    assert settings.resolve_endpoint() == "http://override/chat"


def test_logging_level_accepts_names():
    assert LoggingSettings(level="debug").level == logging.DEBUG
    assert LoggingSettings(level="").level == logging.INFO
    with pytest.raises(ValueError):
        LoggingSettings(level="chatty")


def test_storage_blank_path_uses_default():
    settings = StorageSettings(path="  ")

    assert settings.path.endswith("conversations.sqlite")


def test_load_json_settings(tmp_path: Path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "assistant": {"endpoint": "http://example/chat"},
                "session": {"max_history": 10},
                "storage": {"backend": "memory"},
            }
        ),
        encoding="utf-8",
    )

    settings = load_app_settings(path)

    assert settings.assistant.endpoint == "http://example/chat"
    assert settings.session.max_history == 10
    assert settings.storage.backend == "memory"


def test_load_toml_settings(tmp_path: Path):
    path = tmp_path / "settings.toml"
    path.write_text(
        "[session]\nresume_debounce_ms = 250\n\n[logging]\nlevel = \"warning\"\n",
        encoding="utf-8",
    )

    settings = load_app_settings(path)

    assert settings.session.resume_debounce_ms == 250
    assert settings.logging.level == logging.WARNING


def test_invalid_settings_raise_value_error(tmp_path: Path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"storage": {"backend": "redis"}}), encoding="utf-8")

    with pytest.raises(ValueError):
        load_app_settings(path)


def test_to_dict_round_trips():
    settings = AppSettings()

    assert AppSettings.model_validate(settings.to_dict()) == settings
