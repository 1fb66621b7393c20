"""Pytest configuration for the chatengine test suite."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

import chatengine.log as log_module
from chatengine.log import LOG_DIR_ENV, logger
from chatengine.settings import ASSISTANT_URL_ENV, SessionSettings
from chatengine.storage.kv import MemoryKeyValueStore
from tests.session_utils import FakeClock, ScriptedBackend, SequentialIds


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep log files and endpoint overrides out of the developer's home."""

    monkeypatch.setenv(LOG_DIR_ENV, str(tmp_path / "logs"))
    monkeypatch.delenv(ASSISTANT_URL_ENV, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def session_settings() -> SessionSettings:
    return SessionSettings(welcome_message="Welcome!")


@pytest.fixture
def reset_logger():
    """Detach handlers installed by ``configure_logging`` after the test."""

    prev_handlers = list(logger.handlers)
    prev_level = logger.level
    prev_log_dir = log_module._log_dir
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    log_module._log_dir = None
    try:
        yield
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.handlers.extend(prev_handlers)
        logger.setLevel(prev_level)
        log_module._log_dir = prev_log_dir
