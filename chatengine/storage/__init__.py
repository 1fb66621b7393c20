"""Persistence substrate for conversation state."""

from __future__ import annotations

import sqlite3

from ..errors import StorageError
from ..settings import StorageSettings
from .keys import GUEST_IDENTITY, StorageKeys, resolve_identity, storage_keys
from .kv import (
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
)


def open_store(settings: StorageSettings) -> KeyValueStore:
    """Instantiate the backend selected by *settings*.

    Raises :class:`StorageError` when an on-disk database cannot be opened.
    """
    if settings.backend == "memory":
        return MemoryKeyValueStore()
    if settings.backend == "json":
        return JsonFileKeyValueStore(settings.path)
    store = SqliteKeyValueStore(settings.path)
    try:
        store.check()
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"Cannot open conversation store {settings.path}: {exc}") from exc
    return store


__all__ = [
    "GUEST_IDENTITY",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "StorageKeys",
    "open_store",
    "resolve_identity",
    "storage_keys",
]
