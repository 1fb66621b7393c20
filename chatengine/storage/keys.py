"""Storage key layout for per-identity conversation state."""

from __future__ import annotations

from dataclasses import dataclass

GUEST_IDENTITY = "guest"
HISTORY_KEY_PREFIX = "ai-assistant-history-"
PENDING_META_SUFFIX = "::pending-meta"


def resolve_identity(
    user_id: str | None = None,
    email: str | None = None,
) -> str:
    """Return the first non-blank of *user_id* and *email*, else ``"guest"``."""
    for candidate in (user_id, email):
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text:
            return text
    return GUEST_IDENTITY


@dataclass(frozen=True, slots=True)
class StorageKeys:
    """The two independently written keys owned by one conversation."""

    identity: str
    messages: str
    marker: str


def storage_keys(identity: str | None) -> StorageKeys:
    """Return the key pair namespacing *identity*'s conversation."""
    resolved = resolve_identity(identity)
    messages = f"{HISTORY_KEY_PREFIX}{resolved}"
    return StorageKeys(
        identity=resolved,
        messages=messages,
        marker=f"{messages}{PENDING_META_SUFFIX}",
    )


__all__ = [
    "GUEST_IDENTITY",
    "StorageKeys",
    "resolve_identity",
    "storage_keys",
]
