"""Assistant endpoint integration."""

from typing import TYPE_CHECKING, Any

__all__ = ["AssistantClient", "AssistantRequest"]

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from .client import AssistantClient, AssistantRequest


def __getattr__(name: str) -> Any:
    """Lazily expose the HTTP client to avoid import cycles."""
    if name in __all__:
        from . import client

        return getattr(client, name)
    raise AttributeError(f"module 'chatengine.assistant' has no attribute {name!r}")
