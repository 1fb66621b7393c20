"""Crash-tolerant conversational assistant session engine."""

__version__ = "0.1.0"

__all__ = ["__version__"]
