"""API routes package."""

from . import authorize, chat, debt, health, models

__all__ = ["authorize", "chat", "debt", "health", "models"]
