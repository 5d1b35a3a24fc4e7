"""API routes package."""

from . import ai, cache, circuits, documents, health

__all__ = ["ai", "cache", "circuits", "documents", "health"]
