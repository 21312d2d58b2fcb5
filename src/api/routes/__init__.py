"""API route modules."""

from . import conversation_health, health

__all__ = [
    "conversation_health",
    "health",
]
