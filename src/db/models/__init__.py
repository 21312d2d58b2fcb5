"""Database models."""

from src.db.models.conversations import (
    Base,
    Chat,
    Message,
    ToolCall,
)
from src.db.models.conversation_recovery import (
    ConversationCheckpoint,
    RecoveryContext,
)

__all__ = [
    "Base",
    "Chat",
    "Message",
    "ToolCall",
    "ConversationCheckpoint",
    "RecoveryContext",
]
