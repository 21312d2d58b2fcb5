from __future__ import annotations

from typing import Any

from src.kernel.errors import ConflictError, ListopiaError


class StateCorruptionError(ListopiaError):
    """No non-empty valid prefix exists, so a recovery branch cannot be built."""

    default_code = "conversation.state_corruption"
    default_status_code = 409

    def __init__(self, *, chat_id: str, meta: dict[str, Any] | None = None):
        super().__init__(
            message=f"Conversation {chat_id} has no recoverable prefix",
            meta={"chat_id": chat_id, **(meta or {})},
        )
        self.chat_id = chat_id


class ConcurrentModificationError(ConflictError):
    default_code = "conversation.concurrent_modification"

    def __init__(self, *, chat_id: str, meta: dict[str, Any] | None = None):
        super().__init__(
            message=f"Conversation {chat_id} changed while it was being repaired",
            meta={"chat_id": chat_id, **(meta or {})},
        )
        self.chat_id = chat_id


class CheckpointError(ListopiaError):
    default_code = "conversation.checkpoint_error"
    default_message = "Checkpoint operation failed"
    default_status_code = 409
