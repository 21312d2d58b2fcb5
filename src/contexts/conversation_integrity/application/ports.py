"""Ports the integrity use-cases depend on.

Application code only talks to these protocols; the SQLAlchemy adapter lives
in the infrastructure package and is bound per unit of work.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

from src.contexts.conversation_integrity.application.types import (
    ChatAggregate,
    Checkpoint,
    MessageRecord,
    RecoveryContextRecord,
    SnapshotEntry,
)
from src.monitoring.health import ComponentHealth


class ConversationRepository(Protocol):
    """Data access for chats, messages, tool calls and recovery records."""

    # Chats and messages
    async def load_chat(self, chat_id: str, *, lock: bool = False) -> ChatAggregate | None:
        ...

    async def list_message_ids(self, chat_id: str) -> list[str]:
        ...

    async def delete_messages(self, chat_id: str, message_ids: Sequence[str]) -> int:
        ...

    async def resequence_messages(self, chat_id: str) -> int:
        ...

    async def set_conversation_state(
        self,
        chat_id: str,
        state: str,
        *,
        last_stable_at: datetime | None = None,
    ) -> None:
        ...

    async def update_chat(
        self,
        chat_id: str,
        *,
        title: str | None = None,
        status: str | None = None,
        conversation_state: str | None = None,
        metadata_updates: Mapping[str, Any] | None = None,
    ) -> None:
        ...

    async def create_chat(
        self,
        *,
        owner_id: str,
        title: str,
        model_id: str | None,
        conversation_state: str,
        last_stable_at: datetime | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        ...

    async def copy_messages(
        self,
        target_chat_id: str,
        messages: Sequence[MessageRecord],
        *,
        start_position: int = 1,
        extra_metadata: Mapping[str, Any] | None = None,
    ) -> list[str]:
        ...

    async def owner_has_active_chat(self, owner_id: str, *, exclude_chat_id: str) -> bool:
        ...

    async def list_candidate_chat_ids(
        self,
        *,
        stale_before: datetime,
        after_id: str | None,
        limit: int,
    ) -> list[str]:
        ...

    async def count_active_chats_by_state(self) -> dict[str, int]:
        ...

    async def list_archived_failures(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        ...

    async def count_archived_failures_by_error(self, *, since: datetime) -> dict[str, int]:
        ...

    # Recovery contexts
    async def find_active_recovery_context(
        self,
        original_chat_id: str,
        now: datetime,
    ) -> RecoveryContextRecord | None:
        ...

    async def has_active_recovery_reference(self, chat_id: str, now: datetime) -> bool:
        ...

    async def create_recovery_context(
        self,
        *,
        original_chat_id: str,
        recovery_chat_id: str,
        owner_id: str,
        diagnostics: Mapping[str, Any],
        expires_at: datetime,
    ) -> str:
        ...

    async def count_active_recovery_contexts(self, now: datetime) -> int:
        ...

    async def delete_expired_recovery_contexts(self, now: datetime) -> int:
        ...

    async def delete_orphaned_recovery_contexts(self) -> int:
        ...

    # Checkpoints
    async def get_checkpoint(self, chat_id: str, label: str) -> Checkpoint | None:
        ...

    async def list_checkpoints(self, chat_id: str, *, limit: int) -> list[Checkpoint]:
        ...

    async def create_checkpoint(
        self,
        *,
        chat_id: str,
        label: str,
        conversation_state: str,
        tool_calls_count: int,
        snapshot: Sequence[SnapshotEntry],
        context: Mapping[str, Any],
    ) -> Checkpoint:
        ...

    async def delete_checkpoints_created_before(self, cutoff: datetime) -> int:
        ...

    async def delete_orphaned_checkpoints(self) -> int:
        ...


class CompletionServiceProbe(Protocol):
    """Liveness probe for the external completion service."""

    async def check(self) -> ComponentHealth:
        ...
