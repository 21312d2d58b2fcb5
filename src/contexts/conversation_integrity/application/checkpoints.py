"""Named snapshots of a chat's message set, and restoring back to them."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from src.contexts.conversation_integrity.application.errors import CheckpointError
from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.ports import ConversationRepository
from src.contexts.conversation_integrity.application.types import (
    ChatAggregate,
    Checkpoint,
    CheckpointPurgeStats,
    ConversationState,
    MessageRecord,
    MessageRole,
    RestoreResult,
    SnapshotEntry,
)
from src.contexts.conversation_integrity.application.validator import validate
from src.kernel.errors import NotFoundError
from src.kernel.hashing import build_message_digest
from src.kernel.time import utc_now

logger = structlog.get_logger()

DEFAULT_LIST_LIMIT = 10


def snapshot_entry(message: MessageRecord) -> SnapshotEntry:
    return SnapshotEntry(
        message_id=message.id,
        position=message.position,
        role=message.role,
        digest=build_message_digest(message.role, message.content, message.tool_call_id),
    )


def _checkpoint_context(chat: ChatAggregate) -> dict:
    last_user = next(
        (m for m in reversed(chat.messages) if m.role == MessageRole.USER),
        None,
    )
    return {
        "title": chat.title,
        "model_id": chat.model_id,
        "owner_id": chat.owner_id,
        "last_user_message_id": last_user.id if last_user else None,
    }


class CheckpointManager:
    def __init__(
        self,
        repository: ConversationRepository,
        *,
        policy: IntegrityPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._policy = policy
        self._clock = clock

    async def create_checkpoint(self, chat: ChatAggregate, label: str | None = None) -> Checkpoint:
        label = (label or "").strip() or f"checkpoint_{int(self._clock().timestamp())}"

        if await self._repository.get_checkpoint(chat.id, label) is not None:
            raise CheckpointError(
                message=f"Checkpoint {label!r} already exists",
                code="conversation.checkpoint_exists",
                meta={"chat_id": chat.id, "label": label},
            )

        checkpoint = await self._repository.create_checkpoint(
            chat_id=chat.id,
            label=label,
            conversation_state=chat.conversation_state,
            tool_calls_count=len(chat.tool_calls),
            snapshot=[snapshot_entry(message) for message in chat.messages],
            context=_checkpoint_context(chat),
        )
        logger.info(
            "Checkpoint created",
            chat_id=chat.id,
            label=label,
            message_count=checkpoint.message_count,
        )
        return checkpoint

    async def list_checkpoints(self, chat_id: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[Checkpoint]:
        return await self._repository.list_checkpoints(chat_id, limit=limit)

    async def restore_checkpoint(self, chat: ChatAggregate, label: str) -> RestoreResult:
        """
        Bring the chat's message set back to a checkpoint.

        Messages added after the checkpoint are removed. Snapshot messages that
        no longer exist cannot be resurrected and are reported as missing; the
        result is re-validated and the chat left `stable` or `needs_cleanup`.
        """
        checkpoint = await self._repository.get_checkpoint(chat.id, label)
        if checkpoint is None:
            raise NotFoundError(
                message=f"Checkpoint {label!r} not found",
                code="conversation.checkpoint_not_found",
                meta={"chat_id": chat.id, "label": label},
            )

        snapshot = {entry.message_id: entry for entry in checkpoint.snapshot}
        current = {message.id: message for message in chat.messages}

        removed = [m.id for m in chat.messages if m.id not in snapshot]
        missing = [message_id for message_id in snapshot if message_id not in current]
        altered = [
            message_id
            for message_id, entry in snapshot.items()
            if message_id in current and snapshot_entry(current[message_id]).digest != entry.digest
        ]

        await self._repository.delete_messages(chat.id, removed)
        await self._repository.resequence_messages(chat.id)

        restored = await self._repository.load_chat(chat.id)
        report = validate(restored or chat.without_messages(removed), self._policy)
        if report.is_healthy:
            state = ConversationState.STABLE
            await self._repository.set_conversation_state(chat.id, state, last_stable_at=self._clock())
        else:
            state = ConversationState.NEEDS_CLEANUP
            await self._repository.set_conversation_state(chat.id, state)

        logger.info(
            "Checkpoint restored",
            chat_id=chat.id,
            label=label,
            removed=len(removed),
            missing=len(missing),
            altered=len(altered),
            conversation_state=state.value,
        )
        return RestoreResult(
            chat_id=chat.id,
            label=label,
            removed_message_ids=removed,
            missing_message_ids=missing,
            altered_message_ids=altered,
            conversation_state=state,
            report=report,
        )

    async def purge_expired(self) -> CheckpointPurgeStats:
        """Drop checkpoints past retention and those whose chat is gone."""
        cutoff = self._clock() - self._policy.checkpoint_retention
        stats = CheckpointPurgeStats(
            expired=await self._repository.delete_checkpoints_created_before(cutoff),
            orphaned=await self._repository.delete_orphaned_checkpoints(),
        )
        if stats.total:
            logger.info(
                "Checkpoints purged",
                expired=stats.expired,
                orphaned=stats.orphaned,
            )
        return stats
