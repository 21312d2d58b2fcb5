"""
Recovery branch creator.

Forks the longest valid prefix of a broken chat into a fresh chat owned by
the same user. The original's messages are never modified; it is marked
`error` (and archived when configured) and linked to the branch through a
time-limited recovery context.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from src.contexts.conversation_integrity.application.errors import StateCorruptionError
from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.ports import ConversationRepository
from src.contexts.conversation_integrity.application.types import (
    ChatAggregate,
    ChatStatus,
    ConversationState,
    RecoveryBranch,
    RecoveryDiagnostics,
    RecoveryPurgeStats,
    ViolationReport,
)
from src.contexts.conversation_integrity.application.validator import longest_valid_prefix
from src.kernel.time import utc_now

logger = structlog.get_logger()

ARCHIVED_REASON = "conversation_integrity_failure"


class RecoveryBranchCreator:
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

    async def create_recovery_branch(
        self,
        chat: ChatAggregate,
        report: ViolationReport,
    ) -> RecoveryBranch:
        now = self._clock()

        existing = await self._repository.find_active_recovery_context(chat.id, now)
        if existing is not None:
            await self._repository.set_conversation_state(chat.id, ConversationState.ERROR)
            logger.info(
                "Recovery branch already exists",
                chat_id=chat.id,
                recovery_chat_id=existing.recovery_chat_id,
            )
            return RecoveryBranch(
                original_chat_id=chat.id,
                recovery_chat_id=existing.recovery_chat_id,
                recovery_context_id=existing.id,
                copied_message_count=int(existing.diagnostics.get("truncation_point", 0)),
                reused=True,
            )

        # Contexts expire; the link written on the original does not.
        recorded_chat_id = chat.metadata.get("recovery_chat_id")
        if recorded_chat_id:
            await self._repository.set_conversation_state(chat.id, ConversationState.ERROR)
            logger.info(
                "Recovery branch already recorded on chat",
                chat_id=chat.id,
                recovery_chat_id=recorded_chat_id,
            )
            return RecoveryBranch(
                original_chat_id=chat.id,
                recovery_chat_id=recorded_chat_id,
                copied_message_count=int(chat.metadata.get("recovery_truncation_point", 0)),
                reused=True,
            )

        truncation_point = longest_valid_prefix(chat)
        if truncation_point == 0:
            raise StateCorruptionError(
                chat_id=chat.id,
                meta={"violations": report.counts()},
            )

        original_error = report.dominant_kind()
        diagnostics = RecoveryDiagnostics(
            original_message_count=len(chat.messages),
            truncation_point=truncation_point,
            first_invalid_message_id=(
                chat.messages[truncation_point].id
                if truncation_point < len(chat.messages)
                else None
            ),
            violation_counts=report.counts(),
            original_error=original_error,
            health_score=report.health_score,
        )

        recovery_chat_id = await self._repository.create_chat(
            owner_id=chat.owner_id,
            title=f"{chat.title or 'Chat'} (Recovery {now:%H:%M})",
            model_id=chat.model_id,
            conversation_state=ConversationState.STABLE,
            last_stable_at=now,
            metadata={"recovered_from": chat.id, "recovered_at": now},
        )
        copied = await self._repository.copy_messages(
            recovery_chat_id,
            chat.messages[:truncation_point],
        )

        original_updates = {
            "recovery_chat_id": recovery_chat_id,
            "recovery_truncation_point": truncation_point,
            "original_error": original_error,
        }
        if self._policy.archive_on_recovery:
            await self._repository.update_chat(
                chat.id,
                title=f"{chat.title or 'Chat'} (Corrupted - {now:%H:%M})",
                status=ChatStatus.ARCHIVED,
                conversation_state=ConversationState.ERROR,
                metadata_updates={
                    **original_updates,
                    "archived_reason": ARCHIVED_REASON,
                    "archived_at": now,
                },
            )
        else:
            await self._repository.update_chat(
                chat.id,
                conversation_state=ConversationState.ERROR,
                metadata_updates=original_updates,
            )

        context_id = await self._repository.create_recovery_context(
            original_chat_id=chat.id,
            recovery_chat_id=recovery_chat_id,
            owner_id=chat.owner_id,
            diagnostics=diagnostics.model_dump(mode="json"),
            expires_at=now + self._policy.recovery_context_ttl,
        )

        logger.info(
            "Recovery branch created",
            chat_id=chat.id,
            recovery_chat_id=recovery_chat_id,
            copied_messages=len(copied),
            original_messages=len(chat.messages),
            archived=self._policy.archive_on_recovery,
        )
        return RecoveryBranch(
            original_chat_id=chat.id,
            recovery_chat_id=recovery_chat_id,
            recovery_context_id=context_id,
            copied_message_count=len(copied),
        )

    async def purge_stale_contexts(self) -> RecoveryPurgeStats:
        """Drop expired contexts and those whose chats are gone."""
        now = self._clock()
        stats = RecoveryPurgeStats(
            expired=await self._repository.delete_expired_recovery_contexts(now),
            orphaned=await self._repository.delete_orphaned_recovery_contexts(),
        )
        if stats.total:
            logger.info(
                "Recovery contexts purged",
                expired=stats.expired,
                orphaned=stats.orphaned,
            )
        return stats
