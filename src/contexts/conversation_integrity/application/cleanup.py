"""Aggressive cleanup: archiving chats that are too broken to be worth repairing."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.ports import ConversationRepository
from src.contexts.conversation_integrity.application.recovery import ARCHIVED_REASON
from src.contexts.conversation_integrity.application.types import (
    ArchiveOutcome,
    ChatAggregate,
    ChatStatus,
    ConversationState,
    ViolationKind,
)
from src.kernel.time import utc_now

logger = structlog.get_logger()


class ChatArchiver:
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

    async def safe_for_aggressive_cleanup(self, chat: ChatAggregate) -> bool:
        """
        True only when archiving cannot surprise anyone.

        The chat must still be active, must not be part of an open recovery
        (on either side), and must have been idle for the configured window.
        """
        if chat.status != ChatStatus.ACTIVE:
            return False

        now = self._clock()
        if await self._repository.has_active_recovery_reference(chat.id, now):
            return False

        return now - chat.last_activity_at >= self._policy.aggressive_cleanup_min_idle

    async def archive_corrupted_chat(
        self,
        chat: ChatAggregate,
        original_error: ViolationKind | None = None,
    ) -> ArchiveOutcome:
        now = self._clock()
        title = f"{chat.title or 'Chat'} (Auto-Archived - Corrupted {now:%m/%d})"

        await self._repository.update_chat(
            chat.id,
            title=title,
            status=ChatStatus.ARCHIVED,
            conversation_state=ConversationState.ERROR,
            metadata_updates={
                "archived_reason": ARCHIVED_REASON,
                "original_error": original_error,
                "archived_at": now,
            },
        )

        replacement_chat_id = None
        if self._policy.spawn_replacement_chat and not await self._repository.owner_has_active_chat(
            chat.owner_id,
            exclude_chat_id=chat.id,
        ):
            replacement_chat_id = await self._repository.create_chat(
                owner_id=chat.owner_id,
                title=f"Chat {now:%m/%d %H:%M}",
                model_id=chat.model_id,
                conversation_state=ConversationState.STABLE,
                last_stable_at=now,
                metadata={"replaces_chat_id": chat.id},
            )

        logger.warning(
            "Corrupted conversation archived",
            chat_id=chat.id,
            owner_id=chat.owner_id,
            original_error=original_error.value if original_error else None,
            replacement_chat_id=replacement_chat_id,
        )
        return ArchiveOutcome(
            chat_id=chat.id,
            archived_title=title,
            original_error=original_error,
            replacement_chat_id=replacement_chat_id,
        )
