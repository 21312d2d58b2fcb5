from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.ports import ConversationRepository
from src.contexts.conversation_integrity.application.types import (
    ChatAggregate,
    ChatStatus,
    ConversationState,
    MergeResult,
    MergeStrategy,
)
from src.contexts.conversation_integrity.application.validator import validate
from src.kernel.errors import ValidationError
from src.kernel.time import utc_now

logger = structlog.get_logger()


class BranchMerger:
    """Folds a branch chat (typically a recovery branch) back into a main chat."""

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

    async def merge(
        self,
        chat: ChatAggregate,
        branch: ChatAggregate,
        strategy: MergeStrategy = MergeStrategy.APPEND,
    ) -> MergeResult:
        strategy = MergeStrategy(strategy)
        if strategy == MergeStrategy.INTERLEAVE:
            raise ValidationError(
                message="Interleave merge is not supported",
                code="conversation.merge_strategy_unsupported",
                meta={"strategy": strategy.value},
            )
        if chat.id == branch.id:
            raise ValidationError(message="Cannot merge a chat into itself", code="conversation.merge_invalid")
        if chat.owner_id != branch.owner_id:
            raise ValidationError(
                message="Branch belongs to a different owner",
                code="conversation.merge_invalid",
                meta={"chat_id": chat.id, "branch_chat_id": branch.id},
            )

        now = self._clock()
        if strategy == MergeStrategy.REPLACE:
            await self._repository.delete_messages(chat.id, list(chat.message_ids))
            start_position = 1
            branch_title = f"{branch.title or 'Chat'} (Replaced Main)"
        else:
            start_position = len(chat.messages) + 1
            branch_title = f"{branch.title or 'Chat'} (Merged)"

        await self._repository.resequence_messages(chat.id)
        await self._repository.copy_messages(
            chat.id,
            branch.messages,
            start_position=start_position,
            extra_metadata={"merged_from_branch": branch.id},
        )
        await self._repository.update_chat(
            branch.id,
            title=branch_title,
            status=ChatStatus.ARCHIVED,
            metadata_updates={"merged_into": chat.id, "merged_at": now},
        )

        merged = await self._repository.load_chat(chat.id)
        report = validate(merged, self._policy)
        if report.is_healthy:
            state = ConversationState.STABLE
            await self._repository.set_conversation_state(chat.id, state, last_stable_at=now)
        else:
            state = ConversationState.NEEDS_CLEANUP
            await self._repository.set_conversation_state(chat.id, state)

        logger.info(
            "Branch merged",
            chat_id=chat.id,
            branch_chat_id=branch.id,
            strategy=strategy.value,
            merged_messages=len(branch.messages),
            conversation_state=state.value,
        )
        return MergeResult(
            chat_id=chat.id,
            branch_chat_id=branch.id,
            strategy=strategy,
            merged_message_count=len(branch.messages),
            conversation_state=state,
        )
