"""
Conversation integrity service.

Facade over the healer, recovery, checkpoint, cleanup and merge use-cases.
Every public method is one unit of work: it opens a session scope, binds a
repository to it, and commits or rolls back as a whole.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

import structlog

from src.contexts.conversation_integrity.application.checkpoints import (
    DEFAULT_LIST_LIMIT,
    CheckpointManager,
)
from src.contexts.conversation_integrity.application.cleanup import ChatArchiver
from src.contexts.conversation_integrity.application.errors import (
    ConcurrentModificationError,
    StateCorruptionError,
)
from src.contexts.conversation_integrity.application.healer import StateHealer
from src.contexts.conversation_integrity.application.merge import BranchMerger
from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.ports import ConversationRepository
from src.contexts.conversation_integrity.application.recovery import RecoveryBranchCreator
from src.contexts.conversation_integrity.application.types import (
    ArchiveOutcome,
    ChatAggregate,
    Checkpoint,
    CheckpointPurgeStats,
    ConversationState,
    HealResult,
    HealStatus,
    HealthMetrics,
    IntegrityStats,
    MergeResult,
    MergeStrategy,
    RecoveryBranch,
    RecoveryPurgeStats,
    RestoreResult,
)
from src.contexts.conversation_integrity.application.validator import validate
from src.contexts.conversation_integrity.infrastructure.sql_repository import (
    SqlConversationRepository,
)
from src.db.client import SessionScope, get_db_session
from src.kernel.errors import NotFoundError
from src.kernel.time import utc_now

logger = structlog.get_logger()

RepositoryFactory = Callable[..., ConversationRepository]


async def _require_chat(
    repository: ConversationRepository,
    chat_id: str,
    *,
    lock: bool = False,
) -> ChatAggregate:
    chat = await repository.load_chat(chat_id, lock=lock)
    if chat is None:
        raise NotFoundError(
            message=f"Chat {chat_id} not found",
            code="conversation.chat_not_found",
            meta={"chat_id": chat_id},
        )
    return chat


class ConversationIntegrityService:
    def __init__(
        self,
        session_scope: SessionScope = get_db_session,
        *,
        policy: IntegrityPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        repository_factory: RepositoryFactory = SqlConversationRepository,
    ) -> None:
        self._session_scope = session_scope
        self._policy = policy or IntegrityPolicy.from_settings()
        self._clock = clock
        self._repository_factory = repository_factory

    @property
    def policy(self) -> IntegrityPolicy:
        return self._policy

    def _repository(self, session) -> ConversationRepository:
        return self._repository_factory(session, clock=self._clock)

    def _recovery(self, repository: ConversationRepository) -> RecoveryBranchCreator:
        return RecoveryBranchCreator(repository, policy=self._policy, clock=self._clock)

    def _healer(self, repository: ConversationRepository) -> StateHealer:
        return StateHealer(
            repository,
            recovery=self._recovery(repository),
            policy=self._policy,
            clock=self._clock,
        )

    def _checkpoints(self, repository: ConversationRepository) -> CheckpointManager:
        return CheckpointManager(repository, policy=self._policy, clock=self._clock)

    def _archiver(self, repository: ConversationRepository) -> ChatArchiver:
        return ChatArchiver(repository, policy=self._policy, clock=self._clock)

    # ------------------------------------------------------------------
    # Healing
    # ------------------------------------------------------------------

    async def validate_and_heal(self, chat_id: str) -> HealResult:
        try:
            async with self._session_scope() as session:
                repository = self._repository(session)
                chat = await _require_chat(repository, chat_id, lock=True)
                return await self._healer(repository).validate_and_heal(chat)
        except StateCorruptionError:
            # Nothing valid to salvage; the rollback undid the state write too.
            await self.mark_conversation_state(chat_id, ConversationState.ERROR)
            logger.warning("Conversation marked unrecoverable", chat_id=chat_id)
            raise
        except ConcurrentModificationError as exc:
            logger.warning(
                "Conversation repair aborted after concurrent write",
                chat_id=chat_id,
                error=exc.message,
            )

        # The repair transaction was rolled back; leave the chat flagged for
        # the next sweep.
        async with self._session_scope() as session:
            await self._repository(session).set_conversation_state(
                chat_id,
                ConversationState.NEEDS_CLEANUP,
            )
        return HealResult(chat_id=chat_id, status=HealStatus.CONFLICT)

    async def create_recovery_branch(self, chat_id: str) -> RecoveryBranch:
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id, lock=True)
            return await self._recovery(repository).create_recovery_branch(
                chat,
                validate(chat, self._policy),
            )

    async def health_metrics(self, chat_id: str) -> HealthMetrics:
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id)
            checkpoints = await repository.list_checkpoints(chat_id, limit=DEFAULT_LIST_LIMIT)

        report = validate(chat, self._policy)
        now = self._clock()
        return HealthMetrics(
            chat_id=chat.id,
            status=chat.status,
            conversation_state=chat.conversation_state,
            health_score=report.health_score,
            violation_counts=report.counts(),
            message_count=len(chat.messages),
            tool_calls_count=len(chat.tool_calls),
            last_stable_age_seconds=(
                (now - chat.last_stable_at).total_seconds() if chat.last_stable_at else None
            ),
            last_activity_age_seconds=(now - chat.last_activity_at).total_seconds(),
            available_checkpoints=[checkpoint.label for checkpoint in checkpoints],
        )

    async def mark_conversation_state(self, chat_id: str, state: ConversationState) -> None:
        async with self._session_scope() as session:
            await self._repository(session).set_conversation_state(chat_id, state)

    # ------------------------------------------------------------------
    # Aggressive cleanup
    # ------------------------------------------------------------------

    async def safe_for_aggressive_cleanup(self, chat_id: str) -> bool:
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id)
            return await self._archiver(repository).safe_for_aggressive_cleanup(chat)

    async def archive_corrupted_chat(
        self,
        chat_id: str,
        *,
        below_score: int | None = None,
    ) -> ArchiveOutcome | None:
        """
        Archive the chat if it is still eligible once locked.

        Returns None when the locked chat is no longer safe to archive, or
        when `below_score` is given and its health score has since reached it.
        """
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id, lock=True)
            archiver = self._archiver(repository)
            report = validate(chat, self._policy)
            if not await archiver.safe_for_aggressive_cleanup(chat) or (
                below_score is not None and report.health_score >= below_score
            ):
                logger.info(
                    "Chat no longer eligible for archiving",
                    chat_id=chat_id,
                    health_score=report.health_score,
                )
                return None
            return await archiver.archive_corrupted_chat(
                chat,
                original_error=report.dominant_kind(),
            )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(self, chat_id: str, label: str | None = None) -> Checkpoint:
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id)
            return await self._checkpoints(repository).create_checkpoint(chat, label)

    async def list_checkpoints(self, chat_id: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[Checkpoint]:
        async with self._session_scope() as session:
            repository = self._repository(session)
            await _require_chat(repository, chat_id)
            return await self._checkpoints(repository).list_checkpoints(chat_id, limit=limit)

    async def restore_from_checkpoint(self, chat_id: str, label: str) -> RestoreResult:
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id, lock=True)
            return await self._checkpoints(repository).restore_checkpoint(chat, label)

    async def purge_stale_checkpoints(self) -> CheckpointPurgeStats:
        async with self._session_scope() as session:
            return await self._checkpoints(self._repository(session)).purge_expired()

    async def purge_stale_recovery_contexts(self) -> RecoveryPurgeStats:
        async with self._session_scope() as session:
            return await self._recovery(self._repository(session)).purge_stale_contexts()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def merge_branches(
        self,
        chat_id: str,
        branch_chat_id: str,
        strategy: MergeStrategy = MergeStrategy.APPEND,
    ) -> MergeResult:
        async with self._session_scope() as session:
            repository = self._repository(session)
            chat = await _require_chat(repository, chat_id, lock=True)
            branch = await _require_chat(repository, branch_chat_id, lock=True)
            merger = BranchMerger(repository, policy=self._policy, clock=self._clock)
            return await merger.merge(chat, branch, strategy)

    # ------------------------------------------------------------------
    # Sweep support
    # ------------------------------------------------------------------

    async def iter_candidate_chat_ids(
        self,
        *,
        now: datetime,
        batch_size: int,
    ) -> AsyncIterator[list[str]]:
        """Yield candidate ids in keyset-paginated batches, one short session each."""
        stale_before = now - self._policy.staleness
        after_id: str | None = None
        while True:
            async with self._session_scope() as session:
                batch = await self._repository(session).list_candidate_chat_ids(
                    stale_before=stale_before,
                    after_id=after_id,
                    limit=batch_size,
                )
            if not batch:
                return
            yield batch
            if len(batch) < batch_size:
                return
            after_id = batch[-1]

    async def integrity_stats(
        self,
        *,
        failure_window: timedelta = timedelta(days=1),
        failure_limit: int = 10,
        pattern_window: timedelta = timedelta(days=7),
    ) -> IntegrityStats:
        now = self._clock()
        async with self._session_scope() as session:
            repository = self._repository(session)
            state_counts = await repository.count_active_chats_by_state()
            failures = await repository.list_archived_failures(
                since=now - failure_window,
                limit=failure_limit,
            )
            patterns = await repository.count_archived_failures_by_error(since=now - pattern_window)
            open_contexts = await repository.count_active_recovery_contexts(now)

        for state in ConversationState:
            state_counts.setdefault(state.value, 0)
        total = sum(state_counts.values())
        stable = state_counts[ConversationState.STABLE.value]
        return IntegrityStats(
            state_counts=state_counts,
            total_active=total,
            healthy_percentage=round(stable / total * 100, 1) if total else 100.0,
            error_patterns=patterns,
            recent_failures=failures,
            open_recovery_contexts=open_contexts,
            generated_at=now,
        )


_service: ConversationIntegrityService | None = None


def get_conversation_integrity_service() -> ConversationIntegrityService:
    global _service
    if _service is None:
        _service = ConversationIntegrityService()
    return _service
