"""
SQLAlchemy adapter for the conversation integrity ports.

Bound to one AsyncSession, i.e. one unit of work. Bulk deletes and position
updates go through Core statements; reloads use populate_existing so the
identity map never hands back stale rows after a repair.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.contexts.conversation_integrity.application.recovery import ARCHIVED_REASON
from src.contexts.conversation_integrity.application.types import (
    ChatAggregate,
    ChatStatus,
    Checkpoint,
    ConversationState,
    MessageRecord,
    RecoveryContextRecord,
    SnapshotEntry,
    ToolCallRecord,
    freeze_mapping,
)
from src.db.models import Chat, ConversationCheckpoint, Message, RecoveryContext, ToolCall
from src.kernel.ids import IdPrefix, new_prefixed_id
from src.kernel.serialization import to_jsonable
from src.kernel.time import coerce_utc, utc_now

logger = structlog.get_logger()


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; Postgres returns tz-aware ones.
    return coerce_utc(value) if value is not None else None


def _to_tool_call(row: ToolCall) -> ToolCallRecord:
    return ToolCallRecord(
        id=row.id,
        message_id=row.message_id,
        call_id=row.tool_call_id,
        name=row.name,
        arguments=freeze_mapping(row.arguments),
    )


def _to_message(row: Message) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        chat_id=row.chat_id,
        role=row.role,
        content=row.content,
        position=row.position,
        created_at=_utc(row.created_at),
        tool_call_id=row.tool_call_id,
        tool_calls=tuple(
            _to_tool_call(call)
            for call in sorted(row.tool_calls, key=lambda c: (c.created_at, c.id))
        ),
        metadata=freeze_mapping(row.meta),
    )


def _to_checkpoint(row: ConversationCheckpoint) -> Checkpoint:
    return Checkpoint(
        id=row.id,
        chat_id=row.chat_id,
        label=row.label,
        message_count=row.message_count,
        tool_calls_count=row.tool_calls_count,
        conversation_state=row.conversation_state,
        created_at=_utc(row.created_at),
        context=dict(row.context or {}),
        snapshot=[SnapshotEntry.model_validate(entry) for entry in row.snapshot or []],
    )


def _to_recovery_context(row: RecoveryContext) -> RecoveryContextRecord:
    return RecoveryContextRecord(
        id=row.id,
        original_chat_id=row.original_chat_id,
        recovery_chat_id=row.recovery_chat_id,
        owner_id=row.owner_id,
        expires_at=_utc(row.expires_at),
        created_at=_utc(row.created_at),
        diagnostics=dict(row.diagnostics or {}),
    )


class SqlConversationRepository:
    """ConversationRepository backed by the chat database."""

    def __init__(self, session: AsyncSession, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._session = session
        self._clock = clock

    # ------------------------------------------------------------------
    # Chats and messages
    # ------------------------------------------------------------------

    async def load_chat(self, chat_id: str, *, lock: bool = False) -> ChatAggregate | None:
        query = (
            select(Chat)
            .where(Chat.id == chat_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        chat = (await self._session.execute(query)).scalar_one_or_none()
        if chat is None:
            return None

        result = await self._session.execute(
            select(Message)
            .where(Message.chat_id == chat_id)
            .options(selectinload(Message.tool_calls))
            .order_by(Message.position, Message.created_at, Message.id)
            .execution_options(populate_existing=True)
        )
        messages = result.scalars().all()

        return ChatAggregate(
            id=chat.id,
            owner_id=chat.owner_id,
            title=chat.title or "",
            status=chat.status,
            conversation_state=chat.conversation_state,
            created_at=_utc(chat.created_at),
            updated_at=_utc(chat.updated_at),
            model_id=chat.model_id,
            last_stable_at=_utc(chat.last_stable_at),
            metadata=freeze_mapping(chat.meta),
            messages=tuple(_to_message(row) for row in messages),
        )

    async def list_message_ids(self, chat_id: str) -> list[str]:
        result = await self._session.execute(
            select(Message.id)
            .where(Message.chat_id == chat_id)
            .order_by(Message.position, Message.created_at, Message.id)
        )
        return list(result.scalars().all())

    async def delete_messages(self, chat_id: str, message_ids: Sequence[str]) -> int:
        if not message_ids:
            return 0
        owned = select(Message.id).where(
            Message.chat_id == chat_id,
            Message.id.in_(list(message_ids)),
        )
        await self._session.execute(
            delete(ToolCall)
            .where(ToolCall.message_id.in_(owned))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(
            delete(Message)
            .where(Message.chat_id == chat_id, Message.id.in_(list(message_ids)))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def resequence_messages(self, chat_id: str) -> int:
        result = await self._session.execute(
            select(Message.id, Message.position)
            .where(Message.chat_id == chat_id)
            .order_by(Message.position, Message.created_at, Message.id)
        )
        changed = 0
        for expected, (message_id, position) in enumerate(result.all(), start=1):
            if position == expected:
                continue
            await self._session.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(position=expected)
                .execution_options(synchronize_session=False)
            )
            changed += 1
        return changed

    async def set_conversation_state(
        self,
        chat_id: str,
        state: str,
        *,
        last_stable_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "conversation_state": ConversationState(state).value,
            "updated_at": self._clock(),
        }
        if last_stable_at is not None:
            values["last_stable_at"] = last_stable_at
        await self._session.execute(
            update(Chat)
            .where(Chat.id == chat_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def update_chat(
        self,
        chat_id: str,
        *,
        title: str | None = None,
        status: str | None = None,
        conversation_state: str | None = None,
        metadata_updates: Mapping[str, Any] | None = None,
    ) -> None:
        values: dict[str, Any] = {}
        if title is not None:
            values["title"] = title[:255]
        if status is not None:
            values["status"] = ChatStatus(status).value
        if conversation_state is not None:
            values["conversation_state"] = ConversationState(conversation_state).value
        if metadata_updates:
            current = await self._session.scalar(select(Chat.meta).where(Chat.id == chat_id))
            values["meta"] = {**(current or {}), **to_jsonable(dict(metadata_updates))}
        if not values:
            return
        values["updated_at"] = self._clock()
        await self._session.execute(
            update(Chat)
            .where(Chat.id == chat_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

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
        now = self._clock()
        chat = Chat(
            id=new_prefixed_id(IdPrefix.CHAT),
            owner_id=owner_id,
            title=title[:255],
            model_id=model_id,
            status=ChatStatus.ACTIVE.value,
            conversation_state=ConversationState(conversation_state).value,
            last_stable_at=last_stable_at,
            meta=to_jsonable(dict(metadata or {})),
            created_at=now,
            updated_at=now,
        )
        self._session.add(chat)
        await self._session.flush()
        return chat.id

    async def copy_messages(
        self,
        target_chat_id: str,
        messages: Sequence[MessageRecord],
        *,
        start_position: int = 1,
        extra_metadata: Mapping[str, Any] | None = None,
    ) -> list[str]:
        new_ids: list[str] = []
        for offset, message in enumerate(messages):
            meta = to_jsonable(message.metadata)
            if extra_metadata:
                meta.update(to_jsonable(dict(extra_metadata)))
            row = Message(
                id=new_prefixed_id(IdPrefix.MESSAGE),
                chat_id=target_chat_id,
                role=message.role,
                content=message.content,
                tool_call_id=message.tool_call_id,
                position=start_position + offset,
                meta=meta,
                created_at=message.created_at,
                tool_calls=[
                    ToolCall(
                        id=new_prefixed_id(IdPrefix.TOOL_CALL),
                        tool_call_id=call.call_id,
                        name=call.name,
                        arguments=to_jsonable(call.arguments),
                        created_at=message.created_at,
                    )
                    for call in message.tool_calls
                ],
            )
            self._session.add(row)
            new_ids.append(row.id)
        await self._session.flush()
        return new_ids

    async def owner_has_active_chat(self, owner_id: str, *, exclude_chat_id: str) -> bool:
        count = await self._session.scalar(
            select(func.count())
            .select_from(Chat)
            .where(
                Chat.owner_id == owner_id,
                Chat.status == ChatStatus.ACTIVE.value,
                Chat.id != exclude_chat_id,
            )
        )
        return bool(count)

    async def list_candidate_chat_ids(
        self,
        *,
        stale_before: datetime,
        after_id: str | None,
        limit: int,
    ) -> list[str]:
        query = select(Chat.id).where(
            Chat.status == ChatStatus.ACTIVE.value,
            or_(
                Chat.conversation_state.in_(
                    [ConversationState.NEEDS_CLEANUP.value, ConversationState.ERROR.value]
                ),
                Chat.last_stable_at.is_(None),
                Chat.last_stable_at < stale_before,
            ),
        )
        if after_id is not None:
            query = query.where(Chat.id > after_id)
        result = await self._session.execute(query.order_by(Chat.id).limit(limit))
        return list(result.scalars().all())

    async def count_active_chats_by_state(self) -> dict[str, int]:
        result = await self._session.execute(
            select(Chat.conversation_state, func.count())
            .where(Chat.status == ChatStatus.ACTIVE.value)
            .group_by(Chat.conversation_state)
        )
        return {state: int(count) for state, count in result.all()}

    async def _archived_since(self, since: datetime):
        # archived_reason lives in JSON metadata; filtered in Python to stay
        # portable across Postgres and SQLite.
        result = await self._session.execute(
            select(Chat.id, Chat.owner_id, Chat.title, Chat.meta, Chat.updated_at)
            .where(Chat.status == ChatStatus.ARCHIVED.value, Chat.updated_at >= since)
            .order_by(Chat.updated_at.desc(), Chat.id)
        )
        for chat_id, owner_id, title, meta, updated_at in result.all():
            meta = meta or {}
            if meta.get("archived_reason") == ARCHIVED_REASON:
                yield chat_id, owner_id, title, meta, updated_at

    async def list_archived_failures(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        failures: list[dict[str, Any]] = []
        async for chat_id, owner_id, title, meta, updated_at in self._archived_since(since):
            failures.append(
                {
                    "chat_id": chat_id,
                    "owner_id": owner_id,
                    "title": title,
                    "original_error": meta.get("original_error"),
                    "recovery_chat_id": meta.get("recovery_chat_id"),
                    "archived_at": _utc(updated_at),
                }
            )
            if len(failures) >= limit:
                break
        return failures

    async def count_archived_failures_by_error(self, *, since: datetime) -> dict[str, int]:
        patterns: dict[str, int] = {}
        async for *_, meta, _updated_at in self._archived_since(since):
            error = meta.get("original_error") or "unknown"
            patterns[error] = patterns.get(error, 0) + 1
        return patterns

    # ------------------------------------------------------------------
    # Recovery contexts
    # ------------------------------------------------------------------

    async def find_active_recovery_context(
        self,
        original_chat_id: str,
        now: datetime,
    ) -> RecoveryContextRecord | None:
        result = await self._session.execute(
            select(RecoveryContext)
            .where(
                RecoveryContext.original_chat_id == original_chat_id,
                RecoveryContext.expires_at > now,
            )
            .order_by(RecoveryContext.created_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _to_recovery_context(row) if row is not None else None

    async def has_active_recovery_reference(self, chat_id: str, now: datetime) -> bool:
        count = await self._session.scalar(
            select(func.count())
            .select_from(RecoveryContext)
            .where(
                or_(
                    RecoveryContext.original_chat_id == chat_id,
                    RecoveryContext.recovery_chat_id == chat_id,
                ),
                RecoveryContext.expires_at > now,
            )
        )
        return bool(count)

    async def create_recovery_context(
        self,
        *,
        original_chat_id: str,
        recovery_chat_id: str,
        owner_id: str,
        diagnostics: Mapping[str, Any],
        expires_at: datetime,
    ) -> str:
        row = RecoveryContext(
            id=new_prefixed_id(IdPrefix.RECOVERY_CONTEXT),
            original_chat_id=original_chat_id,
            recovery_chat_id=recovery_chat_id,
            owner_id=owner_id,
            diagnostics=to_jsonable(dict(diagnostics)),
            expires_at=expires_at,
            created_at=self._clock(),
        )
        self._session.add(row)
        await self._session.flush()
        return row.id

    async def count_active_recovery_contexts(self, now: datetime) -> int:
        count = await self._session.scalar(
            select(func.count())
            .select_from(RecoveryContext)
            .where(RecoveryContext.expires_at > now)
        )
        return int(count or 0)

    async def delete_expired_recovery_contexts(self, now: datetime) -> int:
        result = await self._session.execute(
            delete(RecoveryContext)
            .where(RecoveryContext.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def delete_orphaned_recovery_contexts(self) -> int:
        live_chats = select(Chat.id).where(Chat.status != ChatStatus.DELETED.value)
        result = await self._session.execute(
            delete(RecoveryContext)
            .where(
                or_(
                    RecoveryContext.original_chat_id.not_in(live_chats),
                    RecoveryContext.recovery_chat_id.not_in(live_chats),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def get_checkpoint(self, chat_id: str, label: str) -> Checkpoint | None:
        result = await self._session.execute(
            select(ConversationCheckpoint).where(
                ConversationCheckpoint.chat_id == chat_id,
                ConversationCheckpoint.label == label,
            )
        )
        row = result.scalar_one_or_none()
        return _to_checkpoint(row) if row is not None else None

    async def list_checkpoints(self, chat_id: str, *, limit: int) -> list[Checkpoint]:
        result = await self._session.execute(
            select(ConversationCheckpoint)
            .where(ConversationCheckpoint.chat_id == chat_id)
            .order_by(ConversationCheckpoint.created_at.desc(), ConversationCheckpoint.id.desc())
            .limit(limit)
        )
        return [_to_checkpoint(row) for row in result.scalars().all()]

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
        row = ConversationCheckpoint(
            id=new_prefixed_id(IdPrefix.CHECKPOINT),
            chat_id=chat_id,
            label=label,
            message_count=len(snapshot),
            tool_calls_count=tool_calls_count,
            conversation_state=conversation_state,
            snapshot=[entry.model_dump(mode="json") for entry in snapshot],
            context=to_jsonable(dict(context)),
            created_at=self._clock(),
        )
        self._session.add(row)
        await self._session.flush()
        logger.debug("Checkpoint row written", chat_id=chat_id, label=label)
        return _to_checkpoint(row)

    async def delete_checkpoints_created_before(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(ConversationCheckpoint)
            .where(ConversationCheckpoint.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def delete_orphaned_checkpoints(self) -> int:
        live_chats = select(Chat.id).where(Chat.status != ChatStatus.DELETED.value)
        result = await self._session.execute(
            delete(ConversationCheckpoint)
            .where(ConversationCheckpoint.chat_id.not_in(live_chats))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
