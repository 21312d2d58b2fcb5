from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from src.contexts.conversation_integrity.infrastructure.sql_repository import (
    SqlConversationRepository,
)
from src.db.models import ToolCall
from tests.support.conversations import BASE_TIME, assistant, seed_chat, tool, user

pytestmark = pytest.mark.asyncio


async def test_candidates_are_keyset_paginated(session_scope, fake_clock):
    for suffix in ("a", "b", "c"):
        await seed_chat(session_scope, user(), chat_id=f"chat_{suffix}", conversation_state="needs_cleanup")
    await seed_chat(session_scope, user(), chat_id="chat_fresh", last_stable_at=fake_clock.now())
    await seed_chat(session_scope, user(), chat_id="chat_gone", status="archived", conversation_state="error")

    async with session_scope() as session:
        repository = SqlConversationRepository(session, clock=fake_clock.now)
        stale_before = fake_clock.ago(hours=6)
        first = await repository.list_candidate_chat_ids(stale_before=stale_before, after_id=None, limit=2)
        second = await repository.list_candidate_chat_ids(stale_before=stale_before, after_id=first[-1], limit=2)

    assert first == ["chat_a", "chat_b"]
    assert second == ["chat_c"]


async def test_never_stabilised_chats_are_candidates(session_scope, fake_clock):
    seeded = await seed_chat(session_scope, user(), last_stable_at=None)

    async with session_scope() as session:
        ids = await SqlConversationRepository(session).list_candidate_chat_ids(
            stale_before=fake_clock.ago(hours=6),
            after_id=None,
            limit=10,
        )

    assert ids == [seeded.id]


async def test_delete_messages_removes_tool_calls_and_resequences(session_scope, load_chat):
    seeded = await seed_chat(
        session_scope,
        user(),
        assistant(calls=("call_1",)),
        tool("call_1"),
        user("thanks"),
    )

    async with session_scope() as session:
        repository = SqlConversationRepository(session)
        deleted = await repository.delete_messages(seeded.id, seeded.message_ids[1:3])
        renumbered = await repository.resequence_messages(seeded.id)
        remaining_calls = await session.scalar(select(func.count()).select_from(ToolCall))

    assert deleted == 2
    assert renumbered == 1
    assert remaining_calls == 0
    chat = await load_chat(seeded.id)
    assert [m.id for m in chat.messages] == [seeded.message_ids[0], seeded.message_ids[3]]
    assert [m.position for m in chat.messages] == [1, 2]


async def test_delete_messages_ignores_other_chats(session_scope, load_chat):
    mine = await seed_chat(session_scope, user())
    theirs = await seed_chat(session_scope, user(), owner_id="user_2")

    async with session_scope() as session:
        deleted = await SqlConversationRepository(session).delete_messages(mine.id, theirs.message_ids)

    assert deleted == 0
    assert len((await load_chat(theirs.id)).messages) == 1


async def test_load_chat_orders_by_position_and_returns_utc(session_scope, load_chat):
    seeded = await seed_chat(session_scope, user("second", position=2), user("first", position=1))

    chat = await load_chat(seeded.id)

    assert [m.content for m in chat.messages] == ["first", "second"]
    assert chat.created_at == BASE_TIME
    assert chat.created_at.tzinfo is not None


async def test_state_counts_cover_active_chats_only(session_scope):
    await seed_chat(session_scope, user())
    await seed_chat(session_scope, user(), conversation_state="needs_cleanup")
    await seed_chat(session_scope, user(), status="archived", conversation_state="error")

    async with session_scope() as session:
        counts = await SqlConversationRepository(session).count_active_chats_by_state()

    assert counts == {"stable": 1, "needs_cleanup": 1}


async def test_orphaned_checkpoints_and_contexts_are_purged(session_scope, fake_clock):
    live = await seed_chat(session_scope, user())
    deleted = await seed_chat(session_scope, user(), status="deleted")

    async with session_scope() as session:
        repository = SqlConversationRepository(session, clock=fake_clock.now)
        for chat_id in (live.id, deleted.id):
            await repository.create_checkpoint(
                chat_id=chat_id,
                label="v1",
                conversation_state="stable",
                tool_calls_count=0,
                snapshot=[],
                context={},
            )
        await repository.create_recovery_context(
            original_chat_id=deleted.id,
            recovery_chat_id=live.id,
            owner_id="user_1",
            diagnostics={},
            expires_at=fake_clock.now() + timedelta(hours=24),
        )

    async with session_scope() as session:
        repository = SqlConversationRepository(session, clock=fake_clock.now)
        assert await repository.delete_orphaned_checkpoints() == 1
        assert await repository.delete_orphaned_recovery_contexts() == 1
        assert [c.label for c in await repository.list_checkpoints(live.id, limit=10)] == ["v1"]
