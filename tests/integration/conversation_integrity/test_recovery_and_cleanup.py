from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from src.contexts.conversation_integrity.application.service import (
    ConversationIntegrityService,
)
from src.contexts.conversation_integrity.application.types import (
    ChatStatus,
    ConversationState,
    MergeStrategy,
    ViolationKind,
)
from src.db.models import Chat, RecoveryContext
from src.kernel.errors import ValidationError
from tests.support.conversations import assistant, seed_chat, tool, user

pytestmark = pytest.mark.asyncio


async def test_recovery_branch_records_context_with_ttl(integrity_service, session_scope, fake_clock):
    seeded = await seed_chat(session_scope, user("a"), assistant("b"), tool("call_x1"), user("c"))

    branch = await integrity_service.create_recovery_branch(seeded.id)

    assert branch.copied_message_count == 2
    assert branch.reused is False
    async with session_scope() as session:
        context = await session.get(RecoveryContext, branch.recovery_context_id)
    assert context.original_chat_id == seeded.id
    assert context.recovery_chat_id == branch.recovery_chat_id
    assert context.diagnostics["truncation_point"] == 2
    assert context.diagnostics["first_invalid_message_id"] == seeded.message_ids[2]
    assert context.diagnostics["original_error"] == ViolationKind.ORPHANED_TOOL_MESSAGE.value


async def test_recovery_contexts_are_purged_after_ttl(integrity_service, session_scope, fake_clock):
    seeded = await seed_chat(session_scope, user("a"), tool("call_x1"))
    await integrity_service.create_recovery_branch(seeded.id)

    fake_clock.advance(timedelta(hours=23))
    assert (await integrity_service.purge_stale_recovery_contexts()).total == 0

    fake_clock.advance(timedelta(hours=1))
    stats = await integrity_service.purge_stale_recovery_contexts()
    assert stats.expired == 1


async def test_unarchived_original_keeps_its_branch_after_context_expires(
    session_scope, integrity_policy, fake_clock, load_chat
):
    service = ConversationIntegrityService(
        session_scope,
        policy=replace(integrity_policy, archive_on_recovery=False),
        clock=fake_clock.now,
    )
    seeded = await seed_chat(session_scope, user("a"), *[tool(f"call_gone{i}") for i in range(9)])
    first = await service.validate_and_heal(seeded.id)

    fake_clock.advance(timedelta(hours=25))
    assert (await service.purge_stale_recovery_contexts()).expired == 1
    second = await service.validate_and_heal(seeded.id)

    assert second.recovery_chat_id == first.recovery_chat_id
    assert second.actions[-1].action == "reused_recovery_branch"
    async with session_scope() as session:
        branches = await session.scalar(
            select(func.count()).select_from(Chat).where(Chat.title.like("%(Recovery%"))
        )
    assert branches == 1
    original = await load_chat(seeded.id)
    assert original.status == ChatStatus.ACTIVE
    assert original.conversation_state == ConversationState.ERROR


async def test_recovery_context_is_orphaned_when_branch_is_deleted(integrity_service, session_scope):
    seeded = await seed_chat(session_scope, user("a"), tool("call_x1"))
    branch = await integrity_service.create_recovery_branch(seeded.id)
    async with session_scope() as session:
        await session.execute(
            update(Chat).where(Chat.id == branch.recovery_chat_id).values(status="deleted")
        )

    stats = await integrity_service.purge_stale_recovery_contexts()

    assert stats.orphaned == 1


async def test_idle_active_chat_is_safe_for_aggressive_cleanup(integrity_service, session_scope, fake_clock):
    seeded = await seed_chat(
        session_scope,
        user(),
        base_time=fake_clock.ago(days=10),
    )
    assert await integrity_service.safe_for_aggressive_cleanup(seeded.id) is True


async def test_recent_chat_is_not_safe_for_aggressive_cleanup(integrity_service, session_scope, fake_clock):
    seeded = await seed_chat(
        session_scope,
        user(),
        base_time=fake_clock.ago(days=2),
    )
    assert await integrity_service.safe_for_aggressive_cleanup(seeded.id) is False


async def test_archived_chat_is_not_safe_for_aggressive_cleanup(integrity_service, session_scope, fake_clock):
    seeded = await seed_chat(
        session_scope,
        user(),
        status="archived",
        base_time=fake_clock.ago(days=30),
    )
    assert await integrity_service.safe_for_aggressive_cleanup(seeded.id) is False


async def test_chat_in_open_recovery_is_not_safe_for_aggressive_cleanup(
    session_scope, integrity_policy, fake_clock
):
    service = ConversationIntegrityService(
        session_scope,
        policy=replace(integrity_policy, archive_on_recovery=False),
        clock=fake_clock.now,
    )
    seeded = await seed_chat(
        session_scope,
        user(),
        tool("call_x1"),
        base_time=fake_clock.ago(days=30),
    )
    branch = await service.create_recovery_branch(seeded.id)

    assert await service.safe_for_aggressive_cleanup(seeded.id) is False
    assert await service.safe_for_aggressive_cleanup(branch.recovery_chat_id) is False


async def test_archive_corrupted_chat_spawns_replacement_for_sole_chat(
    integrity_service, session_scope, load_chat
):
    seeded = await seed_chat(session_scope, user(), tool("bogus"), tool("call_x1"), tool("call_x2"))

    outcome = await integrity_service.archive_corrupted_chat(seeded.id)

    assert outcome.original_error == ViolationKind.ORPHANED_TOOL_MESSAGE
    assert outcome.replacement_chat_id is not None
    archived = await load_chat(seeded.id)
    assert archived.status == ChatStatus.ARCHIVED
    assert archived.conversation_state == ConversationState.ERROR
    assert "(Auto-Archived - Corrupted" in archived.title
    assert archived.metadata["archived_reason"] == "conversation_integrity_failure"
    replacement = await load_chat(outcome.replacement_chat_id)
    assert replacement.owner_id == archived.owner_id
    assert replacement.status == ChatStatus.ACTIVE
    assert replacement.metadata["replaces_chat_id"] == seeded.id


async def test_archive_is_refused_when_chat_is_no_longer_idle(
    integrity_service, session_scope, load_chat, fake_clock
):
    seeded = await seed_chat(session_scope, user(), tool("bogus"), base_time=fake_clock.ago(days=1))

    assert await integrity_service.archive_corrupted_chat(seeded.id) is None
    assert (await load_chat(seeded.id)).status == ChatStatus.ACTIVE


async def test_archive_is_refused_when_score_recovered_before_lock(
    integrity_service, session_scope, load_chat, fake_clock
):
    seeded = await seed_chat(session_scope, user(), assistant("ok"), base_time=fake_clock.ago(days=30))

    outcome = await integrity_service.archive_corrupted_chat(
        seeded.id,
        below_score=integrity_service.policy.severity_threshold,
    )

    assert outcome is None
    chat = await load_chat(seeded.id)
    assert chat.status == ChatStatus.ACTIVE
    assert chat.title == "Grocery planning"


async def test_archive_corrupted_chat_keeps_owner_other_chats(integrity_service, session_scope):
    await seed_chat(session_scope, user("other"), owner_id="user_9")
    seeded = await seed_chat(session_scope, user(), tool("bogus"), owner_id="user_9")

    outcome = await integrity_service.archive_corrupted_chat(seeded.id)

    assert outcome.replacement_chat_id is None


async def test_append_merge_copies_branch_after_main(integrity_service, session_scope, load_chat):
    main = await seed_chat(session_scope, user("main 1"), assistant("main 2"))
    branch = await seed_chat(session_scope, user("branch 1"), assistant("branch 2"), title="Branch")

    result = await integrity_service.merge_branches(main.id, branch.id, MergeStrategy.APPEND)

    assert result.merged_message_count == 2
    assert result.conversation_state == ConversationState.STABLE
    merged = await load_chat(main.id)
    assert [m.content for m in merged.messages] == ["main 1", "main 2", "branch 1", "branch 2"]
    assert [m.position for m in merged.messages] == [1, 2, 3, 4]
    assert merged.messages[2].metadata["merged_from_branch"] == branch.id
    archived_branch = await load_chat(branch.id)
    assert archived_branch.status == ChatStatus.ARCHIVED
    assert archived_branch.title == "Branch (Merged)"


async def test_replace_merge_swaps_main_messages(integrity_service, session_scope, load_chat):
    main = await seed_chat(session_scope, user("main 1"), tool("bogus"))
    branch = await seed_chat(session_scope, user("branch 1"), title="Branch")

    await integrity_service.merge_branches(main.id, branch.id, MergeStrategy.REPLACE)

    merged = await load_chat(main.id)
    assert [m.content for m in merged.messages] == ["branch 1"]
    assert (await load_chat(branch.id)).title == "Branch (Replaced Main)"


async def test_interleave_merge_is_rejected(integrity_service, session_scope):
    main = await seed_chat(session_scope, user())
    branch = await seed_chat(session_scope, user())

    with pytest.raises(ValidationError) as exc_info:
        await integrity_service.merge_branches(main.id, branch.id, MergeStrategy.INTERLEAVE)

    assert exc_info.value.code == "conversation.merge_strategy_unsupported"


async def test_merge_across_owners_is_rejected(integrity_service, session_scope):
    main = await seed_chat(session_scope, user(), owner_id="user_1")
    branch = await seed_chat(session_scope, user(), owner_id="user_2")

    with pytest.raises(ValidationError):
        await integrity_service.merge_branches(main.id, branch.id)


async def test_integrity_stats_summarises_states_and_failures(integrity_service, session_scope):
    await seed_chat(session_scope, user())
    await seed_chat(session_scope, user(), conversation_state="needs_cleanup")
    broken = await seed_chat(session_scope, user("a"), *[tool(f"call_x{i}") for i in range(4)])
    await integrity_service.validate_and_heal(broken.id)

    stats = await integrity_service.integrity_stats()

    # The broken chat was archived and replaced by its recovery branch.
    assert stats.state_counts == {"stable": 2, "needs_cleanup": 1, "error": 0}
    assert stats.total_active == 3
    assert stats.healthy_percentage == pytest.approx(66.7)
    assert stats.open_recovery_contexts == 1
    assert stats.error_patterns == {ViolationKind.ORPHANED_TOOL_MESSAGE.value: 1}
    assert [f["chat_id"] for f in stats.recent_failures] == [broken.id]


async def test_candidate_ids_are_paged(integrity_service, session_scope, fake_clock):
    for _ in range(5):
        await seed_chat(session_scope, user(), conversation_state="needs_cleanup")
    await seed_chat(session_scope, user(), last_stable_at=fake_clock.now())

    batches = [
        batch
        async for batch in integrity_service.iter_candidate_chat_ids(now=fake_clock.now(), batch_size=2)
    ]

    assert [len(batch) for batch in batches] == [2, 2, 1]
    flattened = [chat_id for batch in batches for chat_id in batch]
    assert flattened == sorted(flattened)
    async with session_scope() as session:
        total = await session.scalar(select(func.count()).select_from(Chat))
    assert total == 6
