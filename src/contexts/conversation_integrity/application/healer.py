"""
State healer.

Repairs a chat in place when the damage is local, and hands off to the
recovery branch creator when it is not. Every write happens only after the
repair has been simulated on the in-memory aggregate and proven to converge,
and only if the chat still has the message set that was validated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from src.contexts.conversation_integrity.application.errors import (
    ConcurrentModificationError,
)
from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.ports import ConversationRepository
from src.contexts.conversation_integrity.application.recovery import RecoveryBranchCreator
from src.contexts.conversation_integrity.application.types import (
    ChatAggregate,
    ConversationState,
    HealAction,
    HealResult,
    HealStatus,
    ViolationKind,
    ViolationReport,
)
from src.contexts.conversation_integrity.application.validator import validate
from src.kernel.time import utc_now

logger = structlog.get_logger()

# Violations repaired by removing the offending tool message itself.
_MESSAGE_LEVEL = frozenset(
    {
        ViolationKind.ORPHANED_TOOL_MESSAGE,
        ViolationKind.MALFORMED_TOOL_CALL_ID,
        ViolationKind.DANGLING_TOOL_RESPONSE,
        ViolationKind.DUPLICATE_TOOL_RESPONSE,
    }
)


@dataclass
class RepairPlan:
    """Deletions and renumbering that take a chat back to a valid state."""

    deleted_message_ids: list[str] = field(default_factory=list)
    actions: list[HealAction] = field(default_factory=list)
    resequence: bool = False

    def delete(self, message_id: str, reason: ViolationKind, detail: str) -> None:
        if message_id in self.deleted_message_ids:
            return
        self.deleted_message_ids.append(message_id)
        self.actions.append(
            HealAction(
                action="deleted_message",
                message_id=message_id,
                reason=reason,
                detail=detail,
            )
        )

    def apply(self, chat: ChatAggregate) -> ChatAggregate:
        repaired = chat.without_messages(self.deleted_message_ids)
        return repaired.resequenced() if self.resequence else repaired


def plan_repairs(chat: ChatAggregate, report: ViolationReport) -> RepairPlan:
    plan = RepairPlan()
    by_id = {message.id: message for message in chat.messages}

    for violation in report.violations:
        if violation.kind in _MESSAGE_LEVEL:
            plan.delete(violation.message_id, violation.kind, violation.detail)
        elif violation.kind == ViolationKind.MISSING_TOOL_RESPONSE:
            # An incomplete group is removed whole: the assistant turn, its
            # tool calls, and whatever responses it did receive.
            owner = by_id.get(violation.message_id)
            if owner is None or violation.message_id in plan.deleted_message_ids:
                continue
            plan.delete(
                owner.id,
                violation.kind,
                "Removed tool-call group with unanswered calls",
            )
            group_call_ids = {call.call_id for call in owner.tool_calls}
            for message in chat.messages:
                if message.is_tool_response and (message.tool_call_id or "").strip() in group_call_ids:
                    plan.delete(
                        message.id,
                        violation.kind,
                        f"Response belonging to removed group {owner.id}",
                    )
        elif violation.kind == ViolationKind.OUT_OF_ORDER_MESSAGE:
            plan.resequence = True

    if plan.deleted_message_ids:
        plan.resequence = True
    if plan.resequence:
        plan.actions.append(HealAction(action="resequenced_messages"))
    return plan


class StateHealer:
    def __init__(
        self,
        repository: ConversationRepository,
        *,
        recovery: RecoveryBranchCreator,
        policy: IntegrityPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._recovery = recovery
        self._policy = policy
        self._clock = clock

    async def validate_and_heal(self, chat: ChatAggregate) -> HealResult:
        now = self._clock()
        report = validate(chat, self._policy)

        if report.is_healthy:
            await self._repository.set_conversation_state(
                chat.id,
                ConversationState.STABLE,
                last_stable_at=now,
            )
            return HealResult(
                chat_id=chat.id,
                status=HealStatus.HEALTHY,
                report=report,
                health_score_before=report.health_score,
                health_score_after=report.health_score,
            )

        logger.info(
            "Conversation integrity violations detected",
            chat_id=chat.id,
            violations=report.counts(),
            health_score=report.health_score,
        )
        await self._repository.set_conversation_state(chat.id, ConversationState.NEEDS_CLEANUP)

        plan = plan_repairs(chat, report)
        if len(plan.deleted_message_ids) > self._policy.unsafe_deletion_fraction * len(chat.messages):
            logger.warning(
                "Repair would remove too much of the conversation",
                chat_id=chat.id,
                deletions=len(plan.deleted_message_ids),
                message_count=len(chat.messages),
            )
            return await self._branch(chat, report)

        repaired = plan.apply(chat)
        repaired_report = validate(repaired, self._policy)
        if not repaired_report.is_healthy:
            logger.warning(
                "In-place repair did not converge",
                chat_id=chat.id,
                remaining=repaired_report.counts(),
            )
            return await self._branch(chat, report)

        await self._ensure_unchanged(chat)
        await self._repository.delete_messages(chat.id, plan.deleted_message_ids)
        if plan.resequence:
            await self._repository.resequence_messages(chat.id)

        persisted = await self._repository.load_chat(chat.id)
        if persisted is None or persisted.message_ids != repaired.message_ids:
            raise ConcurrentModificationError(chat_id=chat.id)
        if not validate(persisted, self._policy).is_healthy:
            raise ConcurrentModificationError(
                chat_id=chat.id,
                meta={"reason": "post_repair_validation_failed"},
            )

        await self._repository.set_conversation_state(
            chat.id,
            ConversationState.STABLE,
            last_stable_at=now,
        )
        logger.info(
            "Conversation healed in place",
            chat_id=chat.id,
            deleted=len(plan.deleted_message_ids),
            resequenced=plan.resequence,
        )
        return HealResult(
            chat_id=chat.id,
            status=HealStatus.HEALED,
            actions=plan.actions,
            report=report,
            health_score_before=report.health_score,
            health_score_after=repaired_report.health_score,
        )

    async def _branch(self, chat: ChatAggregate, report: ViolationReport) -> HealResult:
        await self._ensure_unchanged(chat)
        branch = await self._recovery.create_recovery_branch(chat, report)
        return HealResult(
            chat_id=chat.id,
            status=HealStatus.RECOVERY_BRANCH_CREATED,
            actions=[
                HealAction(
                    action="reused_recovery_branch" if branch.reused else "created_recovery_branch",
                    detail=branch.recovery_chat_id,
                )
            ],
            recovery_chat_id=branch.recovery_chat_id,
            report=report,
            health_score_before=report.health_score,
        )

    async def _ensure_unchanged(self, chat: ChatAggregate) -> None:
        current = await self._repository.list_message_ids(chat.id)
        if set(current) != set(chat.message_ids):
            logger.warning(
                "Conversation changed during repair",
                chat_id=chat.id,
                expected=len(chat.message_ids),
                found=len(current),
            )
            raise ConcurrentModificationError(chat_id=chat.id)
