"""
Conversation validator.

A single ordered pass over a chat's messages that reports every structural
violation of the tool-call protocol plus any break in position ordering.

Tool-call groups are tracked as a small state machine: an assistant message
with tool calls opens a response window, consecutive tool messages answer
calls in that window, and the first non-tool message closes it. Calls still
unanswered when the window closes are reported against the assistant message
that requested them.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.types import (
    TOOL_CALL_ID_PATTERN,
    ChatAggregate,
    MessageRecord,
    ToolCallRecord,
    Violation,
    ViolationKind,
    ViolationReport,
)


class _ToolCallWindow:
    """Tracks open tool-call groups across one ordered scan."""

    def __init__(self, known_call_ids: Iterable[str]) -> None:
        self._known_call_ids = set(known_call_ids)
        self._owner: MessageRecord | None = None
        self._open: dict[str, ToolCallRecord] = {}
        self._answered: set[str] = set()

    @property
    def is_settled(self) -> bool:
        return not self._open

    def feed(self, message: MessageRecord) -> list[Violation]:
        if message.is_tool_response:
            violation = self._answer(message)
            return [violation] if violation else []

        found = self.close()
        if message.requests_tools:
            self._owner = message
            self._open = {call.call_id: call for call in message.tool_calls}
        return found

    def close(self) -> list[Violation]:
        found: list[Violation] = []
        if self._owner is not None:
            for call_id, call in self._open.items():
                found.append(
                    _violation(
                        ViolationKind.MISSING_TOOL_RESPONSE,
                        self._owner,
                        call_id,
                        f"No tool response for {call.name or 'tool call'}",
                    )
                )
        self._owner = None
        self._open = {}
        return found

    def _answer(self, message: MessageRecord) -> Violation | None:
        call_id = (message.tool_call_id or "").strip()

        if not call_id or not TOOL_CALL_ID_PATTERN.fullmatch(call_id):
            return _violation(
                ViolationKind.MALFORMED_TOOL_CALL_ID,
                message,
                call_id or None,
                "tool_call_id is blank or does not match call_<token>",
            )
        if call_id not in self._known_call_ids:
            return _violation(
                ViolationKind.ORPHANED_TOOL_MESSAGE,
                message,
                call_id,
                "No tool call in this chat carries this id",
            )
        if call_id in self._open:
            del self._open[call_id]
            self._answered.add(call_id)
            return None
        if call_id in self._answered:
            return _violation(
                ViolationKind.DUPLICATE_TOOL_RESPONSE,
                message,
                call_id,
                "Tool call already answered",
            )
        return _violation(
            ViolationKind.DANGLING_TOOL_RESPONSE,
            message,
            call_id,
            "Response is outside the window of the requesting assistant message",
        )


def _violation(
    kind: ViolationKind,
    message: MessageRecord,
    tool_call_id: str | None,
    detail: str,
) -> Violation:
    return Violation(
        kind=kind,
        message_id=message.id,
        position=message.position,
        tool_call_id=tool_call_id,
        detail=detail,
    )


def _ordering_violations(messages: Sequence[MessageRecord]) -> list[Violation]:
    found: list[Violation] = []
    previous = 0
    for message in messages:
        if message.position != previous + 1:
            detail = (
                "Duplicate position"
                if message.position == previous
                else f"Expected position {previous + 1}"
            )
            found.append(
                _violation(ViolationKind.OUT_OF_ORDER_MESSAGE, message, None, detail)
            )
        previous = message.position
    return found


def compute_health_score(
    violations: Iterable[Violation],
    policy: IntegrityPolicy | None = None,
) -> int:
    policy = policy or IntegrityPolicy()
    penalty = sum(policy.weight_for(violation.kind) for violation in violations)
    return max(0, min(100, 100 - penalty))


def validate(chat: ChatAggregate, policy: IntegrityPolicy | None = None) -> ViolationReport:
    """Report every violation in `chat`. Read-only."""
    window = _ToolCallWindow(call.call_id for call in chat.tool_calls)
    violations: list[Violation] = []
    for message in chat.messages:
        violations.extend(window.feed(message))
    violations.extend(window.close())
    violations.extend(_ordering_violations(chat.messages))

    return ViolationReport(
        chat_id=chat.id,
        violations=violations,
        health_score=compute_health_score(violations, policy),
        message_count=len(chat.messages),
    )


def longest_valid_prefix(chat: ChatAggregate) -> int:
    """
    Length of the longest leading run of messages that is valid on its own.

    A prefix may only end where no tool-call group is open. Position gaps are
    ignored here because copied prefixes are renumbered from 1.
    """
    window = _ToolCallWindow(call.call_id for call in chat.tool_calls)
    longest = 0
    for index, message in enumerate(chat.messages):
        if window.is_settled:
            longest = index
        if window.feed(message):
            return longest
    if window.is_settled:
        longest = len(chat.messages)
    return longest
