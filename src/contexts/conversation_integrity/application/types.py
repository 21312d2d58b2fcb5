"""
Conversation integrity types.

Chats are loaded into immutable aggregates so the validator and the repair
planner can reason about a consistent snapshot without touching the session.
Reports and results are pydantic models because they cross the HTTP and job
boundaries as JSON.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field

TOOL_CALL_ID_PATTERN = re.compile(r"^call_[A-Za-z0-9_\-]+$")

_EMPTY: Mapping[str, Any] = MappingProxyType({})


class ChatStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ConversationState(str, Enum):
    STABLE = "stable"
    NEEDS_CLEANUP = "needs_cleanup"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ViolationKind(str, Enum):
    ORPHANED_TOOL_MESSAGE = "orphaned_tool_message"
    MALFORMED_TOOL_CALL_ID = "malformed_tool_call_id"
    DANGLING_TOOL_RESPONSE = "dangling_tool_response"
    MISSING_TOOL_RESPONSE = "missing_tool_response"
    DUPLICATE_TOOL_RESPONSE = "duplicate_tool_response"
    OUT_OF_ORDER_MESSAGE = "out_of_order_message"


class HealStatus(str, Enum):
    HEALTHY = "healthy"
    HEALED = "healed"
    RECOVERY_BRANCH_CREATED = "recovery_branch_created"
    CONFLICT = "conflict"


class MergeStrategy(str, Enum):
    APPEND = "append"
    REPLACE = "replace"
    INTERLEAVE = "interleave"


def freeze_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if not value:
        return _EMPTY
    return MappingProxyType(dict(value))


# =============================================================================
# Aggregates
# =============================================================================


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    id: str
    message_id: str
    call_id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)


@dataclass(frozen=True, slots=True)
class MessageRecord:
    id: str
    chat_id: str
    role: str
    content: str | None
    position: int
    created_at: datetime
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)

    @property
    def is_tool_response(self) -> bool:
        return self.role == MessageRole.TOOL

    @property
    def requests_tools(self) -> bool:
        return self.role == MessageRole.ASSISTANT and bool(self.tool_calls)


@dataclass(frozen=True, slots=True)
class ChatAggregate:
    """A chat with its messages ordered by (position, created_at, id)."""

    id: str
    owner_id: str
    title: str
    status: str
    conversation_state: str
    created_at: datetime
    updated_at: datetime
    model_id: str | None = None
    last_stable_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    messages: tuple[MessageRecord, ...] = ()

    @property
    def message_ids(self) -> tuple[str, ...]:
        return tuple(message.id for message in self.messages)

    @property
    def tool_calls(self) -> tuple[ToolCallRecord, ...]:
        return tuple(call for message in self.messages for call in message.tool_calls)

    @property
    def last_activity_at(self) -> datetime:
        if not self.messages:
            return self.updated_at
        return max(message.created_at for message in self.messages)

    def without_messages(self, message_ids: Iterable[str]) -> ChatAggregate:
        removed = set(message_ids)
        return replace(
            self,
            messages=tuple(m for m in self.messages if m.id not in removed),
        )

    def resequenced(self) -> ChatAggregate:
        return replace(
            self,
            messages=tuple(
                m if m.position == index else replace(m, position=index)
                for index, m in enumerate(self.messages, start=1)
            ),
        )

    def prefix(self, length: int) -> ChatAggregate:
        return replace(self, messages=self.messages[:length])


# =============================================================================
# Reports
# =============================================================================


class Violation(BaseModel):
    kind: ViolationKind
    message_id: str
    position: int | None = None
    tool_call_id: str | None = None
    detail: str = ""


class ViolationReport(BaseModel):
    chat_id: str
    violations: list[Violation] = Field(default_factory=list)
    health_score: int = 100
    message_count: int = 0

    @property
    def is_healthy(self) -> bool:
        return not self.violations

    def counts(self) -> dict[str, int]:
        return dict(Counter(v.kind.value for v in self.violations))

    def dominant_kind(self) -> ViolationKind | None:
        """Most frequent violation kind; ties resolve to the earliest seen."""
        if not self.violations:
            return None
        counts = Counter(v.kind for v in self.violations)
        return max(counts, key=lambda kind: counts[kind])


class HealAction(BaseModel):
    action: str
    message_id: str | None = None
    reason: ViolationKind | None = None
    detail: str | None = None


class HealResult(BaseModel):
    chat_id: str
    status: HealStatus
    actions: list[HealAction] = Field(default_factory=list)
    recovery_chat_id: str | None = None
    report: ViolationReport | None = None
    health_score_before: int = 100
    health_score_after: int | None = None


class SnapshotEntry(BaseModel):
    message_id: str
    position: int
    role: str
    digest: str


class Checkpoint(BaseModel):
    id: str
    chat_id: str
    label: str
    message_count: int
    tool_calls_count: int
    conversation_state: str
    created_at: datetime
    context: dict[str, Any] = Field(default_factory=dict)
    snapshot: list[SnapshotEntry] = Field(default_factory=list)


class RestoreResult(BaseModel):
    chat_id: str
    label: str
    removed_message_ids: list[str] = Field(default_factory=list)
    missing_message_ids: list[str] = Field(default_factory=list)
    altered_message_ids: list[str] = Field(default_factory=list)
    conversation_state: ConversationState
    report: ViolationReport


class CheckpointPurgeStats(BaseModel):
    expired: int = 0
    orphaned: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.orphaned


class RecoveryDiagnostics(BaseModel):
    original_message_count: int
    truncation_point: int
    first_invalid_message_id: str | None = None
    violation_counts: dict[str, int] = Field(default_factory=dict)
    original_error: ViolationKind | None = None
    health_score: int


class RecoveryContextRecord(BaseModel):
    id: str
    original_chat_id: str
    recovery_chat_id: str
    owner_id: str
    expires_at: datetime
    created_at: datetime
    diagnostics: dict[str, Any] = Field(default_factory=dict)


class RecoveryBranch(BaseModel):
    original_chat_id: str
    recovery_chat_id: str
    recovery_context_id: str | None = None
    copied_message_count: int
    reused: bool = False


class RecoveryPurgeStats(BaseModel):
    expired: int = 0
    orphaned: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.orphaned


class ArchiveOutcome(BaseModel):
    chat_id: str
    archived_title: str
    original_error: ViolationKind | None = None
    replacement_chat_id: str | None = None


class MergeResult(BaseModel):
    chat_id: str
    branch_chat_id: str
    strategy: MergeStrategy
    merged_message_count: int
    conversation_state: ConversationState


class HealthMetrics(BaseModel):
    chat_id: str
    status: str
    conversation_state: str
    health_score: int
    violation_counts: dict[str, int] = Field(default_factory=dict)
    message_count: int = 0
    tool_calls_count: int = 0
    last_stable_age_seconds: float | None = None
    last_activity_age_seconds: float | None = None
    available_checkpoints: list[str] = Field(default_factory=list)


class IntegrityStats(BaseModel):
    """Admin overview of chat health across the fleet."""

    state_counts: dict[str, int] = Field(default_factory=dict)
    total_active: int = 0
    healthy_percentage: float = 100.0
    error_patterns: dict[str, int] = Field(default_factory=dict)
    recent_failures: list[dict[str, Any]] = Field(default_factory=list)
    open_recovery_contexts: int = 0
    generated_at: datetime
