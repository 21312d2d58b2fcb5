"""
Conversation Health Admin API Routes

Operational surface for the conversation integrity engine:
- fleet stats and on-demand sweeps
- per-chat health metrics, heal, and aggressive-cleanup checks
- checkpoints (list, create, restore) and branch merges

This surface is intended for internal/admin tooling. Authorization is handled
by the gateway in front of this service.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field

from src.contexts.conversation_integrity.application.service import (
    ConversationIntegrityService,
    get_conversation_integrity_service,
)
from src.contexts.conversation_integrity.application.types import (
    Checkpoint,
    HealResult,
    HealthMetrics,
    IntegrityStats,
    MergeResult,
    MergeStrategy,
    RestoreResult,
)
from src.jobs.conversation_health import run_conversation_health_sweep

logger = structlog.get_logger()

router = APIRouter(prefix="/admin/conversation-health", tags=["Conversation Health"])


def get_service() -> ConversationIntegrityService:
    return get_conversation_integrity_service()


def get_sweep_runner() -> Callable[[], Awaitable[dict[str, Any]]]:
    return run_conversation_health_sweep


class CheckpointSummary(BaseModel):
    id: str
    label: str
    message_count: int
    tool_calls_count: int
    conversation_state: str
    created_at: datetime


class ListCheckpointsResponse(BaseModel):
    chat_id: str
    checkpoints: list[CheckpointSummary]


class CreateCheckpointRequest(BaseModel):
    label: str | None = Field(None, max_length=255)


class MergeRequest(BaseModel):
    branch_chat_id: str
    strategy: MergeStrategy = MergeStrategy.APPEND


class AggressiveCleanupResponse(BaseModel):
    chat_id: str
    safe_for_aggressive_cleanup: bool


class SweepScheduledResponse(BaseModel):
    status: str = "scheduled"


def _summary(checkpoint: Checkpoint) -> CheckpointSummary:
    return CheckpointSummary(
        id=checkpoint.id,
        label=checkpoint.label,
        message_count=checkpoint.message_count,
        tool_calls_count=checkpoint.tool_calls_count,
        conversation_state=checkpoint.conversation_state,
        created_at=checkpoint.created_at,
    )


@router.get("/stats", response_model=IntegrityStats)
async def get_stats(
    service: ConversationIntegrityService = Depends(get_service),
) -> IntegrityStats:
    """Counts per conversation state plus recent integrity failures."""
    return await service.integrity_stats()


@router.post("/sweeps", response_model=SweepScheduledResponse, status_code=202)
async def trigger_sweep(
    background_tasks: BackgroundTasks,
    sweep: Callable[[], Awaitable[dict[str, Any]]] = Depends(get_sweep_runner),
) -> SweepScheduledResponse:
    """Run a conversation health sweep in the background."""
    background_tasks.add_task(sweep)
    logger.info("Conversation health sweep requested")
    return SweepScheduledResponse()


@router.get("/chats/{chat_id}/metrics", response_model=HealthMetrics)
async def get_chat_metrics(
    chat_id: str,
    service: ConversationIntegrityService = Depends(get_service),
) -> HealthMetrics:
    return await service.health_metrics(chat_id)


@router.post("/chats/{chat_id}/heal", response_model=HealResult)
async def heal_chat(
    chat_id: str,
    service: ConversationIntegrityService = Depends(get_service),
) -> HealResult:
    """Validate the chat and repair it in place or via a recovery branch."""
    result = await service.validate_and_heal(chat_id)
    logger.info("Chat heal requested", chat_id=chat_id, status=result.status.value)
    return result


@router.get("/chats/{chat_id}/aggressive-cleanup", response_model=AggressiveCleanupResponse)
async def check_aggressive_cleanup(
    chat_id: str,
    service: ConversationIntegrityService = Depends(get_service),
) -> AggressiveCleanupResponse:
    return AggressiveCleanupResponse(
        chat_id=chat_id,
        safe_for_aggressive_cleanup=await service.safe_for_aggressive_cleanup(chat_id),
    )


@router.get("/chats/{chat_id}/checkpoints", response_model=ListCheckpointsResponse)
async def list_checkpoints(
    chat_id: str,
    limit: int = Query(10, ge=1, le=100),
    service: ConversationIntegrityService = Depends(get_service),
) -> ListCheckpointsResponse:
    checkpoints = await service.list_checkpoints(chat_id, limit=limit)
    return ListCheckpointsResponse(
        chat_id=chat_id,
        checkpoints=[_summary(checkpoint) for checkpoint in checkpoints],
    )


@router.post("/chats/{chat_id}/checkpoints", response_model=CheckpointSummary, status_code=201)
async def create_checkpoint(
    chat_id: str,
    request: CreateCheckpointRequest,
    service: ConversationIntegrityService = Depends(get_service),
) -> CheckpointSummary:
    checkpoint = await service.create_checkpoint(chat_id, request.label)
    return _summary(checkpoint)


@router.post("/chats/{chat_id}/checkpoints/{label}/restore", response_model=RestoreResult)
async def restore_checkpoint(
    chat_id: str,
    label: str,
    service: ConversationIntegrityService = Depends(get_service),
) -> RestoreResult:
    return await service.restore_from_checkpoint(chat_id, label)


@router.post("/chats/{chat_id}/merge", response_model=MergeResult)
async def merge_branch(
    chat_id: str,
    request: MergeRequest,
    service: ConversationIntegrityService = Depends(get_service),
) -> MergeResult:
    return await service.merge_branches(chat_id, request.branch_chat_id, request.strategy)
