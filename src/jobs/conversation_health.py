"""
Conversation Health Sweep.

Periodically finds chats that need attention and drives each one through the
integrity pipeline:

1. Skip chats with activity inside the grace window.
2. Archive badly broken chats when aggressive cleanup is safe.
3. Otherwise validate-and-heal (in place or via a recovery branch).

After the chat loop it runs retention over checkpoints and recovery
contexts, then probes the completion service. A failure on any single chat
is logged and counted; it never stops the sweep.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import structlog

from src.config import get_settings
from src.contexts.conversation_integrity.application.errors import StateCorruptionError
from src.contexts.conversation_integrity.application.ports import CompletionServiceProbe
from src.contexts.conversation_integrity.application.service import (
    ConversationIntegrityService,
    get_conversation_integrity_service,
)
from src.contexts.conversation_integrity.application.types import HealStatus
from src.contexts.conversation_integrity.infrastructure.completion_probe import (
    get_completion_probe,
)
from src.kernel.time import utc_now
from src.monitoring.health import HealthStatus
from src.monitoring.metrics import Metrics, get_metrics

logger = structlog.get_logger()


class ChatOutcome(str, Enum):
    HEALTHY = "healthy"
    HEALED = "healed"
    RECOVERED = "recovered"
    ARCHIVED = "archived"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    CORRUPTED = "corrupted"
    ERROR = "error"


_HEAL_OUTCOMES = {
    HealStatus.HEALTHY: ChatOutcome.HEALTHY,
    HealStatus.HEALED: ChatOutcome.HEALED,
    HealStatus.RECOVERY_BRANCH_CREATED: ChatOutcome.RECOVERED,
    HealStatus.CONFLICT: ChatOutcome.CONFLICT,
}


@dataclass
class ConversationSweepStats:
    checked: int = 0
    healthy: int = 0
    healed: int = 0
    recovered: int = 0
    archived: int = 0
    skipped: int = 0
    conflicts: int = 0
    corrupted: int = 0
    errors: int = 0
    error_chat_ids: list[str] = field(default_factory=list)
    checkpoints_purged: int = 0
    recovery_contexts_purged: int = 0
    completion_service_status: str | None = None
    candidate_query_failed: bool = False
    cancelled: bool = False
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float = 0.0

    def record(self, chat_id: str, outcome: ChatOutcome) -> None:
        if outcome == ChatOutcome.HEALTHY:
            self.healthy += 1
        elif outcome == ChatOutcome.HEALED:
            self.healed += 1
        elif outcome == ChatOutcome.RECOVERED:
            self.recovered += 1
        elif outcome == ChatOutcome.ARCHIVED:
            self.archived += 1
        elif outcome == ChatOutcome.SKIPPED:
            self.skipped += 1
        elif outcome == ChatOutcome.CONFLICT:
            self.conflicts += 1
        elif outcome == ChatOutcome.CORRUPTED:
            self.corrupted += 1
        else:
            self.errors += 1
            self.error_chat_ids.append(chat_id)


class ConversationHealthSweep:
    """
    One sweep over every chat needing attention.

    Candidate ids are streamed in keyset-paginated batches into a bounded
    queue drained by a fixed pool of workers, so memory stays flat no matter
    how many chats qualify. `stop()` lets in-flight chats finish and skips
    the rest.
    """

    def __init__(
        self,
        service: ConversationIntegrityService | None = None,
        *,
        probe: CompletionServiceProbe | None = None,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        probe_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        metrics: Metrics | None = None,
    ) -> None:
        settings = get_settings()
        self._service = service or get_conversation_integrity_service()
        self._probe = probe or get_completion_probe()
        self._batch_size = max(1, batch_size or settings.sweep_batch_size)
        self._max_concurrency = max(1, max_concurrency or settings.sweep_max_concurrency)
        self._probe_timeout_seconds = probe_timeout_seconds or settings.completion_probe_timeout_seconds
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Request cancellation; takes effect between chats."""
        self._stop.set()

    async def run(self) -> dict[str, Any]:
        started = self._clock()
        start = time.perf_counter()
        stats = ConversationSweepStats(started_at=started.isoformat())

        logger.info(
            "Starting conversation health sweep",
            batch_size=self._batch_size,
            max_concurrency=self._max_concurrency,
        )

        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self._batch_size)
        workers = [
            asyncio.create_task(self._worker(queue, stats))
            for _ in range(self._max_concurrency)
        ]
        await self._produce(queue, stats, started)
        await asyncio.gather(*workers)

        stats.cancelled = self._stop.is_set()
        if not stats.cancelled:
            await self._run_retention(stats)
        await self._check_completion_service(stats)

        stats.completed_at = self._clock().isoformat()
        stats.duration_seconds = time.perf_counter() - start
        self._metrics.track_sweep(cancelled=stats.cancelled, duration=stats.duration_seconds)

        log = logger.warning if stats.errors or stats.cancelled else logger.info
        log(
            "Conversation health sweep finished",
            checked=stats.checked,
            healthy=stats.healthy,
            healed=stats.healed,
            recovered=stats.recovered,
            archived=stats.archived,
            skipped=stats.skipped,
            conflicts=stats.conflicts,
            corrupted=stats.corrupted,
            errors=stats.errors,
            cancelled=stats.cancelled,
            duration_seconds=round(stats.duration_seconds, 3),
        )
        return asdict(stats)

    async def _produce(
        self,
        queue: asyncio.Queue[str | None],
        stats: ConversationSweepStats,
        now: datetime,
    ) -> None:
        try:
            async for batch in self._service.iter_candidate_chat_ids(
                now=now,
                batch_size=self._batch_size,
            ):
                for chat_id in batch:
                    if self._stop.is_set():
                        return
                    await queue.put(chat_id)
        except Exception as exc:
            stats.candidate_query_failed = True
            logger.error("Failed to list chats needing attention", error=str(exc))
        finally:
            for _ in range(self._max_concurrency):
                await queue.put(None)

    async def _worker(
        self,
        queue: asyncio.Queue[str | None],
        stats: ConversationSweepStats,
    ) -> None:
        while True:
            chat_id = await queue.get()
            if chat_id is None:
                return
            if self._stop.is_set():
                continue
            outcome = await self.process_chat(chat_id)
            stats.checked += 1
            stats.record(chat_id, outcome)
            self._metrics.track_sweep_chat(outcome.value)

    async def process_chat(self, chat_id: str) -> ChatOutcome:
        """Run one chat through the pipeline. Never raises."""
        try:
            return await self._process_chat(chat_id)
        except Exception as exc:
            logger.error(
                "Error processing conversation",
                chat_id=chat_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return ChatOutcome.ERROR

    async def _process_chat(self, chat_id: str) -> ChatOutcome:
        policy = self._service.policy
        metrics = await self._service.health_metrics(chat_id)

        grace = policy.active_conversation_grace.total_seconds()
        if metrics.last_activity_age_seconds is not None and metrics.last_activity_age_seconds < grace:
            logger.debug("Skipping active conversation", chat_id=chat_id)
            return ChatOutcome.SKIPPED

        # Eligibility is re-checked under the row lock; a chat touched since
        # the metrics read falls through to a regular heal.
        if metrics.health_score < policy.severity_threshold:
            archived = await self._service.archive_corrupted_chat(
                chat_id,
                below_score=policy.severity_threshold,
            )
            if archived is not None:
                return ChatOutcome.ARCHIVED

        try:
            result = await self._service.validate_and_heal(chat_id)
        except StateCorruptionError:
            # The service has already left the chat in the error state.
            logger.warning("Conversation has no recoverable prefix", chat_id=chat_id)
            if await self._service.archive_corrupted_chat(chat_id) is not None:
                return ChatOutcome.ARCHIVED
            return ChatOutcome.CORRUPTED

        self._metrics.track_heal(result.status.value, result.health_score_before)
        return _HEAL_OUTCOMES[result.status]

    async def _run_retention(self, stats: ConversationSweepStats) -> None:
        try:
            checkpoints = await self._service.purge_stale_checkpoints()
            stats.checkpoints_purged = checkpoints.total
        except Exception as exc:
            logger.error("Checkpoint retention failed", error=str(exc))

        try:
            contexts = await self._service.purge_stale_recovery_contexts()
            stats.recovery_contexts_purged = contexts.total
        except Exception as exc:
            logger.error("Recovery context retention failed", error=str(exc))

        self._metrics.track_retention(
            checkpoints=stats.checkpoints_purged,
            recovery_contexts=stats.recovery_contexts_purged,
        )

    async def _check_completion_service(self, stats: ConversationSweepStats) -> None:
        try:
            health = await asyncio.wait_for(
                self._probe.check(),
                timeout=self._probe_timeout_seconds,
            )
            status = health.status
            message = health.message
            latency_ms = health.latency_ms
        except Exception as exc:
            status = HealthStatus.UNHEALTHY
            message = str(exc) or exc.__class__.__name__
            latency_ms = None

        stats.completion_service_status = status.value
        self._metrics.track_completion_probe(
            healthy=status == HealthStatus.HEALTHY,
            latency_ms=latency_ms,
        )
        if status == HealthStatus.UNHEALTHY:
            logger.error("Completion service health check failed", message=message)


async def run_conversation_health_sweep(**kwargs: Any) -> dict[str, Any]:
    return await ConversationHealthSweep(**kwargs).run()


async def _run() -> None:
    from src.db.client import close_db, init_db
    from src.kernel.logging import configure_logging
    from src.kernel.serialization import json_dumps_canonical

    configure_logging()
    await init_db()
    try:
        result = await run_conversation_health_sweep()
        print(json_dumps_canonical(result))
    finally:
        await close_db()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
