"""
Conversation Health Scheduler

Runs the conversation health sweep on a fixed interval, either inside the
API process (lifespan) or as a standalone process via `python -m`.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Awaitable, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import get_settings
from src.jobs.conversation_health import run_conversation_health_sweep

logger = structlog.get_logger()

SWEEP_JOB_ID = "conversation_health_sweep"

SweepRunner = Callable[[], Awaitable[dict[str, Any]]]


class ConversationHealthScheduler:
    """
    Interval scheduler for the conversation health sweep.

    Overlapping runs are coalesced: a sweep that is still running when the
    next tick fires makes that tick a no-op.
    """

    def __init__(
        self,
        sweep: SweepRunner = run_conversation_health_sweep,
        *,
        interval_minutes: int | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._sweep = sweep
        self._interval_minutes = interval_minutes or get_settings().conversation_health_interval_minutes
        self._scheduler = scheduler or AsyncIOScheduler()
        self._last_result: dict[str, Any] | None = None

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def last_result(self) -> dict[str, Any] | None:
        return self._last_result

    async def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler.running:
            return
        self._scheduler.add_job(
            self.trigger_now,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=SWEEP_JOB_ID,
            name="Conversation health sweep",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info(
            "Conversation health scheduler started",
            interval_minutes=self._interval_minutes,
        )

    async def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Conversation health scheduler shutdown")

    async def trigger_now(self) -> dict[str, Any] | None:
        """Run one sweep immediately; failures are logged, not raised."""
        try:
            self._last_result = await self._sweep()
        except Exception as e:
            logger.error("Conversation health sweep failed", error=str(e))
            return None
        return self._last_result


# Global scheduler instance
_scheduler: ConversationHealthScheduler | None = None


async def init_scheduler() -> ConversationHealthScheduler | None:
    """Initialize and start the global scheduler when the sweep is enabled."""
    global _scheduler
    if not get_settings().conversation_health_enabled:
        logger.info("Conversation health sweep disabled")
        return None
    if _scheduler is None:
        _scheduler = ConversationHealthScheduler()
    await _scheduler.start()
    return _scheduler


async def shutdown_scheduler() -> None:
    """Shutdown the global scheduler."""
    global _scheduler
    if _scheduler:
        await _scheduler.shutdown()
        _scheduler = None


async def _run() -> None:
    from src.db.client import close_db, init_db
    from src.kernel.logging import configure_logging

    configure_logging()
    await init_db()
    await init_scheduler()
    logger.info("Scheduler runner started")

    stop_event = asyncio.Event()

    def _handle_signal(*_args):
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    try:
        await stop_event.wait()
    finally:
        await shutdown_scheduler()
        await close_db()
        logger.info("Scheduler runner stopped")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
