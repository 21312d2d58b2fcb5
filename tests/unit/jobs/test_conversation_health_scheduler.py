from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.jobs.scheduler import SWEEP_JOB_ID, ConversationHealthScheduler

pytestmark = pytest.mark.asyncio


def _scheduler_mock(running: bool = False) -> MagicMock:
    scheduler = MagicMock()
    scheduler.running = running
    return scheduler


async def test_start_registers_coalesced_interval_job():
    apscheduler = _scheduler_mock()
    scheduler = ConversationHealthScheduler(
        AsyncMock(return_value={}),
        interval_minutes=15,
        scheduler=apscheduler,
    )

    await scheduler.start()

    apscheduler.add_job.assert_called_once()
    kwargs = apscheduler.add_job.call_args.kwargs
    assert kwargs["id"] == SWEEP_JOB_ID
    assert kwargs["coalesce"] is True
    assert kwargs["max_instances"] == 1
    assert kwargs["trigger"].interval.total_seconds() == 15 * 60
    apscheduler.start.assert_called_once()


async def test_start_is_noop_when_already_running():
    apscheduler = _scheduler_mock(running=True)
    scheduler = ConversationHealthScheduler(AsyncMock(), scheduler=apscheduler)

    await scheduler.start()

    apscheduler.add_job.assert_not_called()


async def test_trigger_now_records_last_result():
    sweep = AsyncMock(return_value={"checked": 3})
    scheduler = ConversationHealthScheduler(sweep, interval_minutes=5, scheduler=_scheduler_mock())

    result = await scheduler.trigger_now()

    assert result == {"checked": 3}
    assert scheduler.last_result == {"checked": 3}


async def test_trigger_now_swallows_sweep_failure():
    sweep = AsyncMock(side_effect=RuntimeError("database unavailable"))
    scheduler = ConversationHealthScheduler(sweep, interval_minutes=5, scheduler=_scheduler_mock())

    assert await scheduler.trigger_now() is None
    assert scheduler.last_result is None


async def test_shutdown_does_not_wait_for_running_sweep():
    apscheduler = _scheduler_mock(running=True)
    scheduler = ConversationHealthScheduler(AsyncMock(), interval_minutes=5, scheduler=apscheduler)

    await scheduler.shutdown()

    apscheduler.shutdown.assert_called_once_with(wait=False)


async def test_init_scheduler_respects_disabled_setting(monkeypatch):
    from src.config import get_settings
    from src.jobs import scheduler as scheduler_module

    monkeypatch.setenv("CONVERSATION_HEALTH_ENABLED", "false")
    get_settings.cache_clear()
    try:
        assert await scheduler_module.init_scheduler() is None
    finally:
        get_settings.cache_clear()
