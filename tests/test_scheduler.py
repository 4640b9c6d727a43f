"""Tests for the scheduler tick: leader maintenance and gauges."""

from datetime import timedelta

import pytest

from depqueue.api.v1.metrics import JOBS_INFLIGHT, QUEUE_DEPTH
from depqueue.db.models import Job
from depqueue.domain.retry import FixedRetryScheduler
from depqueue.domain.states import JobState
from depqueue.scheduler.service import SchedulerService
from depqueue.utils.clock import utcnow


@pytest.mark.asyncio
async def test_tick_closes_stale_jobs_and_refreshes_gauges(session_factory, dispatcher, recorder):
    async with session_factory() as session:
        stale = Job("stale", worker_name="gone")
        stale.set_state(JobState.RUNNING)
        stale.checked_at = utcnow() - timedelta(hours=1)
        session.add_all([stale, Job("a"), Job("b", queue="other_queue")])
        await session.commit()
        stale_id = stale.id

    service = SchedulerService(dispatcher, FixedRetryScheduler(), session_factory=session_factory)
    async with session_factory() as session:
        await service.tick(session)

    async with session_factory() as session:
        reloaded = await session.get(Job, stale_id)
        assert reloaded.state == JobState.INCOMPLETE

    assert recorder.events == [(stale_id, JobState.INCOMPLETE)]
    assert JOBS_INFLIGHT._value.get() == 0
    assert QUEUE_DEPTH.labels(queue="default")._value.get() == 1
    assert QUEUE_DEPTH.labels(queue="other_queue")._value.get() == 1


@pytest.mark.asyncio
async def test_start_and_stop(session_factory, dispatcher):
    service = SchedulerService(dispatcher, FixedRetryScheduler(), interval=60, session_factory=session_factory)

    await service.start()
    await service.stop()

    assert service._task.done()
