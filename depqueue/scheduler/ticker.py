from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from depqueue.api.v1.metrics import QUEUE_DEPTH, JOBS_INFLIGHT
from depqueue.commands.close_stale import close_stale_jobs
from depqueue.db.models import Job
from depqueue.domain.states import JobState
from depqueue.services.job_manager import JobManager
from depqueue.settings import settings

async def run_leader_tasks(manager: JobManager) -> int:
    """
    Periodic maintenance done by a single instance:
    1. Close running jobs whose worker stopped sending heartbeats (Reaper)
    """
    closed = await close_stale_jobs(manager, timeout_seconds=settings.STALE_JOB_TIMEOUT_SECONDS)
    await manager.session.commit()
    return closed

async def run_metrics_tasks(session: AsyncSession) -> None:
    """Refreshes gauges from the store; runs on every instance."""
    q_inflight = select(func.count()).select_from(Job).where(Job.state == JobState.RUNNING)
    inflight_count = (await session.execute(q_inflight)).scalar() or 0
    JOBS_INFLIGHT.set(inflight_count)

    q_depth = (
        select(Job.queue, func.count(Job.id))
        .where(Job.state == JobState.PENDING)
        .group_by(Job.queue)
    )
    rows = (await session.execute(q_depth)).all()

    # Queues that drained keep their last value unless reset here
    for metric in QUEUE_DEPTH.collect():
        for sample in metric.samples:
            QUEUE_DEPTH.labels(queue=sample.labels["queue"]).set(0)

    for queue, count in rows:
        QUEUE_DEPTH.labels(queue=queue).set(count)

    await session.commit()
