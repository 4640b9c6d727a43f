import logging
from datetime import timedelta

from sqlalchemy import exists, select
from sqlalchemy.orm import aliased

from depqueue.api.v1.metrics import STALE_JOBS_CLOSED
from depqueue.db.models import Job
from depqueue.domain.states import JobState
from depqueue.services.job_manager import JobManager
from depqueue.utils.clock import utcnow

logger = logging.getLogger(__name__)

async def close_stale_jobs(manager: JobManager, timeout_seconds: int, limit: int = 100) -> int:
    """
    Closes running jobs whose worker stopped sending heartbeats as INCOMPLETE.
    Closing goes through the job manager, so a retry is created when allowed.
    Returns number of jobs closed.
    """
    session = manager.session
    cutoff = utcnow() - timedelta(seconds=timeout_seconds)

    # An original with retries is settled by its retries, not by its own heartbeat.
    retry = aliased(Job)
    has_retries = exists().where(retry.original_job_id == Job.id)

    stmt = select(Job).where(
        Job.state == JobState.RUNNING,
        Job.checked_at < cutoff,
        ~has_retries
    ).order_by(Job.id.asc()).limit(limit).with_for_update(skip_locked=True)

    stale_jobs = (await session.scalars(stmt)).all()

    if not stale_jobs:
        return 0

    for job in stale_jobs:
        logger.warning(
            f"Job {job.id} ({job.command}) on worker {job.worker_name} sent no heartbeat "
            f"since {job.checked_at}, closing as incomplete"
        )
        await manager.close_job(job, JobState.INCOMPLETE)

    STALE_JOBS_CLOSED.inc(len(stale_jobs))
    return len(stale_jobs)
