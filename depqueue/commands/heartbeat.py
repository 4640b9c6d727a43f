from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from depqueue.db.models import Job
from depqueue.domain.errors import ClaimLostError, RuntimeExceededError, UnknownJobError
from depqueue.utils.clock import as_utc, utcnow

async def heartbeat(
    session: AsyncSession,
    job_id: int,
    worker_name: str
) -> datetime:
    """
    Records that the claiming worker is still alive.
    Throws error if the job is gone, no longer owned by the worker, or has
    exceeded its max_runtime. Returns the new checked_at.
    """
    now = utcnow()

    stmt = select(Job).where(Job.id == job_id)
    job = await session.scalar(stmt)

    if not job:
        raise UnknownJobError(job_id)

    if not job.is_running() or job.worker_name != worker_name:
        # Closed, reaped, or claimed by someone else
        raise ClaimLostError(f"Job {job_id} is not running for worker {worker_name}")

    if job.max_runtime and job.started_at:
        runtime = (now - as_utc(job.started_at)).total_seconds()
        if runtime > job.max_runtime:
            raise RuntimeExceededError(f"Max runtime exceeded ({runtime:.0f} > {job.max_runtime}s)")

    job.checked_at = now

    await session.flush()
    return now
