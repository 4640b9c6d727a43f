from fastapi import APIRouter

from depqueue.api.deps import Manager
from depqueue.commands.close_stale import close_stale_jobs
from depqueue.settings import settings

router = APIRouter()

@router.post("/close_stale")
async def trigger_close_stale(manager: Manager, timeout_seconds: int = settings.STALE_JOB_TIMEOUT_SECONDS):
    count = await close_stale_jobs(manager, timeout_seconds=timeout_seconds)
    await manager.session.commit()
    return {"closed_count": count}
