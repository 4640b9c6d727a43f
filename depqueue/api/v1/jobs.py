from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from depqueue.api.deps import DbSession, Manager
from depqueue.db.models import Job, JobEventLog
from depqueue.domain.errors import JobError, JobNotFoundError
from depqueue.domain.states import DEFAULT_QUEUE, JobEvent, JobState

router = APIRouter()

class JobCreate(BaseModel):
    command: str = Field(min_length=1, max_length=255)
    args: list[str] = []
    queue: str = DEFAULT_QUEUE
    priority: int = 0
    max_retries: int = Field(default=0, ge=0)
    max_runtime: int = Field(default=0, ge=0)
    dependencies: list[int] = []

class JobResponse(BaseModel):
    id: int
    command: str
    args: list[str]
    state: JobState
    queue: str
    priority: int
    max_retries: int
    max_runtime: int
    worker_name: Optional[str] = None
    original_job_id: Optional[int] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None
    error_output: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, session: DbSession):
    job = Job(
        payload.command,
        payload.args,
        queue=payload.queue,
        priority=payload.priority,
        max_retries=payload.max_retries,
        max_runtime=payload.max_runtime
    )

    for dependency_id in payload.dependencies:
        dependency = await session.get(Job, dependency_id)
        if not dependency:
            raise HTTPException(status_code=404, detail=f"Dependency {dependency_id} not found")
        job.add_dependency(dependency)

    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        meta={"dependencies": payload.dependencies}
    ))

    await session.commit()
    return job

@router.get("/lookup", response_model=JobResponse)
async def lookup_job(manager: Manager, command: str, args: list[str] = Query(default=[])):
    try:
        return await manager.get_job(command, args)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: int, manager: Manager):
    job = await manager.session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    try:
        # Already closed jobs are returned unchanged
        await manager.close_job(job, JobState.CANCELED)
    except JobError as e:
        await manager.session.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    await manager.session.commit()
    return job
