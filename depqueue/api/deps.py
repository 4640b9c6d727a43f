from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from depqueue.db.session import get_db_session
from depqueue.services.job_manager import JobManager

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

def get_job_manager(request: Request, session: DbSession) -> JobManager:
    return JobManager(session, request.app.state.notifier, request.app.state.retry_scheduler)

Manager = Annotated[JobManager, Depends(get_job_manager)]
