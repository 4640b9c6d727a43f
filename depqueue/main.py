import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import OperationalError

from depqueue.api.v1.admin import router as admin_router
from depqueue.api.v1.jobs import router as jobs_router
from depqueue.api.v1.metrics import router as metrics_router
from depqueue.db.session import Base, engine
from depqueue.domain.events import build_notifier
from depqueue.domain.retry import build_retry_scheduler
from depqueue.scheduler.service import SchedulerService
from depqueue.settings import settings

logger = logging.getLogger("uvicorn")

async def init_models(attempts: int = 10, delay: float = 2.0) -> bool:
    """Creates the schema, retrying while the database is still coming up."""
    # Importing the models registers their tables on Base.metadata
    import depqueue.db.models  # noqa: F401

    for i in range(attempts):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return True
        except (OSError, OperationalError) as e:
            logger.warning(f"Bootstrap: database not ready ({e}), retrying in {delay}s... ({i+1}/{attempts})")
            await asyncio.sleep(delay)
    return False

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if not await init_models():
        logger.error("Bootstrap failed: could not create schema, continuing without it")

    scheduler = SchedulerService(
        app.state.notifier,
        app.state.retry_scheduler,
        interval=settings.SCHEDULER_INTERVAL_SECONDS
    )
    await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

# Shared by every request; lifespan is not run by in-process test clients
app.state.notifier = build_notifier()
app.state.retry_scheduler = build_retry_scheduler(settings)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
