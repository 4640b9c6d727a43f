"""Pytest configuration and fixtures for depqueue tests"""

import os

# Must be set before depqueue.db.session builds its engine
os.environ.setdefault("DEPQUEUE_SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import depqueue.db.models  # noqa: F401 - registers the tables
from depqueue.db.session import Base
from depqueue.domain.events import EventDispatcher
from depqueue.domain.retry import ExponentialRetryScheduler
from depqueue.services.job_manager import JobManager


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database for each test"""
    # StaticPool makes every session share the same in-memory database
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


class RecordingListener:
    """Collects (job id, new state) for every notification, in order."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append((event.job.id, event.new_state))


@pytest.fixture
def recorder():
    return RecordingListener()


@pytest.fixture
def dispatcher(recorder):
    return EventDispatcher([recorder])


@pytest.fixture
def job_manager(db_session, dispatcher):
    return JobManager(db_session, dispatcher, ExponentialRetryScheduler())
