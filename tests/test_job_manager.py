"""Tests for JobManager lookups and startable-job selection."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select, update

from depqueue.db.models import Job
from depqueue.domain.errors import JobNotFoundError
from depqueue.domain.states import JobState
from depqueue.utils.clock import utcnow


async def persist(session, *jobs):
    session.add_all(jobs)
    await session.flush()


class TestLookups:
    @pytest.mark.asyncio
    async def test_get_job_matches_command_and_args(self, db_session, job_manager):
        a = Job("a", ["foo"])
        a2 = Job("a")
        await persist(db_session, a, a2)

        assert await job_manager.get_job("a", ["foo"]) is a
        assert await job_manager.get_job("a") is a2
        assert await job_manager.get_job("a", []) is a2

    @pytest.mark.asyncio
    async def test_get_job_args_order_matters(self, db_session, job_manager):
        await persist(db_session, Job("a", ["x", "y"]))

        with pytest.raises(JobNotFoundError):
            await job_manager.get_job("a", ["y", "x"])

    @pytest.mark.asyncio
    async def test_get_job_raises_when_not_found(self, job_manager):
        with pytest.raises(JobNotFoundError, match="Found no job for command") as exc_info:
            await job_manager.get_job("foo", ["bar"])

        assert exc_info.value.command == "foo"
        assert exc_info.value.job_args == ["bar"]

    @pytest.mark.asyncio
    async def test_get_or_create_if_not_exists(self, job_manager):
        a = await job_manager.get_or_create_if_not_exists("a")
        assert a.id is not None
        assert a.state == JobState.PENDING

        assert await job_manager.get_or_create_if_not_exists("a") is a
        assert await job_manager.get_or_create_if_not_exists("a", ["foo"]) is not a

    @pytest.mark.asyncio
    async def test_get_or_create_loser_returns_first_job(self, db_session, job_manager, monkeypatch):
        winner = Job("a", ["x"], confirmed=False)
        await persist(db_session, winner)

        # Simulate a caller whose initial lookup ran before the winner's insert
        monkeypatch.setattr(job_manager, "find_job", AsyncMock(return_value=None))

        job = await job_manager.get_or_create_if_not_exists("a", ["x"])
        assert job is winner

        count = await db_session.scalar(select(func.count()).select_from(Job).where(Job.command == "a"))
        assert count == 1

    @pytest.mark.asyncio
    async def test_find_job_for_related_entity(self, db_session, job_manager):
        a = Job("a")
        await persist(db_session, a)

        b = Job("b")
        b.add_related_entity(a)
        b2 = Job("b")
        await persist(db_session, b, b2)
        b_id = b.id
        a_id = a.id

        db_session.expunge_all()
        assert b not in db_session

        reloaded = await job_manager.find_job_for_related_entity("b", a)
        assert reloaded is not None
        assert reloaded.id == b_id
        assert len(reloaded.related_entities) == 1

        entity = await job_manager.load_related_entity(reloaded.find_related_entity(Job))
        assert entity.id == a_id

        assert await job_manager.find_job_for_related_entity("c", a) is None

    @pytest.mark.asyncio
    async def test_find_incoming_dependencies(self, db_session, job_manager):
        a = Job("a")
        b = Job("b")
        c = Job("c")
        b.add_dependency(a)
        c.add_dependency(a)
        await persist(db_session, a, b, c)

        assert await job_manager.find_incoming_dependencies(a) == [b, c]
        assert await job_manager.find_incoming_dependencies(b) == []


class TestFindPendingJob:
    @pytest.mark.asyncio
    async def test_find_pending_job(self, db_session, job_manager):
        assert await job_manager.find_pending_job() is None

        a = Job("a")
        a.set_state(JobState.RUNNING)
        b = Job("b")
        await persist(db_session, a, b)

        assert await job_manager.find_pending_job() is b
        assert await job_manager.find_pending_job([b.id]) is None

    @pytest.mark.asyncio
    async def test_excluded_commands(self, db_session, job_manager):
        a = Job("a")
        b = Job("b")
        await persist(db_session, a, b)

        assert await job_manager.find_pending_job([], ["a"]) is b

    @pytest.mark.asyncio
    async def test_restricted_queue(self, db_session, job_manager):
        a = Job("a")
        b = Job("b", [], True, "other_queue")
        await persist(db_session, a, b)

        assert await job_manager.find_pending_job() is a
        assert await job_manager.find_pending_job([], [], ["other_queue"]) is b
        assert await job_manager.find_pending_job([a.id]) is None

    @pytest.mark.asyncio
    async def test_find_by_exact_dependency_set(self, db_session, job_manager):
        a = Job("a")
        b = Job("b")
        await persist(db_session, a, b)

        c = Job("c")
        c.add_dependency(a)
        c.add_dependency(b)
        d = Job("d")
        d.add_dependency(a)
        await persist(db_session, c, d)
        c_id = c.id
        db_session.expunge_all()

        reloaded = await job_manager.find_pending_job_by_dependencies([a.id, b.id])
        assert reloaded is not None
        assert reloaded.id == c_id
        assert len(await reloaded.awaitable_attrs.dependencies) == 2

        assert (await job_manager.find_pending_job_by_dependencies([a.id])).id == d.id
        assert await job_manager.find_pending_job_by_dependencies([b.id]) is None

    @pytest.mark.asyncio
    async def test_find_by_dependencies_ignores_non_pending(self, db_session, job_manager):
        a = Job("a")
        c = Job("c")
        c.add_dependency(a)
        await persist(db_session, a, c)
        c.set_state(JobState.CANCELED)
        await db_session.flush()

        assert await job_manager.find_pending_job_by_dependencies([a.id]) is None


class TestFindStartableJob:
    @pytest.mark.asyncio
    async def test_prefers_unblocked_dependency(self, db_session, job_manager):
        assert await job_manager.find_startable_job("my-name") is None

        a = Job("a")
        a.set_state(JobState.RUNNING)
        b = Job("b")
        c = Job("c")
        b.add_dependency(c)
        await persist(db_session, a, b, c)

        excluded_ids = []
        assert await job_manager.find_startable_job("my-name", excluded_ids) is c
        assert excluded_ids == [b.id]

    @pytest.mark.asyncio
    async def test_claims_the_returned_job(self, db_session, job_manager, recorder):
        a = Job("a")
        await persist(db_session, a)

        job = await job_manager.find_startable_job("worker-1")
        assert job is a
        assert a.state == JobState.RUNNING
        assert a.worker_name == "worker-1"
        assert a.started_at is not None
        assert recorder.events == [(a.id, JobState.RUNNING)]

        # A second scan must not hand out the claimed job again
        assert await job_manager.find_startable_job("worker-2") is None

    @pytest.mark.asyncio
    async def test_detaches_non_startable_jobs(self, db_session, job_manager):
        a = Job("a")
        b = Job("b")
        a.add_dependency(b)
        await persist(db_session, a, b)

        assert a in db_session
        assert b in db_session

        excluded_ids = []
        startable = await job_manager.find_startable_job("my-name", excluded_ids)
        assert startable is not None
        assert startable.id == b.id
        assert excluded_ids == [a.id]
        assert a not in db_session
        assert b in db_session

    @pytest.mark.asyncio
    async def test_never_returns_job_with_failed_dependency(self, db_session, job_manager):
        a = Job("a")
        a.set_state(JobState.RUNNING)
        a.set_state(JobState.FAILED)
        b = Job("b")
        b.add_dependency(a)
        await persist(db_session, a, b)
        b_id = b.id

        excluded_ids = []
        assert await job_manager.find_startable_job("my-name", excluded_ids) is None
        assert excluded_ids == [b_id]

        # Later scans reload it from the store and exclude it again
        assert await job_manager.find_startable_job("my-name") is None

    @pytest.mark.asyncio
    async def test_running_dependency_blocks(self, db_session, job_manager):
        a = Job("a")
        a.set_state(JobState.RUNNING)
        b = Job("b")
        b.add_dependency(a)
        await persist(db_session, a, b)

        assert await job_manager.find_startable_job("my-name") is None

    @pytest.mark.asyncio
    async def test_finished_dependencies_make_job_startable(self, db_session, job_manager):
        a = Job("a")
        a.set_state(JobState.RUNNING)
        a.set_state(JobState.FINISHED)
        b = Job("b")
        b.add_dependency(a)
        await persist(db_session, a, b)

        assert await job_manager.find_startable_job("my-name") is b

    @pytest.mark.asyncio
    async def test_walks_transitive_dependencies(self, db_session, job_manager):
        a = Job("a")
        b = Job("b")
        c = Job("c")
        a.add_dependency(b)
        b.add_dependency(c)
        await persist(db_session, a, b, c)

        excluded_ids = []
        assert await job_manager.find_startable_job("my-name", excluded_ids) is c
        assert sorted(excluded_ids) == sorted([a.id, b.id])

    @pytest.mark.asyncio
    async def test_respects_execute_after(self, db_session, job_manager):
        a = Job("a", execute_after=utcnow() + timedelta(hours=1))
        await persist(db_session, a)

        assert await job_manager.find_startable_job("my-name") is None

    @pytest.mark.asyncio
    async def test_higher_priority_first(self, db_session, job_manager):
        low = Job("low")
        high = Job("high", priority=10)
        await persist(db_session, low, high)

        assert await job_manager.find_startable_job("my-name") is high

    @pytest.mark.asyncio
    async def test_queue_restrictions(self, db_session, job_manager):
        a = Job("a")
        b = Job("b", queue="other_queue")
        await persist(db_session, a, b)

        assert await job_manager.find_startable_job("w", restricted_queues=["other_queue"]) is b
        assert await job_manager.find_startable_job("w", excluded_queues=["default"]) is None
        assert await job_manager.find_startable_job("w") is a

    @pytest.mark.asyncio
    async def test_job_owned_by_a_worker_is_skipped(self, db_session, job_manager):
        a = Job("a")
        b = Job("b")
        await persist(db_session, a, b)
        # Already handed to another worker
        a.worker_name = "someone-else"
        await db_session.flush()

        excluded_ids = []
        assert await job_manager.find_startable_job("me", excluded_ids) is b
        assert excluded_ids == []

    @pytest.mark.asyncio
    async def test_claim_lost_to_another_worker(self, db_session, job_manager, session_factory, monkeypatch):
        a = Job("a", priority=1)
        b = Job("b")
        await persist(db_session, a, b)
        await db_session.commit()
        a_id = a.id

        resolve = job_manager._resolve_startable

        async def claimed_meanwhile(candidate, *args):
            job = await resolve(candidate, *args)
            if job is not None and job.id == a_id:
                # Another worker commits its claim between our scan and our update
                async with session_factory() as other:
                    await other.execute(
                        update(Job)
                        .where(Job.id == a_id)
                        .values(worker_name="worker-2", state=JobState.RUNNING)
                    )
                    await other.commit()
            return job

        monkeypatch.setattr(job_manager, "_resolve_startable", claimed_meanwhile)

        excluded_ids = []
        job = await job_manager.find_startable_job("worker-1", excluded_ids)

        assert job is b
        assert b.worker_name == "worker-1"
        assert excluded_ids == [a_id]
        assert a not in db_session

        await db_session.commit()
        async with session_factory() as other:
            lost = await other.get(Job, a_id)
            assert lost.worker_name == "worker-2"
