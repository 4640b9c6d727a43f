import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from depqueue.api.v1.metrics import JOB_CLAIM_TOTAL, JOB_RETRY_TOTAL, JOB_START_DELAY, JOB_STATE_TRANSITIONS
from depqueue.db.models import (
    Job,
    JobEventLog,
    RelatedEntity,
    args_hash,
    entity_type_tag,
    job_dependencies,
    related_entity_key,
)
from depqueue.db.session import Base
from depqueue.domain.errors import InvalidJobStateError, JobNotFoundError, RelatedEntityError
from depqueue.domain.events import EventNotifier
from depqueue.domain.retry import RetryScheduler
from depqueue.domain.states import ALLOWED_TRANSITIONS, DEFAULT_QUEUE, FAILING_STATES, FINAL_STATES, JobEvent, JobState
from depqueue.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

class JobManager:
    """
    Lookup, scheduling and closing of jobs within one unit of work.

    The manager works inside the caller's session: it flushes but does not
    commit, so a claim or a cascading close becomes visible to other workers
    only when the caller commits. The one exception is
    get_or_create_if_not_exists, which has to commit to be race free.
    """

    def __init__(self, session: AsyncSession, notifier: EventNotifier, retry_scheduler: RetryScheduler):
        self.session = session
        self.notifier = notifier
        self.retry_scheduler = retry_scheduler

    # --- Lookups ---

    def _identity_query(self, command: str, args: Optional[Iterable[str]]):
        args = [str(a) for a in (args or [])]
        return select(Job).where(
            Job.command == command,
            Job.args_hash == args_hash(args)
        ).order_by(Job.id.asc()).limit(1)

    async def find_job(self, command: str, args: Optional[Iterable[str]] = None) -> Optional[Job]:
        return await self.session.scalar(self._identity_query(command, args))

    async def get_job(self, command: str, args: Optional[Iterable[str]] = None) -> Job:
        job = await self.find_job(command, args)
        if job is None:
            raise JobNotFoundError(command, args)
        return job

    async def get_or_create_if_not_exists(self, command: str, args: Optional[Iterable[str]] = None) -> Job:
        """
        Returns the job for (command, args), creating a pending one if needed.

        The new row is inserted as NEW and committed, then the first job for
        the pair is re-read. Only the caller whose row came first promotes it to
        PENDING; a caller that lost the race deletes its own row.
        """
        job = await self.find_job(command, args)
        if job is not None:
            return job

        job = Job(command, list(args or []), confirmed=False)
        self.session.add(job)
        await self.session.commit()

        first_job = await self.session.scalar(self._identity_query(command, args))
        if first_job is job:
            job.set_state(JobState.PENDING)
            self.session.add(JobEventLog(job_id=job.id, event_type=JobEvent.CREATED, meta={}))
            await self.session.commit()
            return job

        logger.debug(f"Lost creation race for {command} {args}, using job {first_job.id}")
        await self.session.delete(job)
        await self.session.commit()
        return first_job

    async def find_pending_job(
        self,
        excluded_ids: Iterable[int] = (),
        excluded_commands: Iterable[str] = (),
        restricted_queues: Iterable[str] = ()
    ) -> Optional[Job]:
        """
        Any pending job, ignoring dependencies.

        Without restricted queues only the default queue is searched.
        """
        excluded_ids = list(excluded_ids)
        excluded_commands = list(excluded_commands)
        restricted_queues = list(restricted_queues)

        stmt = select(Job).where(Job.state == JobState.PENDING)
        if excluded_ids:
            stmt = stmt.where(Job.id.not_in(excluded_ids))
        if excluded_commands:
            stmt = stmt.where(Job.command.not_in(excluded_commands))
        if restricted_queues:
            stmt = stmt.where(Job.queue.in_(restricted_queues))
        else:
            stmt = stmt.where(Job.queue == DEFAULT_QUEUE)

        stmt = stmt.order_by(Job.priority.desc(), Job.id.asc()).limit(1)
        return await self.session.scalar(stmt)

    async def find_pending_job_by_dependencies(self, dependency_ids: Iterable[int]) -> Optional[Job]:
        """The pending job whose dependency set is exactly the given ids."""
        dependency_ids = set(dependency_ids)
        edges = job_dependencies.c

        if not dependency_ids:
            with_dependencies = select(edges.source_job_id)
            stmt = select(Job).where(
                Job.state == JobState.PENDING,
                Job.id.not_in(with_dependencies)
            )
        else:
            exact_match = (
                select(edges.source_job_id)
                .group_by(edges.source_job_id)
                .having(func.count() == len(dependency_ids))
                .having(
                    func.sum(case((edges.dest_job_id.in_(dependency_ids), 1), else_=0)) == len(dependency_ids)
                )
            )
            stmt = select(Job).where(
                Job.state == JobState.PENDING,
                Job.id.in_(exact_match)
            )

        return await self.session.scalar(stmt.order_by(Job.id.asc()).limit(1))

    async def find_incoming_dependencies(self, job: Job) -> list[Job]:
        """Jobs that directly depend on the given job."""
        stmt = (
            select(Job)
            .join(job_dependencies, Job.id == job_dependencies.c.source_job_id)
            .where(job_dependencies.c.dest_job_id == job.id)
            .order_by(Job.id.asc())
        )
        return list((await self.session.scalars(stmt)).all())

    async def find_job_for_related_entity(self, command: str, entity) -> Optional[Job]:
        related_class, related_id = related_entity_key(entity)
        stmt = (
            select(Job)
            .join(RelatedEntity, RelatedEntity.job_id == Job.id)
            .where(
                Job.command == command,
                RelatedEntity.related_class == related_class,
                RelatedEntity.related_id == related_id
            )
            .order_by(Job.id.asc())
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def load_related_entity(self, ref: RelatedEntity, registry=None):
        """Resolves a related-entity reference through a declarative registry."""
        registry = registry or Base.registry
        for mapper in registry.mappers:
            if entity_type_tag(mapper.class_) == ref.related_class:
                return await self.session.get(mapper.class_, tuple(ref.identity))
        raise RelatedEntityError(f"No mapped class registered for {ref.related_class}")

    # --- Scheduling ---

    async def find_startable_job(
        self,
        worker_name: str,
        excluded_ids: Optional[list[int]] = None,
        excluded_queues: Iterable[str] = (),
        restricted_queues: Iterable[str] = ()
    ) -> Optional[Job]:
        """
        Finds and claims a job whose dependencies have all finished.

        Pending dependencies are explored before the job that needs them. Every
        job found not startable is appended to ``excluded_ids`` (the caller's
        accumulator, mutated even when nothing is returned) and evicted from
        the session so that a later scan reloads it from the store.
        """
        if excluded_ids is None:
            excluded_ids = []
        excluded_queues = list(excluded_queues)
        restricted_queues = list(restricted_queues)

        # Candidates are reloaded with populate_existing; unflushed edits would be lost.
        await self.session.flush()
        now = utcnow()

        while True:
            candidate = await self._next_candidate(excluded_ids, excluded_queues, restricted_queues, now)
            if candidate is None:
                return None

            job = await self._resolve_startable(candidate, excluded_ids, excluded_queues, restricted_queues, now)
            if job is None:
                continue

            if await self._acquire_lock(worker_name, job, now):
                return job

            # Claimed by another worker between the scan and the update
            self._evict(job, excluded_ids)

    async def _next_candidate(self, excluded_ids, excluded_queues, restricted_queues, now: datetime) -> Optional[Job]:
        stmt = select(Job).where(
            Job.state == JobState.PENDING,
            Job.worker_name.is_(None),
            Job.execute_after <= now
        )
        if excluded_ids:
            stmt = stmt.where(Job.id.not_in(excluded_ids))
        if excluded_queues:
            stmt = stmt.where(Job.queue.not_in(excluded_queues))
        if restricted_queues:
            stmt = stmt.where(Job.queue.in_(restricted_queues))

        stmt = (
            stmt.order_by(Job.priority.desc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def _resolve_startable(self, candidate: Job, excluded_ids, excluded_queues, restricted_queues, now) -> Optional[Job]:
        # Explicit work-list with a visited guard; malformed (cyclic) graphs end the walk.
        stack = [candidate]
        visited: set[int] = set()

        while stack:
            job = stack.pop()
            if job.id in visited:
                continue
            visited.add(job.id)

            dependencies = await job.awaitable_attrs.dependencies
            blocking = [dep for dep in dependencies if not dep.is_finished()]
            if not blocking:
                return job

            job_id = job.id
            self._evict(job, excluded_ids)

            if any(dep.is_closed_non_successful() for dep in blocking):
                logger.warning(f"Job {job_id} can never start, a dependency closed unsuccessfully")
                continue

            for dep in reversed(blocking):
                if self._is_claimable(dep, excluded_ids, excluded_queues, restricted_queues, now):
                    stack.append(dep)

        return None

    def _is_claimable(self, job: Job, excluded_ids, excluded_queues, restricted_queues, now: datetime) -> bool:
        if not job.is_pending() or job.worker_name is not None:
            return False
        if job.id in excluded_ids or job.queue in excluded_queues:
            return False
        if restricted_queues and job.queue not in restricted_queues:
            return False
        return as_utc(job.execute_after) <= now

    def _evict(self, job: Job, excluded_ids: list[int]) -> None:
        if job.id not in excluded_ids:
            excluded_ids.append(job.id)
        if job in self.session:
            self.session.expunge(job)

    async def _acquire_lock(self, worker_name: str, job: Job, now: datetime) -> bool:
        values = {
            "worker_name": worker_name,
            "state": JobState.RUNNING,
            "started_at": now,
            "checked_at": now,
        }
        stmt = (
            update(Job)
            .where(
                Job.id == job.id,
                Job.worker_name.is_(None),
                Job.state == JobState.PENDING
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            return False

        self.notifier.notify(job, JobState.RUNNING)
        for key, value in values.items():
            set_committed_value(job, key, value)

        self.session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.STARTED,
            timestamp=now,
            meta={"worker_name": worker_name}
        ))

        JOB_CLAIM_TOTAL.labels(queue=job.queue).inc()
        delay = (now - as_utc(job.execute_after)).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

        logger.info(f"Worker {worker_name} claimed job {job.id} ({job.command})")
        return True

    # --- Closing ---

    async def close_job(self, job: Job, final_state: str) -> None:
        """
        Closes a job and cascades the outcome.

        Failures of an original job spawn a retry while retries remain, and
        the original stays running. Retry jobs hand their outcome to the
        original. Cancellation and unrecoverable failure cancel dependents.
        Closing a job that is already closed does nothing.
        """
        final_state = JobState(final_state)
        if final_state not in FINAL_STATES:
            raise InvalidJobStateError(job.state, final_state)

        await self.session.flush()
        await self._close_job(job, final_state, set())
        await self.session.flush()

    async def _close_job(self, job: Job, final_state: JobState, visited: set) -> None:
        if job in visited:
            return
        visited.add(job)

        if job.is_in_final_state():
            return

        # Rejected before any listener hears of it
        if final_state not in ALLOWED_TRANSITIONS.get(JobState(job.state), frozenset()):
            raise InvalidJobStateError(job.state, final_state)

        original = await job.awaitable_attrs.original_job
        retry_jobs = await job.awaitable_attrs.retry_jobs
        is_retry = job.is_retry_job()

        if not is_retry and retry_jobs:
            if final_state in FAILING_STATES and not retry_jobs[-1].is_in_final_state():
                logger.debug(f"Job {job.id} has a retry in flight, ignoring close as {final_state}")
                return
            # Intermediate failures of an original are absorbed by its retries;
            # only its final outcome is announced.
            if final_state not in FAILING_STATES or not job.is_retry_allowed():
                if final_state in FAILING_STATES:
                    final_state = JobState.TERMINATED
                final_state = self._notify(job, final_state)
        else:
            final_state = self._notify(job, final_state)

        if final_state == JobState.CANCELED:
            self._finalize(job, final_state)

            if is_retry:
                await self._close_job(original, JobState.CANCELED, visited)
                return

            for retry_job in retry_jobs:
                await self._close_job(retry_job, JobState.CANCELED, visited)
            for dependent in await self.find_incoming_dependencies(job):
                await self._close_job(dependent, JobState.CANCELED, visited)

        elif final_state in FAILING_STATES:
            if is_retry:
                self._finalize(job, final_state)
                await self._close_job(original, final_state, visited)
                return

            if job.is_retry_allowed():
                await self._create_retry_job(job, retry_jobs)
                return

            self._finalize(job, final_state)

            # Dependents can no longer be satisfied
            for dependent in await self.find_incoming_dependencies(job):
                if not dependent.is_pending() and not dependent.is_new():
                    continue
                await self._close_job(dependent, JobState.CANCELED, visited)

        else:
            self._finalize(job, final_state)
            if is_retry:
                await self._close_job(original, final_state, visited)

    def _notify(self, job: Job, new_state: JobState) -> JobState:
        event = self.notifier.notify(job, new_state)
        return JobState(event.new_state)

    def _finalize(self, job: Job, state: JobState) -> None:
        job.set_state(state)
        self.session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.CLOSED,
            meta={"state": str(state)}
        ))
        JOB_STATE_TRANSITIONS.labels(state=str(state)).inc()
        logger.info(f"Closed job {job.id} ({job.command}) as {state}")

    async def _create_retry_job(self, job: Job, retry_jobs: list[Job]) -> Job:
        attempt = len(retry_jobs)
        delay = self.retry_scheduler.next_retry_delay(attempt)

        retry_job = Job(
            job.command,
            job.args,
            queue=job.queue,
            priority=job.priority,
            max_runtime=job.max_runtime,
            execute_after=utcnow() + delay,
        )
        for dependency in await job.awaitable_attrs.dependencies:
            retry_job.add_dependency(dependency)

        retry_jobs.append(retry_job)
        self.session.add(retry_job)

        # The original stays in flight until one of its retries settles it.
        job.set_state(JobState.RUNNING)
        await self.session.flush()

        self.session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.RETRIED,
            meta={
                "retry_job_id": retry_job.id,
                "attempt": attempt + 1,
                "max_retries": job.max_retries,
                "execute_after": retry_job.execute_after.isoformat(),
            }
        ))
        JOB_RETRY_TOTAL.labels(queue=job.queue).inc()
        logger.info(
            f"Scheduled retry {attempt + 1}/{job.max_retries} of job {job.id} "
            f"as job {retry_job.id} in {delay.total_seconds()}s"
        )
        return retry_job
