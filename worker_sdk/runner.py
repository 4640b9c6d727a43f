import asyncio
import logging
import traceback
from typing import Any, Callable, Coroutine, Iterable, Optional

from depqueue.commands.heartbeat import heartbeat
from depqueue.db.models import Job
from depqueue.db.session import AsyncSessionLocal
from depqueue.domain.errors import ClaimError
from depqueue.domain.events import EventNotifier
from depqueue.domain.retry import RetryScheduler
from depqueue.domain.states import JobState
from depqueue.services.job_manager import JobManager
from depqueue.settings import settings

logger = logging.getLogger(__name__)

# Receives the job's args, returns output to record on the job
Handler = Callable[[list[str]], Coroutine[Any, Any, Optional[str]]]

class WorkerRunner:
    def __init__(
        self,
        worker_name: str,
        handlers: dict[str, Handler],
        notifier: EventNotifier,
        retry_scheduler: RetryScheduler,
        session_factory=AsyncSessionLocal,
        restricted_queues: Iterable[str] = (),
        excluded_queues: Iterable[str] = (),
        poll_interval: float = settings.WORKER_POLL_INTERVAL_SECONDS,
        heartbeat_interval: float = settings.WORKER_HEARTBEAT_INTERVAL_SECONDS
    ):
        self.worker_name = worker_name
        self.handlers = dict(handlers)
        self.notifier = notifier
        self.retry_scheduler = retry_scheduler
        self.session_factory = session_factory
        self.restricted_queues = list(restricted_queues)
        self.excluded_queues = list(excluded_queues)
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.running = False
        self._shutdown_event = asyncio.Event()

    def _manager(self, session) -> JobManager:
        return JobManager(session, self.notifier, self.retry_scheduler)

    async def run(self):
        self.running = True
        self._shutdown_event.clear()
        logger.info(f"Worker {self.worker_name} started")

        try:
            while self.running:
                try:
                    job_id = await self.run_once()

                    if job_id is None:
                        try:
                            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
                        except asyncio.TimeoutError:
                            pass

                except Exception as e:
                    logger.exception(f"Error in runner loop for worker {self.worker_name}: {e}")
                    try:
                        await asyncio.wait_for(self._shutdown_event.wait(), timeout=5.0)
                    except asyncio.TimeoutError:
                        pass
        finally:
            logger.info("Worker runner stopped")

    def stop(self):
        self.running = False
        self._shutdown_event.set()

    async def run_once(self) -> Optional[int]:
        """Claims and processes at most one job. Returns its id, or None if idle."""
        async with self.session_factory() as session:
            job = await self._manager(session).find_startable_job(
                self.worker_name,
                excluded_queues=self.excluded_queues,
                restricted_queues=self.restricted_queues
            )
            # Commit makes the claim visible to the other workers
            await session.commit()

        if job is None:
            return None

        logger.info(f"Claimed job {job.id} ({job.command})")
        await self.process_job(job.id, job.command, list(job.args), job.max_runtime)
        return job.id

    async def process_job(self, job_id: int, command: str, args: list[str], max_runtime: int = 0):
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job_id))

        output = None
        error_output = None
        stack_trace = None
        exit_code = None

        try:
            handler = self.handlers.get(command)
            if handler is None:
                raise LookupError(f"No handler registered for command {command!r}")

            if max_runtime:
                output = await asyncio.wait_for(handler(args), timeout=max_runtime)
            else:
                output = await handler(args)

            final_state = JobState.FINISHED
            exit_code = 0

        except asyncio.TimeoutError:
            final_state = JobState.TERMINATED
            error_output = f"Max runtime of {max_runtime}s exceeded"
            logger.error(f"Job {job_id} terminated: {error_output}")

        except Exception as e:
            final_state = JobState.FAILED
            error_output = f"{type(e).__name__}: {str(e)}"
            stack_trace = traceback.format_exc()
            exit_code = 1
            logger.error(f"Job {job_id} failed: {error_output}")

        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

        await self._report(job_id, final_state, output, error_output, stack_trace, exit_code)

    async def _report(self, job_id, final_state, output, error_output, stack_trace, exit_code):
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                logger.error(f"Job {job_id} disappeared before its result could be recorded")
                return

            if not job.is_running() or job.worker_name != self.worker_name:
                # Reaped or canceled while we were running it
                logger.warning(f"Job {job_id} is no longer ours (state {job.state}), dropping result")
                return

            if output:
                job.add_output(output)
            if error_output:
                job.add_error_output(error_output)
            job.stack_trace = stack_trace
            job.exit_code = exit_code

            await self._manager(session).close_job(job, final_state)
            await session.commit()

        logger.info(f"Job {job_id} closed as {final_state}")

    async def _heartbeat_loop(self, job_id: int):
        try:
            while self.running:
                await asyncio.sleep(self.heartbeat_interval)
                if not self.running:
                    break
                logger.debug(f"Sending heartbeat for {job_id}")
                try:
                    async with self.session_factory() as session:
                        await heartbeat(session, job_id, self.worker_name)
                        await session.commit()
                except ClaimError as e:
                    logger.warning(f"Heartbeat rejected for {job_id}: {e}")
                    break
                except Exception as e:
                    logger.warning(f"Heartbeat failed for {job_id}: {e}")
        except asyncio.CancelledError:
            pass
