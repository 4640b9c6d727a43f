import asyncio
import logging

from depqueue.api.v1.metrics import LEADER_STATUS
from depqueue.db.session import AsyncSessionLocal
from depqueue.domain.events import EventNotifier
from depqueue.domain.retry import RetryScheduler
from depqueue.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from depqueue.services.job_manager import JobManager
from depqueue.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    def __init__(
        self,
        notifier: EventNotifier,
        retry_scheduler: RetryScheduler,
        interval: int = 10,
        session_factory=AsyncSessionLocal
    ):
        self.notifier = notifier
        self.retry_scheduler = retry_scheduler
        self.interval = interval
        self.session_factory = session_factory
        self._running = False
        self._task = None
        self._is_leader = False

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler service stopped.")

    async def tick(self, session) -> None:
        # Session-level lock: re-acquiring it on every tick is re-entrant.
        is_leader = await try_advisory_lock(session)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Starting maintenance tasks.")
                self._is_leader = True
            LEADER_STATUS.set(1)

            manager = JobManager(session, self.notifier, self.retry_scheduler)
            closed = await run_leader_tasks(manager)
            if closed:
                logger.info(f"Closed {closed} stale jobs")
        else:
            if self._is_leader:
                logger.info("Lost leadership. Stopping maintenance tasks.")
                self._is_leader = False
            LEADER_STATUS.set(0)

        # Gauges are refreshed on all instances so every /metrics is current
        await run_metrics_tasks(session)

    async def _loop(self):
        session = None
        while self._running:
            try:
                if not session:
                    session = self.session_factory()

                await self.tick(session)

            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # If DB error, close session and retry to reconnect
                if session:
                    await session.close()
                    session = None

            await asyncio.sleep(self.interval)

        if session:
            await session.close()
