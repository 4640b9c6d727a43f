#!/usr/bin/env python3
"""
Races many workers for a single job against a real Postgres database.

Run with DEPQUEUE_SQLALCHEMY_DATABASE_URI pointing at a scratch database.
"""
import asyncio
import uuid

from depqueue.db.models import Job
from depqueue.db.session import AsyncSessionLocal, Base, engine
from depqueue.domain.events import build_notifier
from depqueue.domain.retry import FixedRetryScheduler
from depqueue.services.job_manager import JobManager

WORKERS = 20

async def attempt_claim(worker_name, queue):
    async with AsyncSessionLocal() as session:
        manager = JobManager(session, build_notifier(), FixedRetryScheduler())
        job = await manager.find_startable_job(worker_name, restricted_queues=[queue])
        await session.commit()
        if job is not None:
            return worker_name, job.id
    return None

async def verify_no_double_claim():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # A private queue keeps leftovers of earlier runs out of the race
    queue = f"concurrency-{uuid.uuid4().hex[:8]}"

    # 1. Create 1 job
    print("1. Creating 1 job...")
    async with AsyncSessionLocal() as session:
        job = Job("concurrency_test", queue=queue)
        session.add(job)
        await session.commit()
        job_id = job.id
    print(f"   Job created: {job_id}")

    # 2. Spawn concurrent workers trying to claim
    print(f"2. Spawning {WORKERS} concurrent claim attempts...")
    results = await asyncio.gather(*(attempt_claim(f"worker-{i}", queue) for i in range(WORKERS)))

    # 3. Analyze results
    claims = [r for r in results if r is not None]
    print(f"3. Results: {len(claims)} successful claims.")

    if len(claims) == 1:
        winner, claimed_id = claims[0]
        if claimed_id != job_id:
            print(f"FAILURE: Worker claimed WRONG job: {claimed_id}")
        else:
            print(f"SUCCESS: Exactly one worker claimed the job. Winner: {winner}")
    elif len(claims) == 0:
        print("FAILURE: No one claimed the job (unexpected).")
    else:
        print(f"FAILURE: {len(claims)} workers claimed the job! Double claim detected.")
        for winner, _ in claims:
            print(f"   - {winner}")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
