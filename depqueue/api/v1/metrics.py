from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of jobs in PENDING state', ['queue'])
JOB_START_DELAY = Histogram('job_start_delay_seconds', 'Time from execute_after to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])

JOBS_INFLIGHT = Gauge(
    "jobs_inflight",
    "Number of jobs currently running"
)

JOB_CLAIM_TOTAL = Counter(
    "job_claim_total",
    "Total number of jobs claimed by workers",
    ["queue"]
)

JOB_STATE_TRANSITIONS = Counter(
    "job_state_transitions_total",
    "Total number of jobs closed, by final state",
    ["state"]
)

JOB_RETRY_TOTAL = Counter(
    "job_retry_total",
    "Total number of retry jobs created",
    ["queue"]
)

STALE_JOBS_CLOSED = Counter(
    "stale_jobs_closed_total",
    "Total number of running jobs closed as incomplete by the reaper"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
