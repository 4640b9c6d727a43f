from enum import StrEnum, auto

DEFAULT_QUEUE = "default"

class JobState(StrEnum):
    NEW = auto()          # Created, not yet confirmed for execution
    PENDING = auto()      # Waiting for its dependencies and a worker
    RUNNING = auto()      # Claimed by a worker
    FINISHED = auto()     # Completed successfully
    FAILED = auto()       # Command failed
    TERMINATED = auto()   # Killed, or retries exhausted
    INCOMPLETE = auto()   # Worker vanished without reporting
    CANCELED = auto()     # Canceled by a user or by a failed prerequisite

FINAL_STATES = frozenset({
    JobState.FINISHED,
    JobState.FAILED,
    JobState.TERMINATED,
    JobState.INCOMPLETE,
    JobState.CANCELED,
})

# Outcomes that may spawn a retry of the original job
FAILING_STATES = frozenset({
    JobState.FAILED,
    JobState.TERMINATED,
    JobState.INCOMPLETE,
})

NON_SUCCESSFUL_STATES = FAILING_STATES | {JobState.CANCELED}

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.NEW: frozenset({JobState.PENDING, JobState.CANCELED}),
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.CANCELED}),
    JobState.RUNNING: frozenset({
        JobState.FINISHED,
        JobState.FAILED,
        JobState.TERMINATED,
        JobState.INCOMPLETE,
        JobState.CANCELED,
    }),
}

class JobEvent(StrEnum):
    CREATED = auto()
    STARTED = auto()
    RETRIED = auto()
    CLOSED = auto()
