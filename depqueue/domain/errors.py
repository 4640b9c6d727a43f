class JobError(Exception):
    """Base exception for job queue errors."""
    pass

class ConfigurationError(JobError):
    pass

class JobNotFoundError(JobError):
    def __init__(self, command, args=None):
        self.command = command
        self.job_args = list(args or [])
        super().__init__(f"Found no job for command {command!r} with args {self.job_args!r}")

class UnknownJobError(JobError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_state, target_state):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(f"Cannot transition from {current_state} to {target_state}")

class DependencyCycleError(JobError):
    pass

class RelatedEntityError(JobError):
    pass

class ClaimError(JobError):
    pass

class ClaimLostError(ClaimError):
    pass

class RuntimeExceededError(ClaimError):
    pass
