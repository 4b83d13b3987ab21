"""
Job-specific error types.

All errors inherit from JobError for easy catching.
Errors are explicit and provide actionable messages.

Runtime failures of a job (process start/exit failures, crashes) are not
raised: they are captured on the job as a JobErrorDescriptor.
"""


class JobError(Exception):
    """Base exception for all job-related failures."""
    pass


class JobNotFoundError(JobError):
    """Raised when a job cannot be found."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateTransitionError(JobError):
    """Raised when attempting an illegal state transition."""

    def __init__(self, job_id: str, current_state: str, target_state: str):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid job state transition for {job_id}: "
            f"{current_state} -> {target_state}"
        )


class TerminalJobError(JobError):
    """Raised when something tries to modify a job in a terminal state."""

    def __init__(self, job_id: str, field: str):
        self.job_id = job_id
        self.field = field
        super().__init__(f"Job {job_id} is terminal; '{field}' cannot change")


class NoSlotAvailableError(JobError):
    """Raised when a worker slot is requested while the pool is exhausted."""

    def __init__(self, job_id: str, limit: int):
        self.job_id = job_id
        self.limit = limit
        super().__init__(f"No worker slot available for job {job_id} (limit {limit})")


class SlotAlreadyHeldError(JobError):
    """Raised when a job asks for a second worker slot."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already holds a worker slot")


class SubmissionRejected(JobError):
    """Raised by a pre-submit handler to refuse a submission."""

    def __init__(self, reason: str, handler: str = ""):
        self.reason = reason
        self.handler = handler
        prefix = f"{handler}: " if handler else ""
        super().__init__(f"Submission rejected: {prefix}{reason}")


class SchedulerClosedError(JobError):
    """Raised when a request reaches a scheduler that has shut down."""

    def __init__(self):
        super().__init__("Scheduler is shut down")
