"""
Job state transitions.

Job lifecycle:
    QUEUED -> RUNNING <-> PAUSED
    RUNNING -> SUCCEEDED | FAILED | CANCELED
    QUEUED -> CANCELED
    PAUSED -> CANCELED   (cancel of a suspended process tree)
    RUNNING -> QUEUED    (retry re-entry only)

INVARIANT: Terminal job states (SUCCEEDED, FAILED, CANCELED) are immutable.
Once a job enters a terminal state, no state transition is allowed.

INVARIANT: RUNNING requires a worker slot. Leaving RUNNING in any direction
releases the slot before any listener is notified.
"""

import logging
from datetime import datetime
from typing import Callable, FrozenSet, List, Optional, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import Job, JobErrorDescriptor, JobState, JobStateSnapshot
from .slots import WorkerSlotPool

logger = logging.getLogger(__name__)


TERMINAL_JOB_STATES: FrozenSet[JobState] = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.CANCELED,
})


def is_job_terminal(state: JobState) -> bool:
    """
    Check if a job state is terminal (immutable).

    Args:
        state: The job state to check

    Returns:
        True if the state is terminal, False otherwise
    """
    return state in TERMINAL_JOB_STATES


# Legal job state transitions
_JOB_TRANSITIONS: Set[Tuple[JobState, JobState]] = {
    # Admission
    (JobState.QUEUED, JobState.RUNNING),

    # Suspend / continue the process tree
    (JobState.RUNNING, JobState.PAUSED),
    (JobState.PAUSED, JobState.RUNNING),

    # Terminal states
    (JobState.RUNNING, JobState.SUCCEEDED),
    (JobState.RUNNING, JobState.FAILED),
    (JobState.RUNNING, JobState.CANCELED),
    (JobState.QUEUED, JobState.CANCELED),
    (JobState.PAUSED, JobState.CANCELED),

    # Retry re-entry
    (JobState.RUNNING, JobState.QUEUED),
}


def can_transition_job(from_state: JobState, to_state: JobState) -> bool:
    """
    Check if a job state transition is legal.

    INVARIANT: Terminal states cannot transition to any other state.
    Unlike status polling, a self-transition is never legal here: every
    applied transition is a real life-cycle step.
    """
    if is_job_terminal(from_state):
        return False
    return (from_state, to_state) in _JOB_TRANSITIONS


def validate_job_transition(job_id: str, from_state: JobState, to_state: JobState) -> None:
    """
    Validate a job state transition, raising an exception if illegal.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition_job(from_state, to_state):
        raise InvalidStateTransitionError(job_id, from_state.value, to_state.value)


SnapshotListener = Callable[[JobStateSnapshot], None]


class JobStateMachine:
    """
    Applies transitions to jobs.

    The only writer of job life-cycle fields. Holds the slot pool so that
    slot accounting and state can never disagree.
    """

    def __init__(self, slots: WorkerSlotPool, clock: Callable[[], datetime] = datetime.now):
        self.slots = slots
        self._clock = clock
        self._listeners: List[SnapshotListener] = []

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def transition(
        self,
        job: Job,
        to_state: JobState,
        error: Optional[JobErrorDescriptor] = None,
        retry_count: Optional[int] = None,
        not_before: Optional[datetime] = None,
    ) -> JobStateSnapshot:
        """
        Move a job to a new state.

        Raises:
            InvalidStateTransitionError: Illegal transition (job unchanged)
            NoSlotAvailableError: Entering RUNNING with the pool exhausted
        """
        from_state = job.state
        validate_job_transition(job.id, from_state, to_state)

        if to_state == JobState.RUNNING:
            self.slots.acquire(job.id)
        elif from_state == JobState.RUNNING:
            self.slots.release(job.id)

        now = self._clock()
        # Life-cycle fields first, state last: the job freezes once terminal
        if to_state == JobState.RUNNING and job.started_at is None:
            job.started_at = now
        if to_state == JobState.QUEUED:
            job.retry_count = retry_count if retry_count is not None else job.retry_count + 1
            job.not_before = not_before
            job.progress = 0.0
            job.rate = None
            job.eta_seconds = None
            job.current_pass = 0
            job.error = error
        elif error is not None:
            job.error = error
        if is_job_terminal(to_state):
            job.finished_at = now
            if to_state == JobState.SUCCEEDED:
                job.progress = 1.0
                job.eta_seconds = 0.0
            else:
                job.eta_seconds = None
        job.updated_at = now
        job.revision += 1
        job.state = to_state

        logger.info(f"[StateMachine] Job {job.id}: {from_state.value} -> {to_state.value}")
        return self._publish(job)

    def record_progress(
        self,
        job: Job,
        fraction: float,
        rate: Optional[float],
        eta_seconds: Optional[float],
        current_pass: int,
    ) -> Optional[JobStateSnapshot]:
        """
        Update progress fields of a running job.

        Fraction never decreases. Ignored (returns None) outside RUNNING.
        """
        if job.state != JobState.RUNNING:
            return None
        job.progress = max(job.progress, min(1.0, max(0.0, fraction)))
        job.rate = rate
        job.eta_seconds = eta_seconds
        job.current_pass = current_pass
        job.updated_at = self._clock()
        job.revision += 1
        return self._publish(job)

    def mark_pass(self, job: Job, pass_index: int) -> Optional[JobStateSnapshot]:
        """Record that a pass started."""
        if job.state != JobState.RUNNING or job.current_pass == pass_index:
            return None
        job.current_pass = pass_index
        job.updated_at = self._clock()
        job.revision += 1
        return self._publish(job)

    def _publish(self, job: Job) -> JobStateSnapshot:
        snapshot = job.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.exception(f"[StateMachine] Listener failed for job {job.id}: {e}")
        return snapshot
