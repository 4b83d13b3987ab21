"""
Jobs: model, state machine, worker slots, retry policy, scheduler, hooks.
"""

from .errors import (
    InvalidStateTransitionError,
    JobError,
    JobNotFoundError,
    NoSlotAvailableError,
    SchedulerClosedError,
    SlotAlreadyHeldError,
    SubmissionRejected,
    TerminalJobError,
)
from .models import (
    ControlResult,
    FailureKind,
    Job,
    JobErrorDescriptor,
    JobState,
    JobStateSnapshot,
    SubmissionRequest,
)
from .state import TERMINAL_JOB_STATES, JobStateMachine, can_transition_job, is_job_terminal
from .slots import WorkerSlot, WorkerSlotPool
from .retry import RetryDecision, RetryPolicy
from .hooks import CompletionNotice, HookRegistry
from .subscriptions import Subscription
from .scheduler import JobScheduler

__all__ = [
    "InvalidStateTransitionError",
    "JobError",
    "JobNotFoundError",
    "NoSlotAvailableError",
    "SchedulerClosedError",
    "SlotAlreadyHeldError",
    "SubmissionRejected",
    "TerminalJobError",
    "ControlResult",
    "FailureKind",
    "Job",
    "JobErrorDescriptor",
    "JobState",
    "JobStateSnapshot",
    "SubmissionRequest",
    "TERMINAL_JOB_STATES",
    "JobStateMachine",
    "can_transition_job",
    "is_job_terminal",
    "WorkerSlot",
    "WorkerSlotPool",
    "RetryDecision",
    "RetryPolicy",
    "CompletionNotice",
    "HookRegistry",
    "Subscription",
    "JobScheduler",
]
