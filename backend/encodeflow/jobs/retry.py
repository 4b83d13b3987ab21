"""
Retry policy.

Decides, when a job fails at runtime, whether it re-enters the queue.
Retries reuse the job's resolved CommandSpecs unchanged. Build-time errors
never reach this point: they fail submission and no job exists.

The retry cap is always enforced; backoff is optional.
"""

import errno
from dataclasses import dataclass
from typing import FrozenSet, Optional

from .models import FailureKind, Job, JobErrorDescriptor


# Start failures worth retrying: temporary resource shortages
TRANSIENT_START_ERRNOS: FrozenSet[int] = frozenset({
    errno.EAGAIN,
    errno.ENOMEM,
    errno.EMFILE,
    errno.ENFILE,
    errno.ETXTBSY,
    errno.EBUSY,
})


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    reason: str
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Args:
        max_retries: Cap on retries per job (0 disables retry)
        backoff_base: First retry delay in seconds; None means no backoff
        backoff_factor: Multiplier per further retry
        backoff_max: Upper bound on any single delay
    """

    max_retries: int = 2
    backoff_base: Optional[float] = None
    backoff_factor: float = 2.0
    backoff_max: float = 300.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base is not None and self.backoff_base < 0:
            raise ValueError("backoff_base must be >= 0")

    @staticmethod
    def is_retryable(error: JobErrorDescriptor) -> bool:
        if error.kind == FailureKind.START_FAILURE:
            return error.errno in TRANSIENT_START_ERRNOS
        return error.kind in (FailureKind.EXIT_FAILURE, FailureKind.RUNNER_CRASH)

    def delay_for(self, retry_number: int) -> float:
        """Delay before the Nth retry (1-based)."""
        if self.backoff_base is None:
            return 0.0
        return min(self.backoff_max, self.backoff_base * self.backoff_factor ** (retry_number - 1))

    def on_terminal_failure(self, job: Job, error: JobErrorDescriptor) -> RetryDecision:
        """Decide whether a job that just failed with `error` is resubmitted."""
        if not self.is_retryable(error):
            return RetryDecision(retry=False, reason=f"{error.kind.value} is not retryable")
        if job.retry_count >= self.max_retries:
            return RetryDecision(
                retry=False,
                reason=f"retry cap reached ({job.retry_count}/{self.max_retries})",
            )
        attempt = job.retry_count + 1
        return RetryDecision(
            retry=True,
            reason=f"retry {attempt}/{self.max_retries}",
            delay_seconds=self.delay_for(attempt),
        )
