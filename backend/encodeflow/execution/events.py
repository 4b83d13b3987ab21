"""
Runner events and the run-control handle.

A runner turns one CommandSpec into an ordered stream of RunnerEvents.
EXITED is emitted exactly once per CommandSpec and is always the last event
for that spec, including when the process could not be started.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional


# Exit code reported when the process could not be started at all.
# Outside the range of real exit statuses and negative signal numbers.
START_FAILURE_EXIT_CODE = -1000


class RunnerEventKind(str, Enum):
    STARTED = "started"
    PROGRESS_LINE = "progress_line"  # Raw line from the -progress channel (stdout)
    STDERR_LINE = "stderr_line"  # Raw human-readable diagnostic line
    SUSPENDED = "suspended"  # Process tree confirmed stopped
    RESUMED = "resumed"  # Process tree continued
    EXITED = "exited"


@dataclass(frozen=True)
class RunnerEvent:
    """
    One lifecycle event from the process runner.

    Attributes:
        kind: Event kind
        pass_index: 1-based pass the event belongs to
        pid: Process id (STARTED, and SUSPENDED/RESUMED of a live process)
        line: Raw text (PROGRESS_LINE, STDERR_LINE)
        exit_code: Exit status (EXITED); START_FAILURE_EXIT_CODE if never started,
            None if cancelled before it could start
        canceled: EXITED because cancellation was requested
        start_error: OS error text when the process could not be started
        start_errno: OS errno when the process could not be started
    """

    kind: RunnerEventKind
    pass_index: int = 1
    pid: Optional[int] = None
    line: Optional[str] = None
    exit_code: Optional[int] = None
    canceled: bool = False
    start_error: Optional[str] = None
    start_errno: Optional[int] = None

    @property
    def start_failed(self) -> bool:
        return self.kind == RunnerEventKind.EXITED and self.exit_code == START_FAILURE_EXIT_CODE

    @property
    def succeeded(self) -> bool:
        return self.kind == RunnerEventKind.EXITED and self.exit_code == 0 and not self.canceled


class RunControl:
    """
    Cancel / pause / resume requests for one job's runner.

    Written by the scheduler's control thread, read by the job's worker
    thread. Cancellation is sticky; pause and resume toggle one flag.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._cancel = False
        self._pause = False

    def request_cancel(self) -> None:
        with self._changed:
            self._cancel = True
            self._changed.notify_all()

    def request_pause(self) -> None:
        with self._changed:
            self._pause = True
            self._changed.notify_all()

    def request_resume(self) -> None:
        with self._changed:
            self._pause = False
            self._changed.notify_all()

    @property
    def cancel_requested(self) -> bool:
        with self._lock:
            return self._cancel

    @property
    def pause_requested(self) -> bool:
        with self._lock:
            return self._pause and not self._cancel

    def wait_while_paused(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the pause is lifted or cancellation is requested.

        Returns True if no longer paused (resumed or cancelled).
        """
        with self._changed:
            return self._changed.wait_for(lambda: self._cancel or not self._pause, timeout)
