"""
Per-job event channel.

Single writer (the job's worker thread), single reader (the scheduler's
control thread), bounded, ordered. A full channel blocks the writer, which
stops pulling runner events, which stalls the process's output pipes:
back-pressure travels to the producer and nothing is dropped.
"""

import queue
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..execution.progress import ProgressSample


class ChannelEventKind(str, Enum):
    PASS_STARTED = "pass_started"
    PROGRESS = "progress"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    FINISHED = "finished"  # Always the last event of a worker run


@dataclass(frozen=True)
class WorkerOutcome:
    """
    How a worker run ended.

    exit_code is the final pass's exit status (START_FAILURE_EXIT_CODE when
    it never started). crashed means the worker itself raised.
    """

    exit_code: Optional[int] = None
    pass_index: int = 1
    canceled: bool = False
    start_failed: bool = False
    start_error: Optional[str] = None
    start_errno: Optional[int] = None
    crashed: bool = False
    crash_error: Optional[str] = None
    diagnostic_tail: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not (self.canceled or self.crashed or self.start_failed)


@dataclass(frozen=True)
class ChannelEvent:
    job_id: str
    kind: ChannelEventKind
    pass_index: int = 1
    sample: Optional[ProgressSample] = None
    outcome: Optional[WorkerOutcome] = None


class JobChannel:
    """
    Bounded FIFO between one worker and the control thread.

    on_put wakes the control thread after every write.
    """

    def __init__(self, job_id: str, capacity: int, on_put: Optional[Callable[[], None]] = None):
        if capacity < 1:
            raise ValueError("Channel capacity must be >= 1")
        self.job_id = job_id
        self._queue: "queue.Queue[ChannelEvent]" = queue.Queue(maxsize=capacity)
        self._on_put = on_put
        self._closed = False

    def put(self, event: ChannelEvent, poll_interval: float = 0.1) -> bool:
        """
        Write an event, blocking while the channel is full.

        Returns False only if the channel was closed (engine shutdown)
        before the event could be written.
        """
        while True:
            if self._closed:
                return False
            try:
                self._queue.put(event, timeout=poll_interval)
                break
            except queue.Full:
                continue
        if self._on_put is not None:
            self._on_put()
        return True

    def drain(self, max_items: int) -> List[ChannelEvent]:
        """Read up to max_items events without blocking, in write order."""
        events = []
        while len(events) < max_items:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._closed = True
