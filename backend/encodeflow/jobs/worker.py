"""
Job worker: runs one admitted job's passes on its own thread.

Feeds runner events through the progress parser and writes typed events to
the job's channel. Whatever happens, the last thing a worker does is write
FINISHED with an outcome: the control thread relies on it to settle the job
and release its slot.
"""

import logging
import threading
from collections import deque
from typing import Optional, Sequence, Tuple

from ..commands.models import CommandSpec
from ..execution.events import RunControl, RunnerEvent, RunnerEventKind
from ..execution.progress import ProgressParser, is_progress_line
from ..execution.runner import ProcessRunner
from .channel import ChannelEvent, ChannelEventKind, JobChannel, WorkerOutcome

logger = logging.getLogger(__name__)


def _outcome_from_exit(event: Optional[RunnerEvent], tail: Tuple[str, ...]) -> WorkerOutcome:
    if event is None:
        return WorkerOutcome(crashed=True, crash_error="runner produced no exit event", diagnostic_tail=tail)
    return WorkerOutcome(
        exit_code=event.exit_code,
        pass_index=event.pass_index,
        canceled=event.canceled,
        start_failed=event.start_failed,
        start_error=event.start_error,
        start_errno=event.start_errno,
        diagnostic_tail=tail,
    )


class JobWorker(threading.Thread):
    """
    One run of a job's CommandSpecs.

    A retried job gets a fresh worker, control handle and channel.
    """

    def __init__(
        self,
        job_id: str,
        commands: Sequence[CommandSpec],
        duration: float,
        runner: ProcessRunner,
        control: RunControl,
        channel: JobChannel,
        tail_lines: int = 20,
        ema_alpha: float = 0.3,
    ):
        super().__init__(name=f"job-worker-{job_id[:8]}", daemon=True)
        self.job_id = job_id
        self.commands = tuple(commands)
        self.runner = runner
        self.control = control
        self.channel = channel
        self._parser = ProgressParser(duration, pass_count=len(self.commands), ema_alpha=ema_alpha)
        self._tail: deque = deque(maxlen=tail_lines)
        self._tail_lock = threading.Lock()

    def diagnostic_tail(self) -> Tuple[str, ...]:
        """Trailing diagnostic lines seen so far (safe from any thread)."""
        with self._tail_lock:
            return tuple(self._tail)

    def _remember(self, line: str) -> None:
        with self._tail_lock:
            self._tail.append(line)

    def _emit(self, kind: ChannelEventKind, **fields) -> None:
        self.channel.put(ChannelEvent(job_id=self.job_id, kind=kind, **fields))

    def run(self) -> None:
        outcome: Optional[WorkerOutcome] = None
        last_exit: Optional[RunnerEvent] = None
        try:
            for event in self.runner.run_passes(self.commands, self.control):
                if event.kind == RunnerEventKind.STARTED:
                    self._parser.start_pass(event.pass_index)
                    self._emit(ChannelEventKind.PASS_STARTED, pass_index=event.pass_index)
                elif event.kind == RunnerEventKind.PROGRESS_LINE:
                    if not is_progress_line(event.line):
                        self._remember(event.line)
                        continue
                    sample = self._parser.feed(event.line)
                    if sample is not None:
                        self._emit(ChannelEventKind.PROGRESS, pass_index=event.pass_index, sample=sample)
                elif event.kind == RunnerEventKind.STDERR_LINE:
                    if event.line:
                        self._remember(event.line)
                elif event.kind == RunnerEventKind.SUSPENDED:
                    self._emit(ChannelEventKind.SUSPENDED, pass_index=event.pass_index)
                elif event.kind == RunnerEventKind.RESUMED:
                    self._emit(ChannelEventKind.RESUMED, pass_index=event.pass_index)
                elif event.kind == RunnerEventKind.EXITED:
                    last_exit = event
            outcome = _outcome_from_exit(last_exit, self.diagnostic_tail())
        except Exception as e:
            logger.exception(f"[Worker] Job {self.job_id} crashed: {e}")
            outcome = WorkerOutcome(crashed=True, crash_error=str(e), diagnostic_tail=self.diagnostic_tail())
        finally:
            if outcome is None:
                outcome = WorkerOutcome(
                    crashed=True,
                    crash_error="worker interrupted",
                    diagnostic_tail=self.diagnostic_tail(),
                )
            self._emit(ChannelEventKind.FINISHED, pass_index=outcome.pass_index, outcome=outcome)
