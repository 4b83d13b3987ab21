"""
Job scheduler.

One control thread owns every admission decision, the worker slot pool and
all job state. Public methods post a message to the control thread and
wait for its reply; nothing outside the control thread mutates a Job.

Admission rules:
- Resumes of paused jobs go first, in request order (they already own
  their concurrency group)
- Then queued jobs by (-priority, submission sequence), skipping jobs whose
  group has a RUNNING or PAUSED member and jobs still in retry backoff
- Never more RUNNING jobs than the global limit; lowering the limit does
  not preempt

Each running job has a worker thread and a bounded JobChannel back to the
control thread. Pause moves a job to PAUSED (releasing its slot) only once
the runner confirms the process tree is suspended. Cancel of a running or
paused job kills the tree; the job settles as CANCELED when the worker
reports exit.

Guaranteed cleanup: an exception in the bookkeeping for one job fails that
job and releases its slot; shutdown kills every tree, settles every job and
releases every slot.
"""

import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..commands.models import CommandSpec
from ..execution.events import START_FAILURE_EXIT_CODE, RunControl
from ..execution.runner import ProcessRunner
from .channel import ChannelEvent, ChannelEventKind, JobChannel, WorkerOutcome
from .errors import JobNotFoundError, SchedulerClosedError
from .hooks import CompletionNotice, HookRegistry
from .models import (
    ControlResult,
    FailureKind,
    Job,
    JobErrorDescriptor,
    JobState,
    JobStateSnapshot,
    SubmissionRequest,
)
from .retry import RetryPolicy
from .slots import WorkerSlotPool
from .state import JobStateMachine
from .subscriptions import Subscription, SubscriptionHub
from .worker import JobWorker

logger = logging.getLogger(__name__)


# Events read from one channel per loop iteration, so one chatty job cannot
# starve the others
_DRAIN_BATCH = 64
_IDLE_WAKE_SECONDS = 0.5


@dataclass
class _ActiveRun:
    """Control-thread bookkeeping for one live worker."""

    worker: JobWorker
    control: RunControl
    channel: JobChannel
    pause_pending: bool = False
    cancel_requested: bool = False


@dataclass
class _Message:
    fn: Callable
    args: tuple
    reply: Future = field(default_factory=Future)


def error_from_outcome(outcome: WorkerOutcome) -> JobErrorDescriptor:
    """Describe a non-successful worker outcome."""
    if outcome.crashed:
        return JobErrorDescriptor(
            kind=FailureKind.RUNNER_CRASH,
            message=f"Runner crashed: {outcome.crash_error}",
            exit_code=outcome.exit_code,
            pass_index=outcome.pass_index,
            diagnostic_tail=outcome.diagnostic_tail,
        )
    if outcome.start_failed:
        return JobErrorDescriptor(
            kind=FailureKind.START_FAILURE,
            message=f"Process could not be started: {outcome.start_error}",
            exit_code=START_FAILURE_EXIT_CODE,
            errno=outcome.start_errno,
            pass_index=outcome.pass_index,
            diagnostic_tail=outcome.diagnostic_tail,
        )
    return JobErrorDescriptor(
        kind=FailureKind.EXIT_FAILURE,
        message=f"Pass {outcome.pass_index} exited with code {outcome.exit_code}",
        exit_code=outcome.exit_code,
        pass_index=outcome.pass_index,
        diagnostic_tail=outcome.diagnostic_tail,
    )


class JobScheduler:
    """
    Priority- and concurrency-group-aware admission controller.

    Usage:
        scheduler = JobScheduler(ProcessRunner(), WorkerSlotPool(2))
        scheduler.start()
        job_id = scheduler.submit(request, commands)
        for snapshot in scheduler.subscribe(job_id):
            ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        runner: ProcessRunner,
        slots: WorkerSlotPool,
        retry_policy: Optional[RetryPolicy] = None,
        hooks: Optional[HookRegistry] = None,
        channel_capacity: int = 256,
        tail_lines: int = 20,
        ema_alpha: float = 0.3,
    ):
        self.runner = runner
        self.slots = slots
        self.retry_policy = retry_policy or RetryPolicy()
        self.hooks = hooks or HookRegistry()
        self.channel_capacity = channel_capacity
        self.tail_lines = tail_lines
        self.ema_alpha = ema_alpha

        self.machine = JobStateMachine(slots)
        self.machine.add_listener(self._publish)
        self._hub = SubscriptionHub()

        # Control-thread state
        self._jobs: Dict[str, Job] = {}
        self._queued: List[Job] = []
        self._live: Dict[str, Job] = {}  # RUNNING or PAUSED
        self._active: Dict[str, _ActiveRun] = {}
        self._resume_requests: List[str] = []
        self._deferred: Dict[str, WorkerOutcome] = {}  # Exited while PAUSED
        self._not_before: Dict[str, float] = {}  # Monotonic retry deadlines
        self._sequence = itertools.count()

        self._inbox: "queue.Queue[_Message]" = queue.Queue()
        self._inbox_lock = threading.Lock()
        self._wake = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="scheduler-control", daemon=True)
        self._started = False
        self._closed = False
        self._stopping = False
        self._stop_deadline: Optional[float] = None

    # =========================================================================
    # Public API (any thread)
    # =========================================================================

    def start(self) -> None:
        if not self._started:
            self._started = True
            self._thread.start()
            logger.info(f"[Scheduler] Started (limit {self.slots.limit})")

    def submit(self, request: SubmissionRequest, commands: Sequence[CommandSpec]) -> str:
        """Accept a job. Returns its id."""
        return self._call(self._do_submit, request, tuple(commands))

    def request_pause(self, job_id: str) -> ControlResult:
        return self._call(self._do_pause, job_id)

    def request_resume(self, job_id: str) -> ControlResult:
        return self._call(self._do_resume, job_id)

    def request_cancel(self, job_id: str) -> ControlResult:
        return self._call(self._do_cancel, job_id)

    def subscribe(self, job_id: str) -> Subscription:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        return self._call(self._do_subscribe, job_id)

    def get_snapshot(self, job_id: str) -> JobStateSnapshot:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        return self._call(self._do_get, job_id)

    def list_snapshots(self) -> List[JobStateSnapshot]:
        """Every known job, in submission order."""
        return self._call(self._do_list)

    def set_concurrency_limit(self, limit: int) -> None:
        """Change the global limit; running jobs are never preempted."""
        self.slots.set_limit(limit)
        self._wake.set()

    def shutdown(self, timeout: float = 10.0) -> None:
        """
        Cancel everything and stop the control thread.

        Queued jobs are canceled and process trees are killed. Jobs whose
        worker does not report back within timeout are settled as CANCELED
        with a SHUTDOWN error; every slot is released either way.
        """
        if self._closed:
            return
        if self._started and self._thread.is_alive():
            self._call(self._do_shutdown, timeout)
            self._thread.join(timeout + 1.0)
        self._closed = True
        self._force_cleanup()
        self._hub.close_all()
        self.hooks.shutdown(wait=False)
        logger.info("[Scheduler] Shut down")

    # =========================================================================
    # Message passing
    # =========================================================================

    def _call(self, fn: Callable, *args):
        if threading.current_thread() is self._thread:
            return fn(*args)
        if self._closed:
            raise SchedulerClosedError()
        if not self._started:
            self.start()
        message = _Message(fn=fn, args=args)
        with self._inbox_lock:
            if self._closed or self._stopping:
                raise SchedulerClosedError()
            self._inbox.put(message)
        self._wake.set()
        return message.reply.result()

    def _process_inbox(self) -> None:
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                return
            try:
                message.reply.set_result(message.fn(*message.args))
            except Exception as e:
                message.reply.set_exception(e)

    # =========================================================================
    # Control loop
    # =========================================================================

    def _loop(self) -> None:
        while True:
            self._wake.wait(timeout=self._next_wake())
            self._wake.clear()
            self._process_inbox()
            self._drain_channels()
            if self._stopping:
                if not self._active:
                    break
                if time.monotonic() >= self._stop_deadline:
                    logger.error(f"[Scheduler] {len(self._active)} worker(s) did not exit before shutdown deadline")
                    break
                continue
            try:
                self._admit()
            except Exception as e:
                logger.exception(f"[Scheduler] Admission failed: {e}")
        # Reject anything posted while stopping
        with self._inbox_lock:
            self._closed = True
            while True:
                try:
                    message = self._inbox.get_nowait()
                except queue.Empty:
                    break
                message.reply.set_exception(SchedulerClosedError())

    def _next_wake(self) -> float:
        if not self._not_before:
            return _IDLE_WAKE_SECONDS
        delay = min(self._not_before.values()) - time.monotonic()
        return max(0.0, min(delay, _IDLE_WAKE_SECONDS))

    def _drain_channels(self) -> None:
        for job_id, run in list(self._active.items()):
            events = run.channel.drain(_DRAIN_BATCH)
            for event in events:
                job = self._jobs[job_id]
                try:
                    self._handle_event(job, run, event)
                except Exception as e:
                    self._fail_bookkeeping(job, e, run.worker.diagnostic_tail())
                    break
            if run.channel.pending():
                self._wake.set()

    def _handle_event(self, job: Job, run: _ActiveRun, event: ChannelEvent) -> None:
        if event.kind == ChannelEventKind.PASS_STARTED:
            self.machine.mark_pass(job, event.pass_index)
        elif event.kind == ChannelEventKind.PROGRESS:
            sample = event.sample
            self.machine.record_progress(
                job, sample.fraction, sample.rate, sample.eta_seconds, sample.pass_index
            )
        elif event.kind == ChannelEventKind.SUSPENDED:
            run.pause_pending = False
            if job.state == JobState.RUNNING:
                self.machine.transition(job, JobState.PAUSED)
        elif event.kind == ChannelEventKind.RESUMED:
            logger.debug(f"[Scheduler] Job {job.id} process tree resumed")
        elif event.kind == ChannelEventKind.FINISHED:
            self._active.pop(job.id, None)
            run.channel.close()
            self._settle(job, run, event.outcome)

    # =========================================================================
    # Settlement
    # =========================================================================

    def _settle(self, job: Job, run: Optional[_ActiveRun], outcome: WorkerOutcome) -> None:
        """Decide the next state of a job whose worker has finished."""
        canceled = outcome.canceled or (run is not None and run.cancel_requested)

        if job.state == JobState.PAUSED:
            if canceled:
                self.machine.transition(job, JobState.CANCELED)
                self._forget_live(job)
            else:
                # Settling needs RUNNING, which needs a slot: wait like a resume
                logger.warning(f"[Scheduler] Job {job.id} exited while paused; settling on readmission")
                self._deferred[job.id] = outcome
                if job.id not in self._resume_requests:
                    self._resume_requests.append(job.id)
            return

        if job.state != JobState.RUNNING:
            logger.error(f"[Scheduler] Job {job.id} finished in unexpected state {job.state.value}")
            return

        if canceled:
            self.machine.transition(job, JobState.CANCELED)
        elif outcome.succeeded:
            self.machine.transition(job, JobState.SUCCEEDED)
            self.hooks.notify_success(CompletionNotice(
                job_id=job.id,
                source_path=job.source.path,
                output_path=job.target.path,
                preset=job.preset,
            ))
        else:
            error = error_from_outcome(outcome)
            decision = self.retry_policy.on_terminal_failure(job, error)
            if decision.retry:
                not_before = None
                if decision.delay_seconds > 0:
                    not_before = datetime.now() + timedelta(seconds=decision.delay_seconds)
                    self._not_before[job.id] = time.monotonic() + decision.delay_seconds
                logger.info(f"[Scheduler] Job {job.id} failed ({error.message}), {decision.reason}")
                self.machine.transition(job, JobState.QUEUED, error=error, not_before=not_before)
                self._queued.append(job)
            else:
                logger.info(f"[Scheduler] Job {job.id} failed: {error.message} ({decision.reason})")
                self.machine.transition(job, JobState.FAILED, error=error)
        self._forget_live(job)

    def _forget_live(self, job: Job) -> None:
        if job.state not in (JobState.RUNNING, JobState.PAUSED):
            self._live.pop(job.id, None)
            self._deferred.pop(job.id, None)
            if job.id in self._resume_requests:
                self._resume_requests.remove(job.id)

    def _fail_bookkeeping(self, job: Job, exc: Exception, tail: Tuple[str, ...] = ()) -> None:
        """Guaranteed cleanup after the control thread failed handling a job."""
        logger.exception(f"[Scheduler] Bookkeeping failed for job {job.id}: {exc}")
        run = self._active.pop(job.id, None)
        if run is not None:
            run.control.request_cancel()
            run.channel.close()
            tail = tail or run.worker.diagnostic_tail()
        error = JobErrorDescriptor(
            kind=FailureKind.BOOKKEEPING,
            message=f"Bookkeeping failure: {exc}",
            pass_index=job.current_pass or None,
            diagnostic_tail=tail,
        )
        try:
            if job.state == JobState.RUNNING:
                self.machine.transition(job, JobState.FAILED, error=error)
            elif job.state == JobState.PAUSED:
                self._deferred[job.id] = WorkerOutcome(crashed=True, crash_error=error.message, diagnostic_tail=tail)
                if job.id not in self._resume_requests:
                    self._resume_requests.append(job.id)
        except Exception as e:
            logger.exception(f"[Scheduler] Could not fail job {job.id}: {e}")
        finally:
            if job.state != JobState.PAUSED:
                self.slots.release(job.id)
                self._forget_live(job)
                self._live.pop(job.id, None)

    # =========================================================================
    # Admission
    # =========================================================================

    def _busy_groups(self) -> set:
        return {job.concurrency_group for job in self._live.values()}

    def _admit(self) -> None:
        while self.slots.available > 0:
            if self._resume_requests:
                job_id = self._resume_requests.pop(0)
                try:
                    self._admit_resume(job_id)
                except Exception as e:
                    self._fail_bookkeeping(self._jobs[job_id], e)
                continue

            job = self._next_queued()
            if job is None:
                return
            self._queued.remove(job)
            self._not_before.pop(job.id, None)
            try:
                self.machine.transition(job, JobState.RUNNING)
            except Exception as e:
                logger.exception(f"[Scheduler] Could not admit job {job.id}: {e}")
                self._queued.append(job)
                return
            self._live[job.id] = job
            try:
                self._start_worker(job)
            except Exception as e:
                self._fail_bookkeeping(job, e)

    def _next_queued(self) -> Optional[Job]:
        busy = self._busy_groups()
        now = time.monotonic()
        for job in sorted(self._queued, key=lambda j: (-j.priority, j.sequence)):
            if job.concurrency_group in busy:
                continue
            if self._not_before.get(job.id, 0.0) > now:
                continue
            return job
        return None

    def _admit_resume(self, job_id: str) -> None:
        job = self._jobs[job_id]
        if job.state != JobState.PAUSED:
            return
        self.machine.transition(job, JobState.RUNNING)
        outcome = self._deferred.pop(job.id, None)
        if outcome is not None:
            self._settle(job, None, outcome)
            return
        run = self._active.get(job.id)
        if run is not None:
            run.control.request_resume()

    def _start_worker(self, job: Job) -> None:
        control = RunControl()
        channel = JobChannel(job.id, self.channel_capacity, on_put=self._wake.set)
        worker = JobWorker(
            job_id=job.id,
            commands=job.commands,
            duration=job.source.duration,
            runner=self.runner,
            control=control,
            channel=channel,
            tail_lines=self.tail_lines,
            ema_alpha=self.ema_alpha,
        )
        self._active[job.id] = _ActiveRun(worker=worker, control=control, channel=channel)
        worker.start()
        logger.info(
            f"[Scheduler] Admitted job {job.id} (priority {job.priority}, group {job.concurrency_group}, "
            f"{self.slots.in_use}/{self.slots.limit} slots)"
        )

    # =========================================================================
    # Request handlers (control thread)
    # =========================================================================

    def _do_submit(self, request: SubmissionRequest, commands: tuple) -> str:
        job = Job.from_request(request, commands, sequence=next(self._sequence))
        self._jobs[job.id] = job
        self._queued.append(job)
        self._publish(job.snapshot())
        logger.info(f"[Scheduler] Job {job.id} queued ({job.preset.key}, {job.pass_count} pass(es))")
        return job.id

    def _lookup(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _do_pause(self, job_id: str) -> ControlResult:
        job = self._jobs.get(job_id)
        if job is None:
            return ControlResult.NOT_FOUND
        run = self._active.get(job_id)
        if job.state != JobState.RUNNING or run is None or run.cancel_requested:
            return ControlResult.INVALID_TRANSITION
        if not run.pause_pending:
            run.pause_pending = True
            run.control.request_pause()
            logger.info(f"[Scheduler] Pause requested for job {job_id}")
        return ControlResult.OK

    def _do_resume(self, job_id: str) -> ControlResult:
        job = self._jobs.get(job_id)
        if job is None:
            return ControlResult.NOT_FOUND
        if job.state != JobState.PAUSED:
            return ControlResult.INVALID_TRANSITION
        run = self._active.get(job_id)
        if run is not None and run.cancel_requested:
            return ControlResult.INVALID_TRANSITION
        if job_id not in self._resume_requests:
            self._resume_requests.append(job_id)
            logger.info(f"[Scheduler] Resume requested for job {job_id}")
        return ControlResult.OK

    def _do_cancel(self, job_id: str) -> ControlResult:
        job = self._jobs.get(job_id)
        if job is None:
            return ControlResult.NOT_FOUND
        if job.is_terminal:
            return ControlResult.INVALID_TRANSITION

        if job.state == JobState.QUEUED:
            self._queued.remove(job)
            self._not_before.pop(job_id, None)
            self.machine.transition(job, JobState.CANCELED)
            return ControlResult.OK

        if job_id in self._resume_requests:
            self._resume_requests.remove(job_id)
        run = self._active.get(job_id)
        if run is None:
            # Paused with no live process (exited while paused)
            self.machine.transition(job, JobState.CANCELED)
            self._forget_live(job)
            return ControlResult.OK

        if not run.cancel_requested:
            run.cancel_requested = True
            run.control.request_cancel()
            logger.info(f"[Scheduler] Cancel requested for job {job_id} ({job.state.value})")
        return ControlResult.OK

    def _do_subscribe(self, job_id: str) -> Subscription:
        return self._hub.subscribe(job_id, self._lookup(job_id).snapshot())

    def _do_get(self, job_id: str) -> JobStateSnapshot:
        return self._lookup(job_id).snapshot()

    def _do_list(self) -> List[JobStateSnapshot]:
        return [job.snapshot() for job in sorted(self._jobs.values(), key=lambda j: j.sequence)]

    def _do_shutdown(self, timeout: float) -> None:
        self._stopping = True
        self._stop_deadline = time.monotonic() + timeout
        for job in list(self._queued):
            self._queued.remove(job)
            self.machine.transition(job, JobState.CANCELED)
        self._resume_requests.clear()
        for job_id in list(self._deferred):
            job = self._jobs[job_id]
            if job.state == JobState.PAUSED:
                self.machine.transition(job, JobState.CANCELED)
            self._forget_live(job)
        for job_id, run in self._active.items():
            run.cancel_requested = True
            run.control.request_cancel()
        logger.info(f"[Scheduler] Shutting down, cancelling {len(self._active)} active job(s)")

    def _force_cleanup(self) -> None:
        """
        Settle whatever a stalled shutdown left behind.

        Jobs whose worker missed the deadline become CANCELED with a SHUTDOWN
        error carrying the worker's diagnostics, so every job ends terminal and
        subscribers see that before their streams close.
        """
        tails: Dict[str, Tuple[str, ...]] = {}
        for job_id, run in list(self._active.items()):
            run.control.request_cancel()
            run.channel.close()
            tails[job_id] = run.worker.diagnostic_tail()
        self._active.clear()

        for job in list(self._jobs.values()):
            if job.is_terminal:
                continue
            error = JobErrorDescriptor(
                kind=FailureKind.SHUTDOWN,
                message=f"Engine shut down while job was {job.state.value}; process tree did not exit in time",
                pass_index=job.current_pass or None,
                diagnostic_tail=tails.get(job.id, ()),
            )
            try:
                if job.state == JobState.QUEUED and job in self._queued:
                    self._queued.remove(job)
                self.machine.transition(job, JobState.CANCELED, error=error)
                logger.error(f"[Scheduler] Job {job.id} settled at shutdown: {error.message}")
            except Exception as e:
                logger.exception(f"[Scheduler] Could not settle job {job.id} at shutdown: {e}")
            self._live.pop(job.id, None)
            self._deferred.pop(job.id, None)
        self._resume_requests.clear()

        leaked = self.slots.release_all()
        if leaked:
            logger.warning(f"[Scheduler] Released {len(leaked)} slot(s) held at shutdown: {leaked}")

    # =========================================================================
    # Publishing
    # =========================================================================

    def _publish(self, snapshot: JobStateSnapshot) -> None:
        self._hub.publish(snapshot)
        self.hooks.notify_observers(snapshot)

