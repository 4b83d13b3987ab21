"""
Scheduler integration tests.

Jobs run Python stand-ins for FFmpeg; state is observed through snapshots,
subscriptions and an observer hook, never by reaching into the control
thread.
"""

import random
import threading
import time
from typing import Dict, List

import pytest

from encodeflow.commands.models import CommandSpec, OutputTarget
from encodeflow.execution import START_FAILURE_EXIT_CODE, ProcessRunner
from encodeflow.jobs import (
    ControlResult,
    FailureKind,
    HookRegistry,
    JobNotFoundError,
    JobScheduler,
    JobState,
    RetryPolicy,
    SchedulerClosedError,
    SubmissionRequest,
    WorkerSlotPool,
)

pytestmark = pytest.mark.integration


class Recorder:
    """Observer keeping every snapshot plus per-group concurrency peaks."""

    def __init__(self):
        self.snapshots = []
        self.running_order: List[str] = []
        self.group_peaks: Dict[str, int] = {}
        self._states: Dict[str, JobState] = {}
        self._groups: Dict[str, str] = {}
        self._lock = threading.Lock()

    def on_snapshot(self, snapshot):
        with self._lock:
            self.snapshots.append(snapshot)
            self._states[snapshot.job_id] = snapshot.state
            self._groups[snapshot.job_id] = snapshot.concurrency_group
            if snapshot.state == JobState.RUNNING and snapshot.job_id not in self.running_order:
                self.running_order.append(snapshot.job_id)
            group = snapshot.concurrency_group
            active = sum(
                1 for job_id, state in self._states.items()
                if self._groups[job_id] == group and state in (JobState.RUNNING, JobState.PAUSED)
            )
            self.group_peaks[group] = max(self.group_peaks.get(group, 0), active)

    def states_of(self, job_id):
        with self._lock:
            return [s.state for s in self.snapshots if s.job_id == job_id]

    def for_job(self, job_id):
        with self._lock:
            return [s for s in self.snapshots if s.job_id == job_id]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_scheduler(recorder):
    created = []

    def _make(limit: int = 2, retries: int = 0, backoff_base=None, hooks=None) -> JobScheduler:
        hooks = hooks or HookRegistry()
        hooks.add_observer(recorder)
        scheduler = JobScheduler(
            ProcessRunner(terminate_grace_seconds=2.0, poll_interval=0.02),
            WorkerSlotPool(limit),
            RetryPolicy(max_retries=retries, backoff_base=backoff_base),
            hooks,
        )
        scheduler.start()
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.shutdown(timeout=5.0)


@pytest.fixture
def request_for(make_preset, source):
    def _make(name: str = "movie", priority: int = 0, group=None) -> SubmissionRequest:
        return SubmissionRequest(
            preset=make_preset(),
            source=source,
            target=OutputTarget(path=f"/media/out/{name}.mp4"),
            priority=priority,
            concurrency_group=group,
        )

    return _make


def _terminal(scheduler, job_id, wait_for, timeout=20.0):
    assert wait_for(lambda: scheduler.get_snapshot(job_id).is_terminal, timeout=timeout)
    return scheduler.get_snapshot(job_id)


def _in_state(scheduler, job_id, state, wait_for, timeout=10.0):
    return wait_for(lambda: scheduler.get_snapshot(job_id).state == state, timeout=timeout)


# =============================================================================
# Completion
# =============================================================================


class TestCompletion:
    def test_success(self, make_scheduler, request_for, progress_spec, wait_for):
        scheduler = make_scheduler()
        job_id = scheduler.submit(request_for(), [progress_spec()])
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.progress == 1.0
        assert snapshot.error is None
        assert scheduler.slots.in_use == 0

    def test_subscription_sees_ordered_updates(self, make_scheduler, request_for, progress_spec):
        scheduler = make_scheduler()
        job_id = scheduler.submit(request_for(), [progress_spec(steps=6)])
        snapshots = list(scheduler.subscribe(job_id))

        assert snapshots[-1].state == JobState.SUCCEEDED
        revisions = [s.revision for s in snapshots]
        assert revisions == sorted(revisions)
        assert len(set(revisions)) == len(revisions)
        progress = [s.progress for s in snapshots]
        assert progress == sorted(progress)

    def test_two_pass_job(self, make_scheduler, request_for, progress_spec, recorder, wait_for):
        scheduler = make_scheduler()
        specs = [progress_spec(pass_index=1, pass_count=2), progress_spec(pass_index=2, pass_count=2)]
        job_id = scheduler.submit(request_for(), specs)
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.SUCCEEDED
        assert snapshot.pass_count == 2
        assert {s.current_pass for s in recorder.for_job(job_id)} >= {1, 2}

    def test_post_success_handler(self, make_scheduler, request_for, progress_spec):
        notices = []
        delivered = threading.Event()

        class Placement:
            def after_success(self, notice):
                notices.append(notice)
                delivered.set()

        hooks = HookRegistry()
        hooks.add_post_success(Placement())
        scheduler = make_scheduler(hooks=hooks)
        job_id = scheduler.submit(request_for("placed"), [progress_spec()])
        assert delivered.wait(20)
        assert notices[0].job_id == job_id
        assert notices[0].output_path == "/media/out/placed.mp4"
        assert scheduler.get_snapshot(job_id).state == JobState.SUCCEEDED

    def test_failing_post_success_handler_keeps_success(self, make_scheduler, request_for, progress_spec, wait_for):
        class Broken:
            def after_success(self, notice):
                raise OSError("library refresh failed")

        hooks = HookRegistry()
        hooks.add_post_success(Broken())
        scheduler = make_scheduler(hooks=hooks)
        job_id = scheduler.submit(request_for(), [progress_spec()])
        assert _terminal(scheduler, job_id, wait_for).state == JobState.SUCCEEDED


# =============================================================================
# Failure and retry
# =============================================================================


class TestFailure:
    def test_exit_failure_carries_diagnostics(self, make_scheduler, request_for, progress_spec, wait_for):
        scheduler = make_scheduler(retries=0)
        job_id = scheduler.submit(request_for(), [progress_spec(exit_code=1)])
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.FAILED
        assert snapshot.error.kind == FailureKind.EXIT_FAILURE
        assert snapshot.error.exit_code == 1
        assert "encoder said goodbye" in snapshot.error.diagnostic_tail

    def test_retry_cap(self, make_scheduler, request_for, progress_spec, recorder, wait_for):
        scheduler = make_scheduler(retries=2)
        job_id = scheduler.submit(request_for(), [progress_spec(steps=1, exit_code=1)])
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.FAILED
        assert snapshot.retry_count == 2
        assert recorder.states_of(job_id).count(JobState.RUNNING) == 3
        assert scheduler.slots.in_use == 0

    def test_retry_backoff(self, make_scheduler, request_for, progress_spec, recorder, wait_for):
        scheduler = make_scheduler(retries=1, backoff_base=0.3)
        job_id = scheduler.submit(request_for(), [progress_spec(steps=1, exit_code=1)])
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.FAILED
        assert snapshot.retry_count == 1
        requeued = [s for s in recorder.for_job(job_id) if s.state == JobState.QUEUED and s.retry_count == 1]
        assert requeued and requeued[0].not_before is not None

    def test_bookkeeping_failure_keeps_diagnostics(self, make_scheduler, request_for, progress_spec, wait_for):
        scheduler = make_scheduler()
        settle = scheduler.machine.transition

        def refuse_success(job, to_state, **kwargs):
            if to_state == JobState.SUCCEEDED:
                raise RuntimeError("ledger unavailable")
            return settle(job, to_state, **kwargs)

        scheduler.machine.transition = refuse_success
        job_id = scheduler.submit(request_for(), [progress_spec()])
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.FAILED
        assert snapshot.error.kind == FailureKind.BOOKKEEPING
        assert "ledger unavailable" in snapshot.error.message
        assert "encoder said goodbye" in snapshot.error.diagnostic_tail
        assert scheduler.slots.in_use == 0

    def test_start_failure_is_not_retried(self, make_scheduler, request_for, wait_for):
        scheduler = make_scheduler(retries=2)
        spec = CommandSpec(args=("/nonexistent/bin/ffmpeg", "-version"))
        job_id = scheduler.submit(request_for(), [spec])
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.FAILED
        assert snapshot.retry_count == 0
        assert snapshot.error.kind == FailureKind.START_FAILURE
        assert snapshot.error.exit_code == START_FAILURE_EXIT_CODE

    def test_failed_first_pass_skips_second(self, make_scheduler, request_for, progress_spec, recorder, wait_for):
        scheduler = make_scheduler()
        specs = [
            progress_spec(exit_code=2, pass_index=1, pass_count=2),
            progress_spec(pass_index=2, pass_count=2),
        ]
        job_id = scheduler.submit(request_for(), specs)
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.FAILED
        assert snapshot.error.pass_index == 1
        assert 2 not in {s.current_pass for s in recorder.for_job(job_id)}


# =============================================================================
# Admission
# =============================================================================


class TestAdmission:
    def test_same_group_runs_one_at_a_time(self, make_scheduler, request_for, progress_spec, recorder, wait_for):
        scheduler = make_scheduler(limit=3)
        ids = [
            scheduler.submit(request_for(f"ep{i}", group="nas"), [progress_spec(steps=2)])
            for i in range(10)
        ]
        for job_id in ids:
            assert _terminal(scheduler, job_id, wait_for, timeout=30).state == JobState.SUCCEEDED
        assert recorder.group_peaks["nas"] == 1
        assert scheduler.slots.peak == 1

    def test_global_limit(self, make_scheduler, request_for, progress_spec, wait_for):
        scheduler = make_scheduler(limit=2)
        ids = [
            scheduler.submit(request_for(f"m{i}", group=f"g{i}"), [progress_spec(steps=4, delay=0.05)])
            for i in range(6)
        ]
        for job_id in ids:
            assert _terminal(scheduler, job_id, wait_for, timeout=30).state == JobState.SUCCEEDED
        assert scheduler.slots.peak == 2

    def test_default_group_is_output_directory(self, make_scheduler, request_for, progress_spec, wait_for):
        scheduler = make_scheduler()
        job_id = scheduler.submit(request_for(), [progress_spec()])
        assert scheduler.get_snapshot(job_id).concurrency_group == "/media/out"
        _terminal(scheduler, job_id, wait_for)

    def test_priority_then_fifo(self, make_scheduler, request_for, progress_spec, sleeper_spec, recorder, wait_for):
        scheduler = make_scheduler(limit=1)
        blocker = scheduler.submit(request_for("blocker", group="b"), [sleeper_spec()])
        assert _in_state(scheduler, blocker, JobState.RUNNING, wait_for)

        low = scheduler.submit(request_for("low", priority=0, group="g1"), [progress_spec(steps=1)])
        high = scheduler.submit(request_for("high", priority=10, group="g2"), [progress_spec(steps=1)])
        mid_a = scheduler.submit(request_for("mid-a", priority=5, group="g3"), [progress_spec(steps=1)])
        mid_b = scheduler.submit(request_for("mid-b", priority=5, group="g4"), [progress_spec(steps=1)])

        assert scheduler.request_cancel(blocker) == ControlResult.OK
        for job_id in (low, high, mid_a, mid_b):
            _terminal(scheduler, job_id, wait_for)
        assert recorder.running_order == [blocker, high, mid_a, mid_b, low]

    def test_raising_limit_admits_waiting_jobs(self, make_scheduler, request_for, sleeper_spec, wait_for):
        scheduler = make_scheduler(limit=1)
        first = scheduler.submit(request_for("a", group="a"), [sleeper_spec()])
        second = scheduler.submit(request_for("b", group="b"), [sleeper_spec()])
        assert _in_state(scheduler, first, JobState.RUNNING, wait_for)
        time.sleep(0.2)
        assert scheduler.get_snapshot(second).state == JobState.QUEUED

        scheduler.set_concurrency_limit(2)
        assert _in_state(scheduler, second, JobState.RUNNING, wait_for)

    def test_lowering_limit_does_not_preempt(self, make_scheduler, request_for, sleeper_spec, wait_for):
        scheduler = make_scheduler(limit=2)
        ids = [scheduler.submit(request_for(n, group=n), [sleeper_spec()]) for n in ("a", "b")]
        for job_id in ids:
            assert _in_state(scheduler, job_id, JobState.RUNNING, wait_for)
        scheduler.set_concurrency_limit(1)
        time.sleep(0.2)
        assert [scheduler.get_snapshot(i).state for i in ids] == [JobState.RUNNING, JobState.RUNNING]
        assert scheduler.slots.limit == 1

    def test_randomized_concurrent_submit_and_cancel(self, make_scheduler, request_for, progress_spec, recorder, wait_for):
        limit = 3
        scheduler = make_scheduler(limit=limit)
        groups = ["a", "b", "c", "d", "e"]
        submitted: List[str] = []
        errors: List[BaseException] = []
        lock = threading.Lock()

        def submitter(seed: int):
            rng = random.Random(seed)
            try:
                for i in range(15):
                    job_id = scheduler.submit(
                        request_for(f"t{seed}-{i}", priority=rng.randint(0, 5), group=rng.choice(groups)),
                        [progress_spec(steps=rng.randint(1, 3), delay=0.01)],
                    )
                    with lock:
                        submitted.append(job_id)
                    if rng.random() < 0.4:
                        time.sleep(rng.uniform(0.0, 0.05))
                        assert scheduler.request_cancel(job_id) in (
                            ControlResult.OK, ControlResult.INVALID_TRANSITION,
                        )
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=submitter, args=(seed,)) for seed in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(60)

        assert errors == []
        assert len(submitted) == 60
        for job_id in submitted:
            assert _terminal(scheduler, job_id, wait_for, timeout=60).state in (
                JobState.SUCCEEDED, JobState.CANCELED,
            )
        assert scheduler.slots.peak <= limit
        assert max(recorder.group_peaks.values()) == 1
        assert scheduler.slots.in_use == 0

    def test_list_in_submission_order(self, make_scheduler, request_for, progress_spec):
        scheduler = make_scheduler()
        ids = [scheduler.submit(request_for(f"m{i}"), [progress_spec(steps=1)]) for i in range(3)]
        assert [s.job_id for s in scheduler.list_snapshots()] == ids


# =============================================================================
# Control requests
# =============================================================================


class TestControl:
    def test_unknown_job(self, make_scheduler):
        scheduler = make_scheduler()
        for request in (scheduler.request_pause, scheduler.request_resume, scheduler.request_cancel):
            assert request("missing") == ControlResult.NOT_FOUND
        with pytest.raises(JobNotFoundError):
            scheduler.get_snapshot("missing")
        with pytest.raises(JobNotFoundError):
            scheduler.subscribe("missing")

    def test_cancel_queued(self, make_scheduler, request_for, sleeper_spec, progress_spec, wait_for):
        scheduler = make_scheduler(limit=1)
        blocker = scheduler.submit(request_for("a", group="a"), [sleeper_spec()])
        assert _in_state(scheduler, blocker, JobState.RUNNING, wait_for)
        queued = scheduler.submit(request_for("b", group="b"), [progress_spec()])

        assert scheduler.request_pause(queued) == ControlResult.INVALID_TRANSITION
        assert scheduler.request_cancel(queued) == ControlResult.OK
        snapshot = scheduler.get_snapshot(queued)
        assert snapshot.state == JobState.CANCELED
        assert snapshot.started_at is None
        assert scheduler.request_cancel(queued) == ControlResult.INVALID_TRANSITION

    def test_pause_releases_slot_and_resume_continues(self, make_scheduler, request_for, sleeper_spec, wait_for):
        scheduler = make_scheduler(limit=1)
        job_id = scheduler.submit(request_for(), [sleeper_spec()])
        assert _in_state(scheduler, job_id, JobState.RUNNING, wait_for)
        assert scheduler.request_resume(job_id) == ControlResult.INVALID_TRANSITION

        assert scheduler.request_pause(job_id) == ControlResult.OK
        assert _in_state(scheduler, job_id, JobState.PAUSED, wait_for)
        assert scheduler.slots.in_use == 0
        assert scheduler.request_pause(job_id) == ControlResult.INVALID_TRANSITION

        assert scheduler.request_resume(job_id) == ControlResult.OK
        assert _in_state(scheduler, job_id, JobState.RUNNING, wait_for)
        assert scheduler.slots.in_use == 1

        assert scheduler.request_cancel(job_id) == ControlResult.OK
        assert _terminal(scheduler, job_id, wait_for).state == JobState.CANCELED

    def test_paused_job_lends_its_slot(self, make_scheduler, request_for, sleeper_spec, progress_spec, wait_for):
        scheduler = make_scheduler(limit=1)
        paused = scheduler.submit(request_for("a", group="a"), [sleeper_spec()])
        assert _in_state(scheduler, paused, JobState.RUNNING, wait_for)
        scheduler.request_pause(paused)
        assert _in_state(scheduler, paused, JobState.PAUSED, wait_for)

        other = scheduler.submit(request_for("b", group="b"), [progress_spec()])
        assert _terminal(scheduler, other, wait_for).state == JobState.SUCCEEDED
        scheduler.request_cancel(paused)
        assert _terminal(scheduler, paused, wait_for).state == JobState.CANCELED

    def test_paused_job_keeps_its_group(self, make_scheduler, request_for, sleeper_spec, progress_spec, wait_for):
        scheduler = make_scheduler(limit=2)
        paused = scheduler.submit(request_for("a", group="shared"), [sleeper_spec()])
        assert _in_state(scheduler, paused, JobState.RUNNING, wait_for)
        scheduler.request_pause(paused)
        assert _in_state(scheduler, paused, JobState.PAUSED, wait_for)

        sibling = scheduler.submit(request_for("b", group="shared"), [progress_spec()])
        time.sleep(0.3)
        assert scheduler.get_snapshot(sibling).state == JobState.QUEUED

        scheduler.request_cancel(paused)
        assert _terminal(scheduler, sibling, wait_for).state == JobState.SUCCEEDED

    def test_cancel_paused_kills_tree(self, make_scheduler, request_for, sleeper_spec, tmp_path, wait_for, is_alive):
        pid_file = tmp_path / "child.pid"
        scheduler = make_scheduler(limit=1)
        job_id = scheduler.submit(request_for(), [sleeper_spec(with_child=True, pid_file=str(pid_file))])
        assert wait_for(lambda: pid_file.exists() and pid_file.read_text().strip())
        child_pid = int(pid_file.read_text())

        scheduler.request_pause(job_id)
        assert _in_state(scheduler, job_id, JobState.PAUSED, wait_for)
        assert scheduler.request_cancel(job_id) == ControlResult.OK

        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.CANCELED
        assert wait_for(lambda: not is_alive(child_pid), timeout=5)
        assert scheduler.slots.in_use == 0

    def test_cancel_running(self, make_scheduler, request_for, sleeper_spec, wait_for):
        scheduler = make_scheduler()
        job_id = scheduler.submit(request_for(), [sleeper_spec()])
        assert _in_state(scheduler, job_id, JobState.RUNNING, wait_for)
        assert scheduler.request_cancel(job_id) == ControlResult.OK
        assert scheduler.request_pause(job_id) == ControlResult.INVALID_TRANSITION
        snapshot = _terminal(scheduler, job_id, wait_for)
        assert snapshot.state == JobState.CANCELED
        assert snapshot.finished_at is not None


# =============================================================================
# Shutdown
# =============================================================================


class TestShutdown:
    def test_shutdown_cancels_everything(self, make_scheduler, request_for, sleeper_spec, progress_spec, recorder, wait_for):
        scheduler = make_scheduler(limit=1)
        running = scheduler.submit(request_for("a", group="a"), [sleeper_spec()])
        assert _in_state(scheduler, running, JobState.RUNNING, wait_for)
        queued = scheduler.submit(request_for("b", group="b"), [progress_spec()])

        scheduler.shutdown(timeout=5.0)

        assert recorder.states_of(running)[-1] == JobState.CANCELED
        assert recorder.states_of(queued)[-1] == JobState.CANCELED
        assert scheduler.slots.in_use == 0

    def test_closed_scheduler_rejects_requests(self, make_scheduler, request_for, progress_spec):
        scheduler = make_scheduler()
        scheduler.shutdown()
        with pytest.raises(SchedulerClosedError):
            scheduler.submit(request_for(), [progress_spec()])
        with pytest.raises(SchedulerClosedError):
            scheduler.list_snapshots()

    def test_shutdown_is_idempotent(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.shutdown()
        scheduler.shutdown()

    def test_shutdown_ends_subscriptions(self, make_scheduler, request_for, sleeper_spec, wait_for):
        scheduler = make_scheduler()
        job_id = scheduler.submit(request_for(), [sleeper_spec()])
        subscription = scheduler.subscribe(job_id)
        assert _in_state(scheduler, job_id, JobState.RUNNING, wait_for)
        scheduler.shutdown(timeout=5.0)
        states = [s.state for s in subscription]
        assert states[-1] == JobState.CANCELED

    def test_worker_missing_deadline_still_settles(self, recorder, request_for, python_spec, tmp_path, wait_for, is_alive):
        ready = tmp_path / "ready.pid"
        hooks = HookRegistry()
        hooks.add_observer(recorder)
        scheduler = JobScheduler(
            ProcessRunner(terminate_grace_seconds=5.0, poll_interval=0.02),
            WorkerSlotPool(1),
            RetryPolicy(max_retries=0),
            hooks,
        )
        scheduler.start()
        code = f"""
            import os, signal, sys, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            sys.stderr.write('ignoring SIGTERM\\n')
            sys.stderr.flush()
            with open({str(ready)!r}, 'w') as f:
                f.write(str(os.getpid()))
            time.sleep(120)
        """
        job_id = scheduler.submit(request_for(), [python_spec(code)])
        assert wait_for(lambda: ready.exists() and ready.read_text().strip())
        pid = int(ready.read_text())
        subscription = scheduler.subscribe(job_id)
        time.sleep(0.2)

        scheduler.shutdown(timeout=0.3)

        last = recorder.for_job(job_id)[-1]
        assert last.state == JobState.CANCELED
        assert last.error.kind == FailureKind.SHUTDOWN
        assert "ignoring SIGTERM" in last.error.diagnostic_tail
        assert scheduler.slots.in_use == 0
        assert [s.state for s in subscription][-1] == JobState.CANCELED
        # The runner still escalates to SIGKILL after its grace period
        assert wait_for(lambda: not is_alive(pid), timeout=15)
