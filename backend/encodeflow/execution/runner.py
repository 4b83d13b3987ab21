"""
Process runner: executes CommandSpecs as supervised child processes.

One process per CommandSpec. The process starts in its own session so the
whole tree can be addressed. stdout carries the machine-readable -progress
channel, stderr the human-readable diagnostics; each is drained by a
dedicated reader thread into one bounded queue. A full queue blocks the
readers, which stops draining the pipes, which in turn stalls the child.

Runner behaviour:
- STARTED, then lines in the order each pipe produced them, then EXITED
- EXITED exactly once per spec, including start failures
  (START_FAILURE_EXIT_CODE) and cancellation
- Pause/resume suspend and continue the process tree; cancel always kills it
- Closing the event generator early kills the tree (no orphans)
- Output held open by descendants after the root exits is waited for only
  briefly; then the process group is killed
"""

import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Iterator, Optional, Sequence

from ..commands.models import CommandSpec
from .events import START_FAILURE_EXIT_CODE, RunControl, RunnerEvent, RunnerEventKind
from .process_tree import ProcessTreeController, PsutilTreeController

logger = logging.getLogger(__name__)


# Marks the end of one reader's stream in the shared queue
_EOF = object()


@dataclass
class _OrphanDrain:
    """Tracks a root that exited while its output pipes are still open."""

    since: Optional[float] = None
    group_killed: bool = False


def _pump(stream: IO[bytes], kind: RunnerEventKind, sink: "queue.Queue") -> None:
    """Reader thread body: forward decoded lines, then an EOF marker."""
    try:
        for raw in iter(stream.readline, b""):
            sink.put((kind, raw.decode("utf-8", errors="replace").rstrip("\r\n")))
    finally:
        stream.close()
        sink.put((_EOF, kind))


class ProcessRunner:
    """
    Runs CommandSpecs.

    Args:
        tree_controller: Process-tree capability (psutil by default)
        terminate_grace_seconds: SIGTERM to SIGKILL escalation delay
        queue_capacity: Bound on buffered output lines per process
        poll_interval: How often control requests are checked while waiting
        orphan_drain_seconds: How long output may stay open after the root
            exits before the process group is killed
    """

    def __init__(
        self,
        tree_controller: Optional[ProcessTreeController] = None,
        terminate_grace_seconds: float = 5.0,
        queue_capacity: int = 256,
        poll_interval: float = 0.05,
        orphan_drain_seconds: float = 2.0,
    ):
        self.tree = tree_controller or PsutilTreeController()
        self.terminate_grace_seconds = terminate_grace_seconds
        self.queue_capacity = queue_capacity
        self.poll_interval = poll_interval
        self.orphan_drain_seconds = orphan_drain_seconds

    def run(self, spec: CommandSpec, control: RunControl) -> Iterator[RunnerEvent]:
        """Execute one CommandSpec, yielding its events."""
        pass_index = spec.pass_index

        if control.cancel_requested:
            yield RunnerEvent(RunnerEventKind.EXITED, pass_index=pass_index, canceled=True)
            return

        logger.info(f"[Runner] Executing pass {pass_index}/{spec.pass_count}: {spec.command_line()}")
        try:
            process = subprocess.Popen(
                list(spec.args),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"[Runner] Failed to start {spec.args[0]}: {e}")
            yield RunnerEvent(
                RunnerEventKind.EXITED,
                pass_index=pass_index,
                exit_code=START_FAILURE_EXIT_CODE,
                start_error=str(e),
                start_errno=e.errno,
            )
            return

        pid = process.pid
        logger.info(f"[Runner] Started PID {pid}")
        lines: "queue.Queue" = queue.Queue(maxsize=self.queue_capacity)
        readers = [
            threading.Thread(
                target=_pump, args=(process.stdout, RunnerEventKind.PROGRESS_LINE, lines),
                name=f"runner-{pid}-progress", daemon=True,
            ),
            threading.Thread(
                target=_pump, args=(process.stderr, RunnerEventKind.STDERR_LINE, lines),
                name=f"runner-{pid}-stderr", daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        suspended = False
        canceled = False
        finished = False
        try:
            yield RunnerEvent(RunnerEventKind.STARTED, pass_index=pass_index, pid=pid)

            open_streams = len(readers)
            drain = _OrphanDrain()
            exit_code = None
            while exit_code is None:
                # Control requests first, so a flood of output cannot starve them
                if control.cancel_requested and not canceled:
                    canceled = True
                    logger.info(f"[Runner] Cancelling PID {pid}")
                    self.tree.terminate_tree(pid, self.terminate_grace_seconds)
                elif not canceled and control.pause_requested and not suspended:
                    self.tree.suspend_tree(pid)
                    suspended = True
                    yield RunnerEvent(RunnerEventKind.SUSPENDED, pass_index=pass_index, pid=pid)
                elif not canceled and suspended and not control.pause_requested:
                    self.tree.resume_tree(pid)
                    suspended = False
                    yield RunnerEvent(RunnerEventKind.RESUMED, pass_index=pass_index, pid=pid)

                if open_streams:
                    try:
                        kind, line = lines.get(timeout=self.poll_interval)
                    except queue.Empty:
                        kind = None
                    if kind is _EOF:
                        open_streams -= 1
                    elif kind is not None:
                        yield RunnerEvent(kind, pass_index=pass_index, line=line)
                    if open_streams and process.poll() is not None:
                        open_streams = self._bound_orphaned_output(pid, open_streams, drain)
                else:
                    try:
                        exit_code = process.wait(timeout=self.poll_interval)
                    except subprocess.TimeoutExpired:
                        continue

            finished = True
            logger.info(f"[Runner] PID {pid} exited with code {exit_code}")
        finally:
            if not finished:
                # Generator closed early or the consumer raised: never leave the tree behind
                logger.warning(f"[Runner] Abandoning PID {pid}, terminating its process tree")
                self.tree.terminate_tree(pid, self.terminate_grace_seconds)
                process.wait()
            for reader in readers:
                reader.join(timeout=1.0)

        yield RunnerEvent(
            RunnerEventKind.EXITED,
            pass_index=pass_index,
            pid=pid,
            exit_code=exit_code,
            canceled=canceled,
        )

    def _bound_orphaned_output(self, pid: int, open_streams: int, drain: _OrphanDrain) -> int:
        """
        Bound the wait for EOF once the root has exited.

        A descendant that inherited stdout or stderr keeps the pipes open
        after the root is gone. After the drain window its process group is
        killed; if the pipes are still open one window later, the remaining
        streams are abandoned. Returns the number of streams still awaited.
        """
        now = time.monotonic()
        if drain.since is None:
            drain.since = now
            return open_streams
        if now - drain.since < self.orphan_drain_seconds:
            return open_streams
        if not drain.group_killed:
            logger.warning(f"[Runner] PID {pid} exited but its output pipes are still open, killing process group")
            self.tree.kill_group(pid)
            drain.group_killed = True
            drain.since = now
            return open_streams
        logger.warning(f"[Runner] Abandoning {open_streams} output stream(s) of PID {pid}")
        return 0

    def run_passes(self, specs: Sequence[CommandSpec], control: RunControl) -> Iterator[RunnerEvent]:
        """
        Execute passes strictly in order.

        A pass starts only after the previous one exited 0. A pause that
        arrives between passes holds the next pass back until resumed.
        """
        for position, spec in enumerate(specs):
            if position > 0 and control.pause_requested:
                yield RunnerEvent(RunnerEventKind.SUSPENDED, pass_index=spec.pass_index)
                while not control.wait_while_paused(timeout=self.poll_interval):
                    pass
                if not control.cancel_requested:
                    yield RunnerEvent(RunnerEventKind.RESUMED, pass_index=spec.pass_index)

            exited = None
            for event in self.run(spec, control):
                if event.kind == RunnerEventKind.EXITED:
                    exited = event
                yield event

            if exited is None or not exited.succeeded:
                return
