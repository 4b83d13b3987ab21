"""
Process-tree control.

The runner depends only on the ProcessTreeController capability. The psutil
implementation walks the live tree from the root pid on every call, so
descendants spawned after start are covered.

Processes that vanish mid-operation are skipped: a tree member exiting on
its own is not an error.
"""

import logging
import os
import signal
import time
from typing import List, Protocol

import psutil

logger = logging.getLogger(__name__)


class ProcessTreeController(Protocol):
    """Capability: suspend, resume and terminate a whole process tree."""

    def suspend_tree(self, pid: int) -> int:
        ...

    def resume_tree(self, pid: int) -> int:
        ...

    def terminate_tree(self, pid: int, grace_seconds: float) -> int:
        ...

    def live_descendants(self, pid: int) -> List[int]:
        ...

    def kill_group(self, pgid: int) -> bool:
        ...


def _snapshot(pid: int) -> List[psutil.Process]:
    """Root first, then every descendant. Empty if the root is gone."""
    try:
        root = psutil.Process(pid)
        return [root] + root.children(recursive=True)
    except psutil.NoSuchProcess:
        return []


def _is_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class PsutilTreeController:
    """
    ProcessTreeController backed by psutil.

    Termination never reaps the root process: the runner owns the root's
    Popen handle and collects its exit status itself.
    """

    def __init__(self, poll_interval: float = 0.05):
        self.poll_interval = poll_interval

    def suspend_tree(self, pid: int) -> int:
        """SIGSTOP the tree, root first so it cannot spawn new children. Returns count."""
        suspended = 0
        for proc in _snapshot(pid):
            try:
                proc.suspend()
                suspended += 1
            except psutil.NoSuchProcess:
                continue
        logger.debug(f"[ProcessTree] Suspended {suspended} process(es) under PID {pid}")
        return suspended

    def resume_tree(self, pid: int) -> int:
        """SIGCONT the tree. Returns count."""
        resumed = 0
        for proc in _snapshot(pid):
            try:
                proc.resume()
                resumed += 1
            except psutil.NoSuchProcess:
                continue
        logger.debug(f"[ProcessTree] Resumed {resumed} process(es) under PID {pid}")
        return resumed

    def terminate_tree(self, pid: int, grace_seconds: float) -> int:
        """
        Terminate every process in the tree.

        Freezes the tree, sends SIGTERM, then SIGCONT so stopped processes
        can act on it. Survivors of the grace period get SIGKILL.

        Returns:
            Number of processes signalled
        """
        procs = _snapshot(pid)
        for proc in procs:
            try:
                proc.suspend()
            except psutil.NoSuchProcess:
                continue

        # Re-walk while frozen to catch children spawned during the first walk
        seen = {p.pid for p in procs}
        for proc in _snapshot(pid):
            if proc.pid not in seen:
                seen.add(proc.pid)
                procs.append(proc)

        for proc in procs:
            try:
                proc.terminate()
                proc.resume()
            except psutil.NoSuchProcess:
                continue

        deadline = time.monotonic() + grace_seconds
        alive = [p for p in procs if _is_alive(p)]
        while alive and time.monotonic() < deadline:
            time.sleep(self.poll_interval)
            alive = [p for p in alive if _is_alive(p)]

        if alive:
            logger.warning(
                f"[ProcessTree] {len(alive)} process(es) under PID {pid} survived SIGTERM, sending SIGKILL"
            )
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    continue

        logger.info(f"[ProcessTree] Terminated {len(procs)} process(es) under PID {pid}")
        return len(procs)

    def live_descendants(self, pid: int) -> List[int]:
        """Pids of non-zombie descendants (root excluded)."""
        try:
            children = psutil.Process(pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []
        return [p.pid for p in children if _is_alive(p)]

    def kill_group(self, pgid: int) -> bool:
        """
        SIGKILL a whole process group.

        Reaches members that were re-parented after the root exited, which a
        walk from the root can no longer find. False if the group is empty.
        """
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            return False
        logger.info(f"[ProcessTree] Killed process group {pgid}")
        return True
