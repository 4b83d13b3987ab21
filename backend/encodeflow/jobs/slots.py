"""
Worker slot pool: the global concurrency budget.

A job must hold exactly one slot while RUNNING. Acquire and release are
atomic. Lowering the limit never revokes held slots; it only blocks
acquisitions until enough slots have been released.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List

from .errors import NoSlotAvailableError, SlotAlreadyHeldError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerSlot:
    """One unit of the global concurrency budget, held by one job."""

    job_id: str
    acquired_at: datetime


class WorkerSlotPool:
    """Tracks which jobs hold slots against a live-adjustable limit."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("Concurrency limit must be >= 1")
        self._limit = limit
        self._held: Dict[str, WorkerSlot] = {}
        self._lock = threading.Lock()
        self._peak = 0

    @property
    def limit(self) -> int:
        with self._lock:
            return self._limit

    def set_limit(self, limit: int) -> None:
        """Change the limit. Held slots are never revoked."""
        if limit < 1:
            raise ValueError("Concurrency limit must be >= 1")
        with self._lock:
            previous, self._limit = self._limit, limit
        logger.info(f"[Slots] Concurrency limit {previous} -> {limit}")

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._held)

    @property
    def available(self) -> int:
        with self._lock:
            return max(0, self._limit - len(self._held))

    @property
    def peak(self) -> int:
        """Highest number of slots ever held at once."""
        with self._lock:
            return self._peak

    def holds(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._held

    def acquire(self, job_id: str) -> WorkerSlot:
        """
        Take a slot for a job.

        Raises:
            SlotAlreadyHeldError: The job already holds a slot
            NoSlotAvailableError: The pool is exhausted
        """
        with self._lock:
            if job_id in self._held:
                raise SlotAlreadyHeldError(job_id)
            if len(self._held) >= self._limit:
                raise NoSlotAvailableError(job_id, self._limit)
            slot = WorkerSlot(job_id=job_id, acquired_at=datetime.now())
            self._held[job_id] = slot
            self._peak = max(self._peak, len(self._held))
            in_use = len(self._held)
        logger.debug(f"[Slots] Job {job_id} acquired slot ({in_use} in use)")
        return slot

    def release(self, job_id: str) -> bool:
        """Release a job's slot. Idempotent: False if it held none."""
        with self._lock:
            slot = self._held.pop(job_id, None)
            in_use = len(self._held)
        if slot is None:
            return False
        logger.debug(f"[Slots] Job {job_id} released slot ({in_use} in use)")
        return True

    def release_all(self) -> List[str]:
        """Release every slot. Returns the job ids that held one."""
        with self._lock:
            released = list(self._held)
            self._held.clear()
        if released:
            logger.info(f"[Slots] Released {len(released)} slot(s)")
        return released
