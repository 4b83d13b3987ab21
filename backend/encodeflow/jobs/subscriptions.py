"""
Job subscriptions.

subscribe(job_id) yields JobStateSnapshots lazily. A subscription starts
with the job's current snapshot, ends after the terminal snapshot, and can
be closed early by the consumer.
"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from .models import JobStateSnapshot

logger = logging.getLogger(__name__)


class Subscription:
    """Iterator over one job's snapshots."""

    def __init__(self, job_id: str, hub: "SubscriptionHub"):
        self.job_id = job_id
        self._hub = hub
        self._pending: Deque[JobStateSnapshot] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._terminal_queued = False

    def push(self, snapshot: JobStateSnapshot) -> None:
        with self._cond:
            if self._closed or self._terminal_queued:
                return
            self._pending.append(snapshot)
            if snapshot.is_terminal:
                self._terminal_queued = True
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[JobStateSnapshot]:
        """
        Next snapshot, waiting up to timeout.

        Returns None on timeout or once the subscription is exhausted.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._pending or self._closed, timeout):
                return None
            if not self._pending:
                return None
            snapshot = self._pending.popleft()
        if snapshot.is_terminal:
            self.close()
        return snapshot

    def __iter__(self) -> "Subscription":
        return self

    def __next__(self) -> JobStateSnapshot:
        snapshot = self.get()
        if snapshot is None:
            raise StopIteration
        return snapshot

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed and not self._pending

    def close(self) -> None:
        """Stop receiving. Snapshots already queued stay readable."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._hub.remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class SubscriptionHub:
    """Fans snapshots out to subscriptions, keyed by job id."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str, current: JobStateSnapshot) -> Subscription:
        subscription = Subscription(job_id, self)
        subscription.push(current)
        if not current.is_terminal:
            with self._lock:
                self._subscriptions.setdefault(job_id, []).append(subscription)
        return subscription

    def publish(self, snapshot: JobStateSnapshot) -> None:
        with self._lock:
            subscribers = list(self._subscriptions.get(snapshot.job_id, ()))
            if snapshot.is_terminal:
                self._subscriptions.pop(snapshot.job_id, None)
        for subscription in subscribers:
            subscription.push(snapshot)

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.job_id)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
                if not subscribers:
                    del self._subscriptions[subscription.job_id]

    def close_all(self) -> None:
        with self._lock:
            subscribers = [s for subs in self._subscriptions.values() for s in subs]
            self._subscriptions.clear()
        for subscription in subscribers:
            subscription.close()

    def count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(job_id, ()))
