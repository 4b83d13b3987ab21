"""
Extension points.

- Pre-submit handlers run synchronously inside submit(), in registration
  order. Each may return an adjusted SubmissionRequest or raise
  SubmissionRejected.
- Post-success handlers (output placement, library refresh) run on a thread
  pool after a job succeeds. Fire-and-forget: their failures are logged
  and never change the job's terminal state.
- Observers (persistence) receive every published snapshot. They are
  optional, and a failing observer is logged and skipped.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Protocol

from ..presets.models import PresetDefinition
from .models import JobStateSnapshot, SubmissionRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionNotice:
    """What the output-placement collaborator receives on success."""

    job_id: str
    source_path: str
    output_path: str
    preset: PresetDefinition


class PreSubmitHandler(Protocol):
    def before_submit(self, request: SubmissionRequest) -> SubmissionRequest:
        ...


class PostSuccessHandler(Protocol):
    def after_success(self, notice: CompletionNotice) -> None:
        ...


class JobObserver(Protocol):
    def on_snapshot(self, snapshot: JobStateSnapshot) -> None:
        ...


def _handler_name(handler: object) -> str:
    return getattr(handler, "name", None) or type(handler).__name__


class HookRegistry:
    """Registered handlers for every extension point."""

    def __init__(self, max_workers: int = 4):
        self._pre_submit: List[PreSubmitHandler] = []
        self._post_success: List[PostSuccessHandler] = []
        self._observers: List[JobObserver] = []
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers

    def add_pre_submit(self, handler: PreSubmitHandler) -> None:
        with self._lock:
            self._pre_submit.append(handler)

    def add_post_success(self, handler: PostSuccessHandler) -> None:
        with self._lock:
            self._post_success.append(handler)

    def add_observer(self, observer: JobObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer: JobObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def run_pre_submit(self, request: SubmissionRequest) -> SubmissionRequest:
        """
        Run pre-submit handlers in order.

        Raises:
            SubmissionRejected: From any handler; later handlers do not run
        """
        with self._lock:
            handlers = list(self._pre_submit)
        for handler in handlers:
            adjusted = handler.before_submit(request)
            if adjusted is not None:
                request = adjusted
        return request

    def notify_observers(self, snapshot: JobStateSnapshot) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer.on_snapshot(snapshot)
            except Exception as e:
                logger.error(
                    f"[Hooks] Observer {_handler_name(observer)} failed on job {snapshot.job_id}: {e}"
                )

    def notify_success(self, notice: CompletionNotice) -> List[Future]:
        """Dispatch post-success handlers; each runs and fails independently."""
        with self._lock:
            handlers = list(self._post_success)
            if handlers and self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="post-success"
                )
            executor = self._executor
        return [executor.submit(self._run_post_success, handler, notice) for handler in handlers]

    @staticmethod
    def _run_post_success(handler: PostSuccessHandler, notice: CompletionNotice) -> bool:
        name = _handler_name(handler)
        try:
            handler.after_success(notice)
        except Exception as e:
            logger.error(f"[Hooks] Post-success handler {name} failed for job {notice.job_id}: {e}")
            return False
        logger.info(f"[Hooks] Post-success handler {name} completed for job {notice.job_id}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
