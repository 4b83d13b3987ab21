"""
Orchestrator: the engine's single entry point.

Wires the preset validator, command builder, scheduler and hooks together.
Submission is synchronous up to command building: an invalid preset or an
unbuildable command raises immediately and no job is created. Everything
after that (admission, execution, retry) happens on the scheduler.

Usage:
    orchestrator = Orchestrator(EngineSettings.from_env())
    job_id = orchestrator.submit(preset, source, None, OutputTarget(path="/out/a.mp4"))
    with orchestrator.subscribe(job_id) as updates:
        for snapshot in updates:
            print(snapshot.state, snapshot.progress)
    orchestrator.shutdown()
"""

import logging
import threading
from typing import List, Optional, Tuple

from .commands.builder import build_commands
from .commands.models import CommandSpec, OutputTarget, Overrides
from .execution.runner import ProcessRunner
from .jobs.hooks import HookRegistry
from .jobs.models import ControlResult, JobStateSnapshot, SubmissionRequest
from .jobs.retry import RetryPolicy
from .jobs.scheduler import JobScheduler
from .jobs.slots import WorkerSlotPool
from .jobs.subscriptions import Subscription
from .media.models import SourceDescriptor
from .media.probe import FFprobeProbe, ProbeService
from .presets.models import PresetDefinition
from .presets.registry import PresetRegistry
from .presets.validator import require_valid
from .settings import EngineSettings

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Facade over presets, command building and scheduling.

    Thread-safe: every method may be called from any thread.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        probe: Optional[ProbeService] = None,
        hooks: Optional[HookRegistry] = None,
        runner: Optional[ProcessRunner] = None,
        presets: Optional[PresetRegistry] = None,
    ):
        self.settings = settings or EngineSettings()
        self.probe = probe or FFprobeProbe(self.settings.ffprobe_path)
        self.hooks = hooks or HookRegistry(max_workers=self.settings.post_success_workers)
        self.presets = presets or PresetRegistry()
        self.runner = runner or ProcessRunner(
            terminate_grace_seconds=self.settings.terminate_grace_seconds,
            queue_capacity=self.settings.event_channel_capacity,
        )
        self.scheduler = JobScheduler(
            runner=self.runner,
            slots=WorkerSlotPool(self.settings.max_concurrent_jobs),
            retry_policy=RetryPolicy(
                max_retries=self.settings.retry_cap,
                backoff_base=self.settings.backoff_base,
                backoff_factor=self.settings.backoff_factor,
                backoff_max=self.settings.backoff_max,
            ),
            hooks=self.hooks,
            channel_capacity=self.settings.event_channel_capacity,
            tail_lines=self.settings.diagnostic_tail_lines,
            ema_alpha=self.settings.ema_alpha,
        )
        self.scheduler.start()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def preview_commands(
        self,
        preset: PresetDefinition,
        source: SourceDescriptor,
        overrides: Optional[Overrides],
        target: OutputTarget,
    ) -> Tuple[CommandSpec, ...]:
        """
        Validate and build without submitting.

        Raises:
            PresetValidationError: Preset is invalid
            BuildError: Preset cannot be resolved against this source
        """
        require_valid(preset)
        return build_commands(
            preset,
            source,
            overrides,
            target,
            ffmpeg_binary=self.settings.ffmpeg_path,
            vaapi_device=self.settings.vaapi_device,
        )

    def submit(
        self,
        preset: PresetDefinition,
        source: SourceDescriptor,
        overrides: Optional[Overrides],
        target: OutputTarget,
        priority: int = 0,
        concurrency_group: Optional[str] = None,
    ) -> str:
        """
        Validate, build and enqueue a job. Returns the job id.

        Raises:
            PresetValidationError: Preset is invalid
            SubmissionRejected: A pre-submit handler refused the job
            BuildError: Preset cannot be resolved against this source
            SchedulerClosedError: Orchestrator already shut down
        """
        require_valid(preset)
        request = SubmissionRequest(
            preset=preset,
            source=source,
            overrides=overrides or Overrides(),
            target=target,
            priority=priority,
            concurrency_group=concurrency_group,
        )
        adjusted = self.hooks.run_pre_submit(request)
        if adjusted.preset is not request.preset:
            require_valid(adjusted.preset)
        commands = build_commands(
            adjusted.preset,
            adjusted.source,
            adjusted.overrides,
            adjusted.target,
            ffmpeg_binary=self.settings.ffmpeg_path,
            vaapi_device=self.settings.vaapi_device,
        )
        job_id = self.scheduler.submit(adjusted, commands)
        logger.info(
            f"[Orchestrator] Submitted job {job_id}: {adjusted.preset.key} "
            f"{adjusted.source.path} -> {adjusted.target.path} ({len(commands)} pass(es))"
        )
        return job_id

    def submit_path(
        self,
        preset: PresetDefinition,
        source_path: str,
        output_dir: str,
        overrides: Optional[Overrides] = None,
        priority: int = 0,
        concurrency_group: Optional[str] = None,
        overwrite: bool = False,
        suffix: str = "",
    ) -> str:
        """
        Probe a file, name its output after it, and submit.

        Raises:
            ProbeError: Source could not be probed
            (plus everything submit raises)
        """
        source = self.probe.probe(source_path)
        target = OutputTarget.in_directory(
            source_path, output_dir, preset.container, suffix=suffix, overwrite=overwrite
        )
        return self.submit(preset, source, overrides, target, priority, concurrency_group)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def pause(self, job_id: str) -> ControlResult:
        return self.scheduler.request_pause(job_id)

    def resume(self, job_id: str) -> ControlResult:
        return self.scheduler.request_resume(job_id)

    def cancel(self, job_id: str) -> ControlResult:
        return self.scheduler.request_cancel(job_id)

    def set_concurrency_limit(self, limit: int) -> None:
        self.scheduler.set_concurrency_limit(limit)
        logger.info(f"[Orchestrator] Concurrency limit set to {limit}")

    @property
    def concurrency_limit(self) -> int:
        return self.scheduler.slots.limit

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def subscribe(self, job_id: str) -> Subscription:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        return self.scheduler.subscribe(job_id)

    def get_job(self, job_id: str) -> JobStateSnapshot:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        return self.scheduler.get_snapshot(job_id)

    def list_jobs(self) -> List[JobStateSnapshot]:
        return self.scheduler.list_snapshots()

    def shutdown(self, timeout: float = 10.0) -> None:
        self.scheduler.shutdown(timeout=timeout)
        self.hooks.shutdown(wait=True)
        logger.info("[Orchestrator] Shut down")


_orchestrator: Optional[Orchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator configured from the environment."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = Orchestrator(EngineSettings.from_env())
        return _orchestrator
