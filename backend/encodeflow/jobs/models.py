"""
Job data models.

A Job is the unit of scheduled work: one preset applied to one source,
resolved into one or two CommandSpecs at submission time.

Identity, inputs, resolved commands, priority and concurrency group are
fixed at submission (frozen fields). Life-cycle fields are mutated only by
the JobStateMachine, and not at all once the job is terminal.

All models use Pydantic for validation.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..commands.models import CommandSpec, OutputTarget, Overrides
from ..media.models import SourceDescriptor
from ..presets.models import PresetDefinition
from .errors import TerminalJobError


class JobState(str, Enum):
    """
    Job life-cycle state.

    SUCCEEDED, FAILED and CANCELED are terminal.
    """

    QUEUED = "queued"  # Waiting for a worker slot
    RUNNING = "running"  # Holds a slot, process tree active
    PAUSED = "paused"  # Process tree suspended, slot released
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ControlResult(str, Enum):
    """Outcome of a pause / resume / cancel request."""

    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"


class FailureKind(str, Enum):
    """Classification of a runtime failure captured on a job."""

    START_FAILURE = "process_start_failure"  # Binary missing / unrunnable
    EXIT_FAILURE = "process_exit_failure"  # Non-zero exit
    RUNNER_CRASH = "runner_crash"  # Worker thread raised
    BOOKKEEPING = "bookkeeping_failure"  # Control-thread bookkeeping raised
    SHUTDOWN = "shutdown"  # Engine shut down while the job was active


class JobErrorDescriptor(BaseModel):
    """
    Why a job did not succeed.

    Every non-success exit carries one: exit code plus the trailing
    diagnostic lines of the failing process.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: FailureKind
    message: str
    exit_code: Optional[int] = None
    errno: Optional[int] = None
    pass_index: Optional[int] = None
    diagnostic_tail: Tuple[str, ...] = ()


class SubmissionRequest(BaseModel):
    """
    Everything a submission carries before it becomes a Job.

    Pre-submit handlers receive this and may return an adjusted copy
    (model_copy(update=...)).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    preset: PresetDefinition
    source: SourceDescriptor
    overrides: Overrides = Field(default_factory=Overrides)
    target: OutputTarget
    priority: int = 0
    concurrency_group: Optional[str] = None

    @property
    def effective_group(self) -> str:
        """Explicit group, else the output directory."""
        return self.concurrency_group or self.target.directory


class JobStateSnapshot(BaseModel):
    """Immutable view of a job at one point in time, for subscribers and observers."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    job_id: str
    revision: int
    state: JobState
    progress: float
    rate: Optional[float] = None
    eta_seconds: Optional[float] = None
    current_pass: int = 0
    pass_count: int = 1
    retry_count: int = 0
    priority: int = 0
    concurrency_group: str
    preset_key: str
    source_path: str
    output_path: str
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    error: Optional[JobErrorDescriptor] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)


class Job(BaseModel):
    """
    A unit of scheduled work.

    Owned by the scheduler's control thread while active; immutable once
    terminal.
    """

    model_config = ConfigDict(extra="forbid")

    # Fixed at submission
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    sequence: int = Field(frozen=True)  # Submission order, FIFO tie-break
    preset: PresetDefinition = Field(frozen=True)
    source: SourceDescriptor = Field(frozen=True)
    overrides: Overrides = Field(frozen=True)
    target: OutputTarget = Field(frozen=True)
    commands: Tuple[CommandSpec, ...] = Field(frozen=True)
    priority: int = Field(default=0, frozen=True)
    concurrency_group: str = Field(frozen=True)
    created_at: datetime = Field(default_factory=datetime.now, frozen=True)

    # Life-cycle
    state: JobState = JobState.QUEUED
    revision: int = 0
    progress: float = 0.0  # Overall fraction [0, 1]
    rate: Optional[float] = None  # Media seconds per wall second
    eta_seconds: Optional[float] = None
    current_pass: int = 0
    retry_count: int = 0
    not_before: Optional[datetime] = None  # Retry backoff: not admitted before this
    updated_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[JobErrorDescriptor] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if self.is_terminal:
            raise TerminalJobError(self.id, name)
        super().__setattr__(name, value)

    @classmethod
    def from_request(cls, request: SubmissionRequest, commands: Tuple[CommandSpec, ...], sequence: int) -> "Job":
        return cls(
            sequence=sequence,
            preset=request.preset,
            source=request.source,
            overrides=request.overrides,
            target=request.target,
            commands=tuple(commands),
            priority=request.priority,
            concurrency_group=request.effective_group,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)

    @property
    def pass_count(self) -> int:
        return len(self.commands)

    def snapshot(self) -> JobStateSnapshot:
        return JobStateSnapshot(
            job_id=self.id,
            revision=self.revision,
            state=self.state,
            progress=self.progress,
            rate=self.rate,
            eta_seconds=self.eta_seconds,
            current_pass=self.current_pass,
            pass_count=self.pass_count,
            retry_count=self.retry_count,
            priority=self.priority,
            concurrency_group=self.concurrency_group,
            preset_key=self.preset.key,
            source_path=self.source.path,
            output_path=self.target.path,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            not_before=self.not_before,
            error=self.error,
        )
