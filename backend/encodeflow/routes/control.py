"""
HTTP control surface over the Orchestrator.

Thin adapter: request bodies are parsed into engine models, orchestrator
results are mapped to status codes. No engine logic lives here.

Status codes:
    404: Unknown job or preset
    409: Control request invalid in the job's current state
    422: Preset invalid, unbuildable, or rejected by a pre-submit handler
    503: Engine shut down
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from ..commands.errors import BuildError
from ..commands.models import CommandSpec, OutputTarget, Overrides
from ..jobs.errors import JobNotFoundError, SchedulerClosedError, SubmissionRejected
from ..jobs.models import ControlResult, JobStateSnapshot
from ..media.errors import ProbeError
from ..media.models import SourceDescriptor
from ..orchestrator import Orchestrator
from ..presets.errors import DuplicatePresetError, PresetNotFoundError, PresetValidationError
from ..presets.models import PresetDefinition
from ..presets.validator import load_preset

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/control", tags=["control"])


# ============================================================================
# API MODELS
# ============================================================================


class OperationResponse(BaseModel):
    """Generic response for control operations."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str


class CreateJobRequest(BaseModel):
    """
    Job submission body.

    Exactly one of preset / preset_id, and exactly one of source /
    source_path. A source_path is probed; its output is named after it
    inside output_dir unless output_path is given.
    """

    model_config = ConfigDict(extra="forbid")

    preset: Optional[PresetDefinition] = None
    preset_id: Optional[str] = None
    preset_version: Optional[int] = None
    source: Optional[SourceDescriptor] = None
    source_path: Optional[str] = None
    output_path: Optional[str] = None
    output_dir: Optional[str] = None
    overwrite: bool = False
    overrides: Overrides = Field(default_factory=Overrides)
    priority: int = 0
    concurrency_group: Optional[str] = None


class CreateJobResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str


class JobListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jobs: List[JobStateSnapshot]


class ConcurrencyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(ge=1)


class ConcurrencyResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int


class PreviewRequest(BaseModel):
    """Build commands without creating a job."""

    model_config = ConfigDict(extra="forbid")

    preset: Optional[PresetDefinition] = None
    preset_id: Optional[str] = None
    preset_version: Optional[int] = None
    source: SourceDescriptor
    output_path: str
    overwrite: bool = False
    overrides: Overrides = Field(default_factory=Overrides)


class PreviewResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    commands: List[CommandSpec]


class PresetInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    version: int
    name: str
    container: str
    encoder: str


class PresetListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    presets: List[PresetInfo]


# ============================================================================
# HELPERS
# ============================================================================


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _resolve_preset(
    orchestrator: Orchestrator,
    inline: Optional[PresetDefinition],
    preset_id: Optional[str],
    version: Optional[int],
) -> PresetDefinition:
    if (inline is None) == (preset_id is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of 'preset' or 'preset_id'")
    if inline is not None:
        return inline
    try:
        return orchestrator.presets.get(preset_id, version)
    except PresetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _submission_error(e: Exception) -> HTTPException:
    """Map a synchronous submission failure to an HTTP error."""
    if isinstance(e, PresetValidationError):
        return HTTPException(
            status_code=422,
            detail={"message": str(e), "issues": [issue.model_dump() for issue in e.issues]},
        )
    if isinstance(e, SchedulerClosedError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=422, detail=str(e))


def _control_response(job_id: str, action: str, result: ControlResult) -> OperationResponse:
    if result == ControlResult.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    if result == ControlResult.INVALID_TRANSITION:
        raise HTTPException(status_code=409, detail=f"Cannot {action} job {job_id} in its current state")
    logger.info(f"[Control] {action} requested for job {job_id}")
    return OperationResponse(success=True, message=f"{action.capitalize()} requested for job {job_id}")


# ============================================================================
# JOBS
# ============================================================================


@router.get("/jobs", response_model=JobListResponse)
def list_jobs_endpoint(request: Request):
    return JobListResponse(jobs=_orchestrator(request).list_jobs())


@router.get("/jobs/{job_id}", response_model=JobStateSnapshot)
def get_job_endpoint(job_id: str, request: Request):
    try:
        return _orchestrator(request).get_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/jobs", response_model=CreateJobResponse, status_code=201)
def create_job_endpoint(body: CreateJobRequest, request: Request):
    """
    Submit a job.

    Raises:
        404: Unknown preset_id
        422: Invalid preset, unbuildable command, probe failure or rejection
        503: Engine shut down
    """
    orchestrator = _orchestrator(request)
    preset = _resolve_preset(orchestrator, body.preset, body.preset_id, body.preset_version)
    if (body.source is None) == (body.source_path is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of 'source' or 'source_path'")

    try:
        if body.source is not None:
            if not body.output_path:
                raise HTTPException(status_code=422, detail="'output_path' is required with 'source'")
            target = OutputTarget(path=body.output_path, overwrite=body.overwrite)
            job_id = orchestrator.submit(
                preset, body.source, body.overrides, target, body.priority, body.concurrency_group
            )
        elif body.output_path:
            source = orchestrator.probe.probe(body.source_path)
            target = OutputTarget(path=body.output_path, overwrite=body.overwrite)
            job_id = orchestrator.submit(
                preset, source, body.overrides, target, body.priority, body.concurrency_group
            )
        elif body.output_dir:
            job_id = orchestrator.submit_path(
                preset,
                body.source_path,
                body.output_dir,
                overrides=body.overrides,
                priority=body.priority,
                concurrency_group=body.concurrency_group,
                overwrite=body.overwrite,
            )
        else:
            raise HTTPException(status_code=422, detail="Provide 'output_path' or 'output_dir'")
    except (PresetValidationError, BuildError, SubmissionRejected, ProbeError, SchedulerClosedError) as e:
        logger.warning(f"[Control] Submission refused: {e}")
        raise _submission_error(e)

    return CreateJobResponse(job_id=job_id)


@router.post("/jobs/{job_id}/pause", response_model=OperationResponse)
def pause_job_endpoint(job_id: str, request: Request):
    return _control_response(job_id, "pause", _orchestrator(request).pause(job_id))


@router.post("/jobs/{job_id}/resume", response_model=OperationResponse)
def resume_job_endpoint(job_id: str, request: Request):
    return _control_response(job_id, "resume", _orchestrator(request).resume(job_id))


@router.post("/jobs/{job_id}/cancel", response_model=OperationResponse)
def cancel_job_endpoint(job_id: str, request: Request):
    return _control_response(job_id, "cancel", _orchestrator(request).cancel(job_id))


# ============================================================================
# SETTINGS / COMMANDS / PRESETS
# ============================================================================


@router.get("/settings/concurrency", response_model=ConcurrencyResponse)
def get_concurrency_endpoint(request: Request):
    return ConcurrencyResponse(limit=_orchestrator(request).concurrency_limit)


@router.put("/settings/concurrency", response_model=ConcurrencyResponse)
def set_concurrency_endpoint(body: ConcurrencyRequest, request: Request):
    orchestrator = _orchestrator(request)
    orchestrator.set_concurrency_limit(body.limit)
    return ConcurrencyResponse(limit=orchestrator.concurrency_limit)


@router.post("/commands/preview", response_model=PreviewResponse)
def preview_commands_endpoint(body: PreviewRequest, request: Request):
    orchestrator = _orchestrator(request)
    preset = _resolve_preset(orchestrator, body.preset, body.preset_id, body.preset_version)
    target = OutputTarget(path=body.output_path, overwrite=body.overwrite)
    try:
        commands = orchestrator.preview_commands(preset, body.source, body.overrides, target)
    except (PresetValidationError, BuildError) as e:
        raise _submission_error(e)
    return PreviewResponse(commands=list(commands))


@router.get("/presets", response_model=PresetListResponse)
def list_presets_endpoint(request: Request):
    presets = [
        PresetInfo(
            id=p.id,
            version=p.version,
            name=p.name,
            container=p.container,
            encoder=p.video.encoder,
        )
        for p in _orchestrator(request).presets.list_latest()
    ]
    presets.sort(key=lambda p: p.id)
    return PresetListResponse(presets=presets)


@router.post("/presets", response_model=PresetInfo, status_code=201)
def register_preset_endpoint(body: Dict[str, Any], request: Request):
    """
    Register a new preset (or a new version of an existing one).

    Raises:
        409: (id, version) already registered
        422: Preset invalid
    """
    try:
        preset = _orchestrator(request).presets.add(load_preset(body))
    except PresetValidationError as e:
        raise _submission_error(e)
    except DuplicatePresetError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return PresetInfo(
        id=preset.id,
        version=preset.version,
        name=preset.name,
        container=preset.container,
        encoder=preset.video.encoder,
    )
