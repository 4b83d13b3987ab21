"""
Preset validation.

validate_preset() is structural and semantic, never source-specific:
mapping references are checked for shape here and resolved against real
stream indices only at build time.

Validation never performs I/O and never raises for recoverable problems.
It returns every issue found, not just the first.
"""

import re
from typing import Any, Dict, List

from pydantic import ValidationError

from ..codecs import (
    HW_BACKENDS,
    backend_for_encoder,
    get_container_spec,
    get_encoder_spec,
    is_ten_bit,
    known_backends,
)
from ..commands.mapping import parse_stream_ref
from ..commands.tokens import EXTRA_ARGS_FORBIDDEN, FILTERS_FORBIDDEN, check_tokens, find_tokens
from ..media.models import StreamKind
from .errors import PresetValidationError, ValidationIssue
from .models import (
    AudioAction,
    HwAccelMode,
    PresetDefinition,
    RateControlMode,
    SubtitleAction,
)


PRESET_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
BITRATE_PATTERN = re.compile(r"^\d+(\.\d+)?[kKmM]?$")
LANGUAGE_PATTERN = re.compile(r"^[a-z]{2,3}$")


def _check_identity(preset: PresetDefinition, issues: List[ValidationIssue]) -> None:
    if not PRESET_ID_PATTERN.match(preset.id):
        issues.append(ValidationIssue(
            field="id",
            reason="must start with a letter or digit and contain only letters, digits, '.', '_' or '-'",
        ))
    if preset.version < 1:
        issues.append(ValidationIssue(field="version", reason="must be >= 1"))


def _check_video(preset: PresetDefinition, issues: List[ValidationIssue]) -> None:
    video = preset.video
    spec = get_encoder_spec(video.encoder)
    container = get_container_spec(preset.container)

    if container is None:
        issues.append(ValidationIssue(field="container", reason=f"unknown container '{preset.container}'"))
    elif spec is not None and container.video_codecs and spec.codec not in container.video_codecs:
        issues.append(ValidationIssue(
            field="container",
            reason=f"{container.name} cannot carry {spec.codec} video ({video.encoder})",
        ))

    # Rate control: exactly one active mode carrying its value
    mode = video.rate_control
    if mode == RateControlMode.BITRATE:
        if not video.bitrate:
            issues.append(ValidationIssue(field="video.bitrate", reason="bitrate mode requires a bitrate"))
        elif not BITRATE_PATTERN.match(video.bitrate):
            issues.append(ValidationIssue(
                field="video.bitrate",
                reason=f"'{video.bitrate}' is not a bitrate (e.g. 4500k, 8M)",
            ))
        if video.quality is not None:
            issues.append(ValidationIssue(field="video.quality", reason="quality must not be set in bitrate mode"))
    else:
        if video.quality is None:
            issues.append(ValidationIssue(field="video.quality", reason=f"{mode.value} mode requires a quality value"))
        elif spec is not None:
            low, high = spec.quality_range
            if not low <= video.quality <= high:
                issues.append(ValidationIssue(
                    field="video.quality",
                    reason=f"{video.quality} is outside {video.encoder}'s range [{low}, {high}]",
                ))
        if video.bitrate is not None:
            issues.append(ValidationIssue(
                field="video.bitrate",
                reason=f"bitrate must not be set in {mode.value} mode",
            ))

    if spec is not None and mode not in spec.rate_controls:
        allowed = ", ".join(spec.rate_controls)
        issues.append(ValidationIssue(
            field="video.rate_control",
            reason=f"{video.encoder} does not support {mode.value} (supports: {allowed})",
        ))

    if video.two_pass:
        if mode != RateControlMode.BITRATE:
            issues.append(ValidationIssue(field="video.two_pass", reason="two-pass requires bitrate rate control"))
        if spec is not None and spec.two_pass is None:
            issues.append(ValidationIssue(
                field="video.two_pass",
                reason=f"{video.encoder} does not support two-pass encoding",
            ))

    if spec is not None:
        if video.pixel_format and spec.pixel_formats and video.pixel_format not in spec.pixel_formats:
            issues.append(ValidationIssue(
                field="video.pixel_format",
                reason=f"{video.encoder} cannot accept '{video.pixel_format}'",
            ))
        if video.profile and spec.profiles and video.profile not in spec.profiles:
            issues.append(ValidationIssue(
                field="video.profile",
                reason=f"{video.encoder} has no profile '{video.profile}'",
            ))
        if (
            video.profile
            and spec.profiles
            and is_ten_bit(video.pixel_format)
            and video.profile not in spec.ten_bit_profiles
        ):
            issues.append(ValidationIssue(
                field="video.profile",
                reason=f"profile '{video.profile}' cannot carry 10-bit pixel format '{video.pixel_format}'",
            ))

    for name in ("width", "height"):
        value = getattr(video, name)
        if value is not None and value <= 0:
            issues.append(ValidationIssue(field=f"video.{name}", reason="must be positive"))

    for i, entry in enumerate(video.filters):
        field = f"video.filters[{i}]"
        if not entry.strip():
            issues.append(ValidationIssue(field=field, reason="filter entry is empty"))
        _check_token_string(entry, field, FILTERS_FORBIDDEN, issues)


def _check_token_string(text: str, field: str, forbidden, issues: List[ValidationIssue]) -> None:
    for problem in check_tokens(text, forbidden):
        issues.append(ValidationIssue(field=field, reason=problem))
    for name, argument in find_tokens(text):
        if name == "map" and argument is not None:
            try:
                parse_stream_ref(argument)
            except ValueError as e:
                issues.append(ValidationIssue(field=field, reason=str(e)))


def _check_audio(preset: PresetDefinition, issues: List[ValidationIssue]) -> None:
    seen = set()
    fallbacks = 0
    for i, rule in enumerate(preset.audio):
        field = f"audio[{i}]"
        if rule.source_stream is None:
            fallbacks += 1
        elif rule.source_stream < 0:
            issues.append(ValidationIssue(field=f"{field}.source_stream", reason="must be >= 0"))
        elif rule.source_stream in seen:
            issues.append(ValidationIssue(
                field=f"{field}.source_stream",
                reason=f"duplicate rule for audio stream {rule.source_stream}",
            ))
        else:
            seen.add(rule.source_stream)

        if rule.action == AudioAction.TRANSCODE:
            if not rule.encoder:
                issues.append(ValidationIssue(field=f"{field}.encoder", reason="transcode requires an encoder"))
            if rule.bitrate is not None and not BITRATE_PATTERN.match(rule.bitrate):
                issues.append(ValidationIssue(
                    field=f"{field}.bitrate",
                    reason=f"'{rule.bitrate}' is not a bitrate (e.g. 192k)",
                ))
            if rule.channels is not None and rule.channels <= 0:
                issues.append(ValidationIssue(field=f"{field}.channels", reason="must be positive"))
        else:
            for name in ("encoder", "bitrate", "channels"):
                if getattr(rule, name) is not None:
                    issues.append(ValidationIssue(
                        field=f"{field}.{name}",
                        reason="passthrough rules cannot set encoder, bitrate or channels",
                    ))

    if fallbacks > 1:
        issues.append(ValidationIssue(field="audio", reason="at most one fallback rule (no source_stream) is allowed"))


def _check_subtitles_and_mapping(preset: PresetDefinition, issues: List[ValidationIssue]) -> None:
    rule = preset.subtitles
    if rule.preferred_language and not LANGUAGE_PATTERN.match(rule.preferred_language):
        issues.append(ValidationIssue(
            field="subtitles.preferred_language",
            reason="must be a lowercase ISO 639 code (e.g. 'eng')",
        ))

    for i, text in enumerate(preset.mapping.streams):
        field = f"mapping.streams[{i}]"
        try:
            ref = parse_stream_ref(text)
        except ValueError as e:
            issues.append(ValidationIssue(field=field, reason=str(e)))
            continue
        if ref.input_index != 0:
            issues.append(ValidationIssue(field=field, reason="jobs have a single input; use input index 0"))
        if ref.kind == StreamKind.SUBTITLE and rule.action != SubtitleAction.COPY:
            issues.append(ValidationIssue(
                field=field,
                reason=f"subtitle streams cannot be mapped when subtitles are {rule.action.value}",
            ))


def _check_hwaccel(preset: PresetDefinition, issues: List[ValidationIssue]) -> None:
    hint = preset.hwaccel
    video = preset.video
    encoder_backend = backend_for_encoder(video.encoder)

    if hint.mode == HwAccelMode.NAMED:
        if not hint.backend:
            issues.append(ValidationIssue(field="hwaccel.backend", reason="named mode requires a backend"))
            return
        if hint.backend not in HW_BACKENDS:
            issues.append(ValidationIssue(
                field="hwaccel.backend",
                reason=f"unknown backend '{hint.backend}' (known: {', '.join(known_backends())})",
            ))
            return
        if encoder_backend != hint.backend:
            issues.append(ValidationIssue(
                field="hwaccel.backend",
                reason=f"encoder '{video.encoder}' does not run on {hint.backend}",
            ))
        backend = hint.backend
    else:
        if hint.backend is not None:
            issues.append(ValidationIssue(
                field="hwaccel.backend",
                reason=f"backend is only meaningful in named mode (mode is {hint.mode.value})",
            ))
        backend = encoder_backend if hint.mode == HwAccelMode.AUTO else None

    if backend is None and encoder_backend is not None and HW_BACKENDS[encoder_backend].upload_filter:
        issues.append(ValidationIssue(
            field="hwaccel.mode",
            reason=f"{video.encoder} needs frames uploaded to {encoder_backend}; use auto or named mode",
        ))

    if backend is not None and video.pixel_format:
        allowed = HW_BACKENDS[backend].pixel_formats
        if video.pixel_format not in allowed:
            issues.append(ValidationIssue(
                field="video.pixel_format",
                reason=f"{backend} cannot accept '{video.pixel_format}' (allowed: {', '.join(allowed)})",
            ))


def validate_preset(preset: PresetDefinition) -> List[ValidationIssue]:
    """
    Validate a preset.

    Returns:
        Every issue found; an empty list means the preset is valid
    """
    issues: List[ValidationIssue] = []
    _check_identity(preset, issues)
    _check_video(preset, issues)
    _check_audio(preset, issues)
    _check_subtitles_and_mapping(preset, issues)
    _check_hwaccel(preset, issues)
    for i, arg in enumerate(preset.extra_args):
        _check_token_string(arg, f"extra_args[{i}]", EXTRA_ARGS_FORBIDDEN, issues)
    return issues


def require_valid(preset: PresetDefinition) -> PresetDefinition:
    """
    Return the preset unchanged if it is valid.

    Raises:
        PresetValidationError: With every issue found
    """
    issues = validate_preset(preset)
    if issues:
        raise PresetValidationError(preset.id, issues)
    return preset


def load_preset(data: Dict[str, Any]) -> PresetDefinition:
    """
    Parse and validate a preset from plain data (e.g. decoded JSON).

    Structural errors (wrong types, unknown fields) and semantic issues are
    reported through the same PresetValidationError.
    """
    preset_id = str(data.get("id", "<unknown>")) if isinstance(data, dict) else "<unknown>"
    try:
        preset = PresetDefinition.model_validate(data)
    except ValidationError as e:
        issues = [
            ValidationIssue(
                field=".".join(str(part) for part in err["loc"]) or "<root>",
                reason=err["msg"],
            )
            for err in e.errors()
        ]
        raise PresetValidationError(preset_id, issues)
    return require_valid(preset)
