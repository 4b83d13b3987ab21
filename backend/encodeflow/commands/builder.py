"""
Command builder: preset + source + overrides + target -> CommandSpec(s).

Pure and deterministic. Identical inputs always yield byte-identical
argument vectors: no clocks, no environment lookups, no filesystem access,
no dict-order dependence beyond insertion order of literal tables.

Argument layout (shared prefix is identical across passes):

    <ffmpeg> -hide_banner -nostdin [-y] -nostats -progress pipe:1
    <hw init> -i <input> -map 0:N ... -c:v <enc> [-preset P] [-profile:v P]
    [-pix_fmt F] <rate control> [-vf <chain>] <extra args> <tail>

Tails:
    single pass:  <audio> <subtitles> [-movflags +faststart] -f <muxer> <output>
    pass 1 of 2:  -pass 1 -passlogfile <base> -an -sn -f null -
    pass 2 of 2:  -pass 2 -passlogfile <base> <single-pass tail>

libx265 carries pass information in -x265-params instead of -pass/-passlogfile.

Rules, applied in order:
1. Mapping references are resolved against the source's stream indices
2. -y is emitted only when the target explicitly requests overwrite
3. MP4-family containers with a mapped video stream get +faststart
4. Two-pass emits two specs sharing one pass-log base derived from the output
5. A resolved hardware backend injects its init flags before the input and
   must accept the effective pixel format and profile
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..codecs import (
    DEFAULT_VAAPI_DEVICE,
    HW_BACKENDS,
    TWO_PASS_X265,
    ContainerSpec,
    EncoderSpec,
    backend_for_encoder,
    get_container_spec,
    get_encoder_spec,
    is_ten_bit,
    known_backends,
)
from ..media.models import SourceDescriptor, StreamInfo, StreamKind
from ..presets.models import (
    AudioAction,
    HwAccelHint,
    HwAccelMode,
    PresetDefinition,
    RateControlMode,
    SubtitleAction,
)
from .errors import BuildError, IncompatibleHardwareConfig
from .mapping import resolve_mapping, resolve_single, select_burn_in_stream
from .models import CommandSpec, OutputTarget, Overrides
from .tokens import EXTRA_ARGS_FORBIDDEN, FILTERS_FORBIDDEN, substitute

logger = logging.getLogger(__name__)


PROGRESS_ARGS = ("-nostats", "-progress", "pipe:1")
PASS_LOG_SUFFIX = ".passlog"


def resolve_hw_backend(hint: HwAccelHint, encoder: str) -> Optional[str]:
    """
    Resolve a hardware hint to a concrete backend name.

    Returns None when no hardware flags should be emitted.
    """
    if hint.mode == HwAccelMode.NONE:
        return None
    if hint.mode == HwAccelMode.AUTO:
        return backend_for_encoder(encoder)
    return hint.backend


def pass_log_base(output_path: str) -> str:
    """Pass statistics base path shared by both passes of a two-pass encode."""
    return f"{output_path}{PASS_LOG_SUFFIX}"


def format_number(value: float) -> str:
    """Deterministic CLI rendering: 23.0 -> "23", 23.5 -> "23.5"."""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return format(number, "g")


def escape_filter_value(value: str) -> str:
    """
    Escape a value for use as a filter option inside a filtergraph.

    Two levels: option-value escaping, then filtergraph escaping.
    """
    level1 = re.sub(r"([\\:'])", r"\\\1", value)
    return re.sub(r"([\\'\[\],;])", r"\\\1", level1)


class _Effective:
    """Preset values after overrides are applied."""

    def __init__(self, preset: PresetDefinition, overrides: Overrides):
        video = preset.video
        mode = video.rate_control

        if overrides.quality is not None and mode == RateControlMode.BITRATE:
            raise BuildError("Quality override given but the preset uses bitrate rate control")
        if overrides.bitrate is not None and mode != RateControlMode.BITRATE:
            raise BuildError(
                f"Bitrate override given but the preset uses {mode.value} rate control"
            )

        self.mode = mode
        self.quality = overrides.quality if overrides.quality is not None else video.quality
        self.bitrate = overrides.bitrate if overrides.bitrate is not None else video.bitrate
        self.encoder_preset = overrides.encoder_preset or video.encoder_preset
        self.width = overrides.width if overrides.width is not None else video.width
        self.height = overrides.height if overrides.height is not None else video.height

        if mode == RateControlMode.BITRATE and not self.bitrate:
            raise BuildError("Bitrate rate control requires a bitrate")
        if mode != RateControlMode.BITRATE and self.quality is None:
            raise BuildError(f"{mode.value} rate control requires a quality value")


def _check_hardware(
    backend: str,
    preset: PresetDefinition,
    encoder_spec: Optional[EncoderSpec],
) -> None:
    """Raise IncompatibleHardwareConfig unless the backend can honour the preset."""
    video = preset.video
    hw = HW_BACKENDS.get(backend)
    if hw is None:
        raise IncompatibleHardwareConfig(
            backend, "hwaccel.backend",
            f"unknown backend (known: {', '.join(known_backends())})",
        )

    encoder_backend = backend_for_encoder(video.encoder)
    if encoder_backend != backend:
        raise IncompatibleHardwareConfig(
            backend, "video.encoder",
            f"encoder '{video.encoder}' does not run on this backend",
        )

    if video.pixel_format and video.pixel_format not in hw.pixel_formats:
        raise IncompatibleHardwareConfig(
            backend, "video.pixel_format",
            f"pixel format '{video.pixel_format}' not accepted "
            f"(allowed: {', '.join(hw.pixel_formats)})",
        )

    if video.profile and encoder_spec is not None and encoder_spec.profiles:
        if video.profile not in encoder_spec.profiles:
            raise IncompatibleHardwareConfig(
                backend, "video.profile",
                f"profile '{video.profile}' not supported by {video.encoder}",
            )
        if is_ten_bit(video.pixel_format) and video.profile not in encoder_spec.ten_bit_profiles:
            raise IncompatibleHardwareConfig(
                backend, "video.profile",
                f"profile '{video.profile}' cannot carry 10-bit pixel format '{video.pixel_format}'",
            )


def _rate_control_args(encoder: str, backend: Optional[str], eff: _Effective) -> List[str]:
    if eff.mode == RateControlMode.BITRATE:
        return ["-b:v", str(eff.bitrate)]

    quality = format_number(eff.quality)
    if eff.mode == RateControlMode.CRF:
        args = ["-crf", quality]
        # Constrained-quality encoders need an explicit zero bitrate for pure CRF
        if encoder in ("libvpx-vp9", "libaom-av1"):
            args += ["-b:v", "0"]
        return args

    # CQ: hardware-specific quality flags
    encoder_backend = backend or backend_for_encoder(encoder)
    if encoder_backend == "cuda":
        return ["-rc:v", "vbr", "-cq:v", quality, "-b:v", "0"]
    if encoder_backend == "qsv":
        return ["-global_quality", quality]
    if encoder_backend == "vaapi":
        return ["-rc_mode", "CQP", "-qp", quality]
    if encoder_backend == "videotoolbox":
        return ["-q:v", quality]
    return ["-cq", quality]


def _audio_args(
    preset: PresetDefinition,
    source: SourceDescriptor,
    mapped: List[StreamInfo],
) -> List[str]:
    args: List[str] = []
    audio_streams = [s for s in mapped if s.kind == StreamKind.AUDIO]
    for out_index, stream in enumerate(audio_streams):
        rule = preset.audio_rule_for(source.relative_index_of(stream))
        if rule is None or rule.action == AudioAction.PASSTHROUGH:
            args += [f"-c:a:{out_index}", "copy"]
            continue
        args += [f"-c:a:{out_index}", str(rule.encoder)]
        if rule.bitrate:
            args += [f"-b:a:{out_index}", rule.bitrate]
        if rule.channels:
            args += [f"-ac:a:{out_index}", str(rule.channels)]
    return args


def _subtitle_args(
    preset: PresetDefinition,
    container: ContainerSpec,
    mapped: List[StreamInfo],
) -> List[str]:
    if preset.subtitles.action in (SubtitleAction.BURN_IN, SubtitleAction.DROP):
        return ["-sn"]
    if any(s.kind == StreamKind.SUBTITLE for s in mapped):
        return ["-c:s", container.subtitle_codec]
    return []


def build_commands(
    preset: PresetDefinition,
    source: SourceDescriptor,
    overrides: Optional[Overrides],
    target: OutputTarget,
    ffmpeg_binary: str = "ffmpeg",
    vaapi_device: str = DEFAULT_VAAPI_DEVICE,
) -> Tuple[CommandSpec, ...]:
    """
    Resolve a preset against a concrete source and target.

    Returns one CommandSpec, or two for two-pass encodes.

    Raises:
        MappingUnresolved: A mapping reference does not exist in the source
        IncompatibleHardwareConfig: The hardware backend cannot honour the preset
        TokenError: A filter or extra argument uses an unknown token
        BuildError: Anything else that makes the preset unbuildable
    """
    overrides = overrides or Overrides()
    video = preset.video

    container = get_container_spec(preset.container)
    if container is None:
        raise BuildError(f"Unknown container '{preset.container}'")
    encoder_spec = get_encoder_spec(video.encoder)
    eff = _Effective(preset, overrides)

    # Rule 1: resolve mapping against concrete stream indices
    mapped = resolve_mapping(preset, source, overrides.subtitle_language)
    has_video = any(s.kind == StreamKind.VIDEO for s in mapped)

    # Rule 5: hardware backend
    backend = resolve_hw_backend(preset.hwaccel, video.encoder)
    hw = None
    if backend is not None:
        _check_hardware(backend, preset, encoder_spec)
        hw = HW_BACKENDS[backend]
    elif preset.hwaccel.mode == HwAccelMode.NAMED:
        raise IncompatibleHardwareConfig("", "hwaccel.backend", "named mode requires a backend")

    def _resolve_map(reference: str) -> str:
        return f"0:{resolve_single(reference, source).index}"

    values: Dict[str, str] = {
        "input": source.path,
        "output": target.path,
        "output_dir": target.directory,
        "output_stem": Path(target.path).stem,
        "container": preset.container,
        "map": " ".join(f"0:{s.index}" for s in mapped),
        "quality": format_number(eff.quality) if eff.quality is not None and eff.mode != RateControlMode.BITRATE else "",
        "bitrate": str(eff.bitrate) if eff.mode == RateControlMode.BITRATE else "",
        "width": str(eff.width) if eff.width is not None else "",
        "height": str(eff.height) if eff.height is not None else "",
    }

    # Filter chain: preset filters, scale, subtitle burn-in, hardware upload
    chain = [substitute(f, values, _resolve_map, FILTERS_FORBIDDEN) for f in video.filters]
    if eff.width is not None or eff.height is not None:
        width = eff.width if eff.width is not None else -2
        height = eff.height if eff.height is not None else -2
        chain.append(f"scale={width}:{height}")
    if preset.subtitles.action == SubtitleAction.BURN_IN:
        burn = select_burn_in_stream(source, preset.subtitles, overrides.subtitle_language)
        if burn is not None:
            chain.append(
                f"subtitles={escape_filter_value(source.path)}"
                f":si={source.relative_index_of(burn)}"
            )
        else:
            logger.info(f"[Builder] No subtitle stream to burn in for {source.path}")
    upload = hw is not None and hw.upload_filter is not None
    if upload:
        upload_format = video.pixel_format
        if not upload_format or upload_format == backend:
            upload_format = hw.default_upload_format
        chain.append(hw.upload_filter.format(pix_fmt=upload_format))
    values["filters"] = ",".join(chain)

    extra = [
        substitute(arg, values, _resolve_map, EXTRA_ARGS_FORBIDDEN)
        for arg in tuple(preset.extra_args) + tuple(overrides.extra_args)
    ]

    # Shared prefix
    prefix: List[str] = [ffmpeg_binary, "-hide_banner", "-nostdin"]
    if target.overwrite:  # Rule 2
        prefix.append("-y")
    prefix += PROGRESS_ARGS
    if hw is not None:
        prefix += [arg.format(device=vaapi_device) for arg in hw.init_args]
    prefix += ["-i", source.path]
    for stream in mapped:
        prefix += ["-map", f"0:{stream.index}"]
    prefix += ["-c:v", video.encoder]
    if eff.encoder_preset:
        prefix += ["-preset", eff.encoder_preset]
    if video.profile:
        prefix += ["-profile:v", video.profile]
    if video.pixel_format and not upload:
        prefix += ["-pix_fmt", video.pixel_format]
    prefix += _rate_control_args(video.encoder, backend, eff)
    if chain:
        prefix += ["-vf", values["filters"]]
    prefix += extra

    # Final-output tail
    tail = _audio_args(preset, source, mapped)
    tail += _subtitle_args(preset, container, mapped)
    if container.mp4_family and has_video:  # Rule 3
        tail += ["-movflags", "+faststart"]
    tail += ["-f", container.muxer, target.path]

    if not video.two_pass:
        spec = CommandSpec(args=tuple(prefix + tail), outputs=(target.path,))
        logger.debug(f"[Builder] {preset.key}: {spec.command_line()}")
        return (spec,)

    # Rule 4: two passes sharing one pass-log base
    base = pass_log_base(target.path)
    x265 = encoder_spec is not None and encoder_spec.two_pass == TWO_PASS_X265

    def _pass_flags(index: int) -> List[str]:
        if x265:
            return ["-x265-params", f"pass={index}:stats={base}"]
        return ["-pass", str(index), "-passlogfile", base]

    first = CommandSpec(
        args=tuple(prefix + _pass_flags(1) + ["-an", "-sn", "-f", "null", "-"]),
        outputs=(),
        pass_index=1,
        pass_count=2,
        pass_log_base=base,
    )
    second = CommandSpec(
        args=tuple(prefix + _pass_flags(2) + tail),
        outputs=(target.path,),
        pass_index=2,
        pass_count=2,
        pass_log_base=base,
    )
    logger.debug(f"[Builder] {preset.key} pass 1: {first.command_line()}")
    logger.debug(f"[Builder] {preset.key} pass 2: {second.command_line()}")
    return (first, second)
