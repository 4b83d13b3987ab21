"""
Encoder, container and hardware-backend specifications.

Single source of truth for what each encoder, container and hardware
backend accepts. Both the preset validator and the command builder read
these tables; neither hardcodes encoder knowledge of its own.

RULES:
1. An encoder not listed here is treated as a software encoder with no
   pixel-format or profile restrictions (validation cannot know better).
2. Hardware encoders always declare their backend.
3. Two-pass support is declared per encoder; hardware encoders never
   support it here.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Rate-control mode values (match presets.models.RateControlMode)
RC_CRF = "crf"
RC_CQ = "cq"
RC_BITRATE = "bitrate"


# Two-pass flag styles
TWO_PASS_FFMPEG = "ffmpeg"  # -pass N -passlogfile <base>
TWO_PASS_X265 = "x265"  # -x265-params pass=N:stats=<base>

DEFAULT_VAAPI_DEVICE = "/dev/dri/renderD128"


@dataclass(frozen=True)
class EncoderSpec:
    """
    What one FFmpeg video encoder supports.

    Attributes:
        encoder_id: FFmpeg encoder name
        codec: Output codec family (h264, hevc, av1, vp9)
        backend: Hardware backend name, None for software encoders
        rate_controls: Rate-control modes the encoder accepts
        quality_range: (min, max) for CRF/CQ values
        two_pass: Two-pass flag style, None if unsupported
        pixel_formats: Accepted pixel formats (empty = unrestricted)
        profiles: Accepted profiles (empty = unrestricted)
        ten_bit_profiles: Profiles that accept 10-bit pixel formats
    """

    encoder_id: str
    codec: str
    backend: Optional[str] = None
    rate_controls: Tuple[str, ...] = (RC_BITRATE,)
    quality_range: Tuple[float, float] = (0, 51)
    two_pass: Optional[str] = None
    pixel_formats: Tuple[str, ...] = ()
    profiles: Tuple[str, ...] = ()
    ten_bit_profiles: Tuple[str, ...] = ()

    @property
    def is_hardware(self) -> bool:
        return self.backend is not None


ENCODER_REGISTRY: Dict[str, EncoderSpec] = {
    # ========================================================================
    # Software encoders
    # ========================================================================
    "libx264": EncoderSpec(
        encoder_id="libx264",
        codec="h264",
        rate_controls=(RC_CRF, RC_BITRATE),
        quality_range=(0, 51),
        two_pass=TWO_PASS_FFMPEG,
        pixel_formats=("yuv420p", "yuvj420p", "yuv422p", "yuv444p", "nv12", "yuv420p10le", "yuv422p10le", "yuv444p10le"),
        profiles=("baseline", "main", "high", "high10", "high422", "high444"),
        ten_bit_profiles=("high10", "high422", "high444"),
    ),
    "libx265": EncoderSpec(
        encoder_id="libx265",
        codec="hevc",
        rate_controls=(RC_CRF, RC_BITRATE),
        quality_range=(0, 51),
        two_pass=TWO_PASS_X265,
        pixel_formats=("yuv420p", "yuv422p", "yuv444p", "yuv420p10le", "yuv422p10le", "yuv444p10le", "yuv420p12le"),
        profiles=("main", "main10", "main12", "main422-10", "main444-8", "main444-10"),
        ten_bit_profiles=("main10", "main12", "main422-10", "main444-10"),
    ),
    "libsvtav1": EncoderSpec(
        encoder_id="libsvtav1",
        codec="av1",
        rate_controls=(RC_CRF, RC_BITRATE),
        quality_range=(0, 63),
        pixel_formats=("yuv420p", "yuv420p10le"),
    ),
    "libaom-av1": EncoderSpec(
        encoder_id="libaom-av1",
        codec="av1",
        rate_controls=(RC_CRF, RC_BITRATE),
        quality_range=(0, 63),
        two_pass=TWO_PASS_FFMPEG,
        pixel_formats=("yuv420p", "yuv422p", "yuv444p", "yuv420p10le", "yuv422p10le", "yuv444p10le"),
    ),
    "libvpx-vp9": EncoderSpec(
        encoder_id="libvpx-vp9",
        codec="vp9",
        rate_controls=(RC_CRF, RC_BITRATE),
        quality_range=(0, 63),
        two_pass=TWO_PASS_FFMPEG,
        pixel_formats=("yuv420p", "yuva420p", "yuv422p", "yuv444p", "yuv420p10le", "yuv422p10le", "yuv444p10le"),
    ),
    # ========================================================================
    # NVIDIA (cuda)
    # ========================================================================
    "h264_nvenc": EncoderSpec(
        encoder_id="h264_nvenc",
        codec="h264",
        backend="cuda",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(0, 51),
        pixel_formats=("yuv420p", "nv12", "yuv444p", "bgr0", "cuda"),
        profiles=("baseline", "main", "high", "high444p"),
    ),
    "hevc_nvenc": EncoderSpec(
        encoder_id="hevc_nvenc",
        codec="hevc",
        backend="cuda",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(0, 51),
        pixel_formats=("yuv420p", "nv12", "p010le", "yuv444p", "yuv444p16le", "bgr0", "cuda"),
        profiles=("main", "main10", "rext"),
        ten_bit_profiles=("main10", "rext"),
    ),
    "av1_nvenc": EncoderSpec(
        encoder_id="av1_nvenc",
        codec="av1",
        backend="cuda",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(0, 63),
        pixel_formats=("yuv420p", "nv12", "p010le", "cuda"),
        profiles=("main",),
        ten_bit_profiles=("main",),
    ),
    # ========================================================================
    # Intel Quick Sync (qsv)
    # ========================================================================
    "h264_qsv": EncoderSpec(
        encoder_id="h264_qsv",
        codec="h264",
        backend="qsv",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(1, 51),
        pixel_formats=("nv12", "qsv"),
        profiles=("baseline", "main", "high"),
    ),
    "hevc_qsv": EncoderSpec(
        encoder_id="hevc_qsv",
        codec="hevc",
        backend="qsv",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(1, 51),
        pixel_formats=("nv12", "p010le", "qsv"),
        profiles=("main", "main10"),
        ten_bit_profiles=("main10",),
    ),
    # ========================================================================
    # VA-API (vaapi)
    # ========================================================================
    "h264_vaapi": EncoderSpec(
        encoder_id="h264_vaapi",
        codec="h264",
        backend="vaapi",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(1, 51),
        pixel_formats=("nv12", "vaapi"),
        profiles=("constrained_baseline", "main", "high"),
    ),
    "hevc_vaapi": EncoderSpec(
        encoder_id="hevc_vaapi",
        codec="hevc",
        backend="vaapi",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(1, 51),
        pixel_formats=("nv12", "p010", "vaapi"),
        profiles=("main", "main10"),
        ten_bit_profiles=("main10",),
    ),
    # ========================================================================
    # Apple VideoToolbox
    # ========================================================================
    "h264_videotoolbox": EncoderSpec(
        encoder_id="h264_videotoolbox",
        codec="h264",
        backend="videotoolbox",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(1, 100),
        pixel_formats=("yuv420p", "nv12", "videotoolbox_vld"),
        profiles=("baseline", "main", "high"),
    ),
    "hevc_videotoolbox": EncoderSpec(
        encoder_id="hevc_videotoolbox",
        codec="hevc",
        backend="videotoolbox",
        rate_controls=(RC_CQ, RC_BITRATE),
        quality_range=(1, 100),
        pixel_formats=("yuv420p", "nv12", "p010le", "videotoolbox_vld"),
        profiles=("main", "main10"),
        ten_bit_profiles=("main10",),
    ),
}


TEN_BIT_PIXEL_FORMATS = frozenset({
    "yuv420p10le", "yuv422p10le", "yuv444p10le", "yuv420p12le",
    "p010", "p010le", "yuv444p16le",
})


@dataclass(frozen=True)
class HwBackendSpec:
    """
    A hardware acceleration backend.

    init_args are emitted before the input; "{device}" is replaced with the
    configured device path. upload_filter, when set, is appended to the video
    filter chain with "{pix_fmt}" replaced by the effective pixel format.
    """

    name: str
    encoder_suffix: str
    init_args: Tuple[str, ...]
    pixel_formats: Tuple[str, ...]
    upload_filter: Optional[str] = None
    default_upload_format: str = "nv12"


HW_BACKENDS: Dict[str, HwBackendSpec] = {
    "cuda": HwBackendSpec(
        name="cuda",
        encoder_suffix="_nvenc",
        init_args=("-hwaccel", "cuda"),
        pixel_formats=("yuv420p", "nv12", "p010le", "yuv444p", "yuv444p16le", "bgr0", "cuda"),
    ),
    "qsv": HwBackendSpec(
        name="qsv",
        encoder_suffix="_qsv",
        init_args=("-hwaccel", "qsv"),
        pixel_formats=("nv12", "p010le", "qsv"),
    ),
    "vaapi": HwBackendSpec(
        name="vaapi",
        encoder_suffix="_vaapi",
        init_args=("-init_hw_device", "vaapi=va:{device}", "-filter_hw_device", "va"),
        pixel_formats=("nv12", "p010", "vaapi"),
        upload_filter="format={pix_fmt},hwupload",
    ),
    "videotoolbox": HwBackendSpec(
        name="videotoolbox",
        encoder_suffix="_videotoolbox",
        init_args=("-hwaccel", "videotoolbox"),
        pixel_formats=("yuv420p", "nv12", "p010le", "videotoolbox_vld"),
    ),
}


@dataclass(frozen=True)
class ContainerSpec:
    """An output container: muxer name and container-specific behaviour."""

    name: str
    muxer: str
    mp4_family: bool = False
    subtitle_codec: str = "copy"  # Codec used when stream-copying subtitles
    video_codecs: Tuple[str, ...] = field(default_factory=tuple)  # Empty = any


CONTAINER_REGISTRY: Dict[str, ContainerSpec] = {
    "mp4": ContainerSpec(
        name="mp4", muxer="mp4", mp4_family=True, subtitle_codec="mov_text",
        video_codecs=("h264", "hevc", "av1", "vp9"),
    ),
    "m4v": ContainerSpec(
        name="m4v", muxer="ipod", mp4_family=True, subtitle_codec="mov_text",
        video_codecs=("h264", "hevc"),
    ),
    "mov": ContainerSpec(
        name="mov", muxer="mov", mp4_family=True, subtitle_codec="mov_text",
        video_codecs=("h264", "hevc"),
    ),
    "mkv": ContainerSpec(name="mkv", muxer="matroska"),
    "webm": ContainerSpec(
        name="webm", muxer="webm", subtitle_codec="webvtt",
        video_codecs=("vp9", "av1"),
    ),
    "ts": ContainerSpec(
        name="ts", muxer="mpegts", subtitle_codec="dvb_subtitle",
        video_codecs=("h264", "hevc"),
    ),
}


def get_encoder_spec(encoder_id: str) -> Optional[EncoderSpec]:
    """Look up an encoder; None if unknown."""
    return ENCODER_REGISTRY.get(encoder_id)


def get_container_spec(container: str) -> Optional[ContainerSpec]:
    """Look up a container by name (case-insensitive)."""
    return CONTAINER_REGISTRY.get(container.lower())


def backend_for_encoder(encoder_id: str) -> Optional[str]:
    """
    Infer the hardware backend from an encoder name.

    Uses the registry first, then the encoder suffix convention
    (h264_nvenc -> cuda). Returns None for software encoders.
    """
    spec = ENCODER_REGISTRY.get(encoder_id)
    if spec is not None:
        return spec.backend
    for backend in HW_BACKENDS.values():
        if encoder_id.endswith(backend.encoder_suffix):
            return backend.name
    return None


def known_backends() -> List[str]:
    return sorted(HW_BACKENDS)


def is_ten_bit(pixel_format: Optional[str]) -> bool:
    return pixel_format is not None and pixel_format in TEN_BIT_PIXEL_FORMATS
