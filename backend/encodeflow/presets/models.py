"""
Preset data models.

A PresetDefinition is a versioned, declarative encoding recipe:
container, video encoder configuration, audio track rules, subtitle rule,
track mapping, extra raw arguments and a hardware-acceleration hint.

All models use Pydantic and are frozen once constructed.
Unknown fields are rejected.

Models only enforce types. Cross-field rules (rate-control consistency,
encoder/pixel-format pairing, subtitle exclusivity) live in validator.py so
that every problem can be reported at once instead of failing on the first.
"""

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class RateControlMode(str, Enum):
    """Video rate-control mode. Exactly one is active per preset."""

    CRF = "crf"  # Constant rate factor (software encoders)
    CQ = "cq"  # Constant quality (hardware encoders)
    BITRATE = "bitrate"  # Target average bitrate


class AudioAction(str, Enum):
    """What happens to one source audio stream."""

    PASSTHROUGH = "passthrough"
    TRANSCODE = "transcode"


class SubtitleAction(str, Enum):
    """What happens to subtitle streams."""

    COPY = "copy"  # Stream-copy into the output container
    BURN_IN = "burn_in"  # Render one subtitle stream into the video
    DROP = "drop"  # No subtitles in the output


class HwAccelMode(str, Enum):
    """Hardware-acceleration hint."""

    AUTO = "auto"  # Derive the backend from the encoder name
    NAMED = "named"  # Use the backend named in HwAccelHint.backend
    NONE = "none"  # Software decode, no hardware init flags


class VideoConfig(BaseModel):
    """Video encoder configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    encoder: str  # FFmpeg encoder id, e.g. "libx264", "hevc_nvenc"
    rate_control: RateControlMode
    quality: Optional[float] = None  # CRF / CQ value
    bitrate: Optional[str] = None  # e.g. "4500k", "8M"
    encoder_preset: Optional[str] = None  # Speed preset, e.g. "slow", "p5"
    pixel_format: Optional[str] = None
    profile: Optional[str] = None
    two_pass: bool = False
    filters: Tuple[str, ...] = ()  # Ordered filter chain entries
    width: Optional[int] = None
    height: Optional[int] = None


class AudioRule(BaseModel):
    """
    Rule for source audio streams.

    source_stream is the relative audio index in the source ("0:a:N").
    A rule without source_stream is the fallback for streams that have
    no dedicated rule.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    source_stream: Optional[int] = None
    action: AudioAction = AudioAction.PASSTHROUGH
    encoder: Optional[str] = None
    bitrate: Optional[str] = None
    channels: Optional[int] = None


class SubtitleRule(BaseModel):
    """Subtitle handling with a preferred-language selection policy."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    action: SubtitleAction = SubtitleAction.DROP
    preferred_language: Optional[str] = None  # ISO 639-2, e.g. "eng"
    fallback_to_first: bool = True  # Use the first stream when no language matches


class TrackMapping(BaseModel):
    """
    Source-to-output stream mapping.

    Each entry is a stream reference: input:type[:index][?]
        0:v:0   first video stream
        0:a     every audio stream
        0:s:1?  second subtitle stream, skipped if absent

    An empty mapping selects the default layout (first video, all audio,
    subtitles as decided by the subtitle rule).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    streams: Tuple[str, ...] = ()


class HwAccelHint(BaseModel):
    """Hardware acceleration hint."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: HwAccelMode = HwAccelMode.NONE
    backend: Optional[str] = None  # cuda, qsv, vaapi, videotoolbox


class PresetDefinition(BaseModel):
    """
    A versioned encoding recipe.

    Presets are identified by (id, version). Publishing a change means
    publishing a new version; an existing version never changes.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    version: int = 1
    name: str = ""
    description: str = ""
    container: str
    video: VideoConfig
    audio: Tuple[AudioRule, ...] = ()
    subtitles: SubtitleRule = Field(default_factory=SubtitleRule)
    mapping: TrackMapping = Field(default_factory=TrackMapping)
    extra_args: Tuple[str, ...] = ()
    hwaccel: HwAccelHint = Field(default_factory=HwAccelHint)

    @property
    def key(self) -> str:
        """Registry key: id@version."""
        return f"{self.id}@{self.version}"

    def audio_rule_for(self, source_stream: int) -> Optional[AudioRule]:
        """
        Pick the rule that applies to a source audio stream.

        Returns the dedicated rule if one exists, else the fallback rule,
        else None (passthrough).
        """
        fallback = None
        for rule in self.audio:
            if rule.source_stream == source_stream:
                return rule
            if rule.source_stream is None and fallback is None:
                fallback = rule
        return fallback
