"""
Source descriptor models.

A SourceDescriptor is the read-only probe result for one input file.
It is produced by the probing collaborator and treated as opaque input
by the orchestration core: nothing here touches the filesystem.

Missing values are explicitly None. No silent guessing.
"""

from enum import Enum
from fractions import Fraction
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator


class StreamKind(str, Enum):
    """Stream type, matching FFmpeg's stream specifier letters."""

    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLE = "subtitle"
    DATA = "data"
    ATTACHMENT = "attachment"

    @property
    def letter(self) -> str:
        return {
            StreamKind.VIDEO: "v",
            StreamKind.AUDIO: "a",
            StreamKind.SUBTITLE: "s",
            StreamKind.DATA: "d",
            StreamKind.ATTACHMENT: "t",
        }[self]

    @classmethod
    def from_letter(cls, letter: str) -> "StreamKind":
        for kind in cls:
            if kind.letter == letter:
                return kind
        raise ValueError(f"Unknown stream type letter: {letter!r}")


class HdrMetadata(BaseModel):
    """Colour metadata relevant to HDR sources."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    color_transfer: Optional[str] = None  # e.g. "smpte2084", "arib-std-b67"
    color_primaries: Optional[str] = None  # e.g. "bt2020"
    color_space: Optional[str] = None  # e.g. "bt2020nc"

    @property
    def is_hdr(self) -> bool:
        return self.color_transfer in ("smpte2084", "arib-std-b67")


class StreamInfo(BaseModel):
    """One stream of a source file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int  # Absolute stream index within the input
    kind: StreamKind
    codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[str] = None  # Rational string, e.g. "24000/1001"
    bit_rate: Optional[int] = None
    channels: Optional[int] = None
    channel_layout: Optional[str] = None
    language: Optional[str] = None
    pixel_format: Optional[str] = None
    hdr: Optional[HdrMetadata] = None
    default: bool = False

    @field_validator("index")
    @classmethod
    def validate_index(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Stream index cannot be negative")
        return v


class SourceDescriptor(BaseModel):
    """
    Probe result for one input file.

    Streams are kept in absolute index order.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str
    duration: float  # Seconds; 0.0 when the probe could not determine it
    format_name: Optional[str] = None
    streams: Tuple[StreamInfo, ...] = ()

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Duration cannot be negative")
        return v

    def streams_of(self, kind: StreamKind) -> List[StreamInfo]:
        """Streams of one kind, in absolute index order."""
        return sorted(
            (s for s in self.streams if s.kind == kind),
            key=lambda s: s.index,
        )

    def stream_at(self, kind: StreamKind, relative_index: int) -> Optional[StreamInfo]:
        """
        Resolve a relative index (the N in 0:a:N) to a stream.

        Returns None when the source has no such stream.
        """
        if relative_index < 0:
            return None
        matching = self.streams_of(kind)
        if relative_index >= len(matching):
            return None
        return matching[relative_index]

    def relative_index_of(self, stream: StreamInfo) -> int:
        """Position of a stream among the streams of its kind."""
        return [s.index for s in self.streams_of(stream.kind)].index(stream.index)

    @property
    def has_video(self) -> bool:
        return bool(self.streams_of(StreamKind.VIDEO))

    @classmethod
    def from_ffprobe(cls, data: Dict[str, Any], path: str) -> "SourceDescriptor":
        """
        Build a descriptor from `ffprobe -show_format -show_streams` JSON.

        Unknown codec types become DATA streams. Unparseable numbers become None.
        """
        fmt = data.get("format") or {}
        streams = []
        for raw in data.get("streams") or []:
            codec_type = raw.get("codec_type") or "data"
            try:
                kind = StreamKind(codec_type)
            except ValueError:
                kind = StreamKind.DATA

            tags = raw.get("tags") or {}
            disposition = raw.get("disposition") or {}

            hdr = None
            if kind == StreamKind.VIDEO and any(
                raw.get(key) for key in ("color_transfer", "color_primaries", "color_space")
            ):
                hdr = HdrMetadata(
                    color_transfer=raw.get("color_transfer"),
                    color_primaries=raw.get("color_primaries"),
                    color_space=raw.get("color_space"),
                )

            streams.append(StreamInfo(
                index=int(raw.get("index", len(streams))),
                kind=kind,
                codec=raw.get("codec_name"),
                width=_to_int(raw.get("width")),
                height=_to_int(raw.get("height")),
                frame_rate=_frame_rate(raw.get("avg_frame_rate") or raw.get("r_frame_rate")),
                bit_rate=_to_int(raw.get("bit_rate")),
                channels=_to_int(raw.get("channels")),
                channel_layout=raw.get("channel_layout"),
                language=tags.get("language"),
                pixel_format=raw.get("pix_fmt"),
                hdr=hdr,
                default=bool(disposition.get("default")),
            ))

        duration = _to_float(fmt.get("duration"))
        if duration is None:
            # Fall back to the longest stream duration
            stream_durations = [
                d for d in (_to_float(raw.get("duration")) for raw in data.get("streams") or [])
                if d is not None
            ]
            duration = max(stream_durations) if stream_durations else 0.0

        return cls(
            path=path,
            duration=duration,
            format_name=fmt.get("format_name"),
            streams=tuple(sorted(streams, key=lambda s: s.index)),
        )


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        result = float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
    if result is not None and result < 0:
        return None
    return result


def _frame_rate(value: Optional[str]) -> Optional[str]:
    """Normalise "0/0" and garbage to None, keep valid rationals verbatim."""
    if not value:
        return None
    try:
        if Fraction(value) <= 0:
            return None
    except (ValueError, ZeroDivisionError):
        return None
    return value
