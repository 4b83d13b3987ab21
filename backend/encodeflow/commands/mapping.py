"""
Stream reference parsing and resolution.

A stream reference uses FFmpeg's specifier shape: input:type[:index][?]
Parsing is structural (used by the validator). Resolution happens at build
time against a SourceDescriptor's concrete stream indices.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from ..media.models import SourceDescriptor, StreamInfo, StreamKind
from ..presets.models import PresetDefinition, SubtitleAction, SubtitleRule
from .errors import MappingUnresolved

logger = logging.getLogger(__name__)


STREAM_REF_PATTERN = re.compile(r"^(\d+):([vast])(?::(\d+))?(\?)?$")


@dataclass(frozen=True)
class StreamRef:
    """A parsed stream reference."""

    text: str
    input_index: int
    kind: StreamKind
    relative_index: Optional[int]  # None selects every stream of the kind
    optional: bool = False


def parse_stream_ref(text: str) -> StreamRef:
    """
    Parse a reference such as "0:a:1" or "0:s?".

    Raises:
        ValueError: Malformed reference
    """
    match = STREAM_REF_PATTERN.match(text.strip())
    if not match:
        raise ValueError(f"Malformed stream reference: {text!r} (expected input:type[:index][?])")
    input_index, letter, relative, optional = match.groups()
    return StreamRef(
        text=text.strip(),
        input_index=int(input_index),
        kind=StreamKind.from_letter(letter),
        relative_index=int(relative) if relative is not None else None,
        optional=optional is not None,
    )


def resolve_ref(ref: StreamRef, source: SourceDescriptor) -> List[StreamInfo]:
    """
    Resolve one reference to concrete streams.

    Raises:
        MappingUnresolved: The referenced stream does not exist and the
            reference is not optional
    """
    if ref.input_index != 0:
        if ref.optional:
            return []
        raise MappingUnresolved(ref.text, f"input {ref.input_index} does not exist (single-input jobs)")

    if ref.relative_index is None:
        return source.streams_of(ref.kind)

    stream = source.stream_at(ref.kind, ref.relative_index)
    if stream is None:
        if ref.optional:
            return []
        available = len(source.streams_of(ref.kind))
        raise MappingUnresolved(
            ref.text,
            f"source has {available} {ref.kind.value} stream(s)",
        )
    return [stream]


def resolve_single(text: str, source: SourceDescriptor) -> StreamInfo:
    """
    Resolve a reference that must name exactly one stream ({map:<ref>} tokens).

    Raises:
        MappingUnresolved: Malformed, missing, or ambiguous reference
    """
    try:
        ref = parse_stream_ref(text)
    except ValueError as e:
        raise MappingUnresolved(text, str(e))
    streams = resolve_ref(ref, source)
    if len(streams) != 1:
        raise MappingUnresolved(text, f"expected exactly one stream, found {len(streams)}")
    return streams[0]


def select_subtitle_streams(
    source: SourceDescriptor,
    rule: SubtitleRule,
    language: Optional[str] = None,
) -> List[StreamInfo]:
    """
    Apply the preferred-language policy to the source's subtitle streams.

    With no preferred language every subtitle stream is selected.
    With a preferred language, matching streams are selected; if none
    match, the first stream is used when fallback_to_first is set.
    """
    subtitles = source.streams_of(StreamKind.SUBTITLE)
    preferred = (language or rule.preferred_language or "").lower()
    if not preferred:
        return subtitles
    matching = [s for s in subtitles if (s.language or "").lower() == preferred]
    if matching:
        return matching
    if rule.fallback_to_first and subtitles:
        return subtitles[:1]
    return []


def select_burn_in_stream(
    source: SourceDescriptor,
    rule: SubtitleRule,
    language: Optional[str] = None,
) -> Optional[StreamInfo]:
    """The single subtitle stream to render into the video, if any."""
    candidates = select_subtitle_streams(source, rule, language)
    return candidates[0] if candidates else None


def resolve_mapping(
    preset: PresetDefinition,
    source: SourceDescriptor,
    subtitle_language: Optional[str] = None,
) -> List[StreamInfo]:
    """
    Resolve the preset's mapping to an ordered, de-duplicated stream list.

    Explicit mappings are authoritative. The default mapping is: first
    video stream, every audio stream, then subtitles selected by the
    subtitle rule when it copies them.

    Raises:
        MappingUnresolved: A non-optional reference does not resolve
    """
    resolved: List[StreamInfo] = []
    seen = set()

    def _add(streams: List[StreamInfo]) -> None:
        for stream in streams:
            if stream.index not in seen:
                seen.add(stream.index)
                resolved.append(stream)

    if preset.mapping.streams:
        for text in preset.mapping.streams:
            try:
                ref = parse_stream_ref(text)
            except ValueError as e:
                raise MappingUnresolved(text, str(e))
            _add(resolve_ref(ref, source))
        return resolved

    _add(source.streams_of(StreamKind.VIDEO)[:1])
    _add(source.streams_of(StreamKind.AUDIO))
    if preset.subtitles.action == SubtitleAction.COPY:
        _add(select_subtitle_streams(source, preset.subtitles, subtitle_language))

    logger.debug(
        f"[Mapping] Default mapping for {source.path}: "
        f"{[f'0:{s.index}' for s in resolved]}"
    )
    return resolved
