"""
Source media descriptors and the probe collaborator.
"""

from .errors import ProbeError, ProbeFailedError, ProbeToolNotFoundError
from .models import HdrMetadata, SourceDescriptor, StreamInfo, StreamKind
from .probe import FFprobeProbe, ProbeService

__all__ = [
    "ProbeError",
    "ProbeFailedError",
    "ProbeToolNotFoundError",
    "HdrMetadata",
    "SourceDescriptor",
    "StreamInfo",
    "StreamKind",
    "FFprobeProbe",
    "ProbeService",
]
