"""
Probe collaborator.

The orchestration core depends only on the ProbeService protocol.
FFprobeProbe is the stock implementation: one read-only ffprobe call
per file, JSON output parsed into a SourceDescriptor.
"""

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Protocol

from .errors import ProbeFailedError, ProbeToolNotFoundError
from .models import SourceDescriptor

logger = logging.getLogger(__name__)


class ProbeService(Protocol):
    """Anything that can describe a media file."""

    def probe(self, path: str) -> SourceDescriptor:
        ...


class FFprobeProbe:
    """
    ffprobe-backed probe service.

    Usage:
        probe = FFprobeProbe()
        source = probe.probe("/media/movie.mkv")
    """

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_seconds: float = 60.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_seconds = timeout_seconds
        self._resolved: Optional[str] = None

    def _binary(self) -> str:
        if self._resolved is None:
            resolved = shutil.which(self.ffprobe_path)
            if resolved is None:
                raise ProbeToolNotFoundError(self.ffprobe_path)
            self._resolved = resolved
        return self._resolved

    def probe(self, path: str) -> SourceDescriptor:
        """
        Describe one file.

        Raises:
            ProbeToolNotFoundError: ffprobe is not installed
            ProbeFailedError: ffprobe failed or returned unusable output
        """
        absolute = str(Path(path).resolve())
        cmd = [
            self._binary(),
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            absolute,
        ]
        logger.debug(f"[Probe] {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            raise ProbeFailedError(absolute, f"ffprobe timed out after {self.timeout_seconds}s")
        except OSError as e:
            raise ProbeFailedError(absolute, str(e))

        if result.returncode != 0:
            reason = result.stderr.strip() or f"ffprobe exited with code {result.returncode}"
            raise ProbeFailedError(absolute, reason)

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProbeFailedError(absolute, f"invalid ffprobe JSON: {e}")

        if not data.get("streams"):
            raise ProbeFailedError(absolute, "no streams found")

        return SourceDescriptor.from_ffprobe(data, path=absolute)
