"""
Probe-specific error types.

Probing is an external collaborator; these errors surface before any job
exists and never reach the scheduler.
"""


class ProbeError(Exception):
    """Base exception for probe failures."""
    pass


class ProbeToolNotFoundError(ProbeError):
    """Raised when the ffprobe binary cannot be located."""

    def __init__(self, binary: str):
        self.binary = binary
        super().__init__(f"ffprobe not found: {binary}")


class ProbeFailedError(ProbeError):
    """Raised when ffprobe runs but cannot describe the file."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Probe failed for {path}: {reason}")
