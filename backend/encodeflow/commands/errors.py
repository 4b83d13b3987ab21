"""
Build-time error types.

Build errors are permanent: the same inputs always fail the same way,
so they are raised synchronously from submission and never retried.
"""


class BuildError(Exception):
    """Base exception for command-build failures."""
    pass


class MappingUnresolved(BuildError):
    """Raised when a stream reference does not resolve against the source."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Mapping '{reference}' cannot be resolved: {reason}")


class IncompatibleHardwareConfig(BuildError):
    """Raised when the resolved hardware backend cannot honour the preset."""

    def __init__(self, backend: str, field: str, reason: str):
        self.backend = backend
        self.field = field
        self.reason = reason
        super().__init__(f"Incompatible hardware config for backend '{backend}' ({field}): {reason}")
