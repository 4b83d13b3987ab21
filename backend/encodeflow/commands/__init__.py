"""
Command building: presets resolved into FFmpeg argument vectors.
"""

from .errors import BuildError, IncompatibleHardwareConfig, MappingUnresolved
from .models import CommandSpec, OutputTarget, Overrides
from .tokens import TOKEN_TABLE, TokenError
from .builder import build_commands, pass_log_base, resolve_hw_backend

__all__ = [
    "BuildError",
    "IncompatibleHardwareConfig",
    "MappingUnresolved",
    "CommandSpec",
    "OutputTarget",
    "Overrides",
    "TOKEN_TABLE",
    "TokenError",
    "build_commands",
    "pass_log_base",
    "resolve_hw_backend",
]
