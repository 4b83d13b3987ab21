"""
Preset model, validation and registry.

Presets are pure data: building them performs no I/O and has no side effects.
"""

from .errors import (
    DuplicatePresetError,
    PresetNotFoundError,
    PresetValidationError,
    ValidationIssue,
)
from .models import (
    AudioAction,
    AudioRule,
    HwAccelHint,
    HwAccelMode,
    PresetDefinition,
    RateControlMode,
    SubtitleAction,
    SubtitleRule,
    TrackMapping,
    VideoConfig,
)
from .validator import load_preset, require_valid, validate_preset
from .registry import PresetRegistry

__all__ = [
    "DuplicatePresetError",
    "PresetNotFoundError",
    "PresetValidationError",
    "ValidationIssue",
    "AudioAction",
    "AudioRule",
    "HwAccelHint",
    "HwAccelMode",
    "PresetDefinition",
    "RateControlMode",
    "SubtitleAction",
    "SubtitleRule",
    "TrackMapping",
    "VideoConfig",
    "load_preset",
    "require_valid",
    "validate_preset",
    "PresetRegistry",
]
