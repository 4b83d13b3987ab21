"""
Preset-specific error types.

Validation problems are collected, not raised one at a time.
PresetValidationError carries the full list of issues.
"""

from typing import List

from pydantic import BaseModel, ConfigDict


class ValidationIssue(BaseModel):
    """A single validation problem: which field, and why."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    reason: str

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


class PresetValidationError(Exception):
    """Raised when a preset is structurally or semantically invalid."""

    def __init__(self, preset_id: str, issues: List[ValidationIssue]):
        self.preset_id = preset_id
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues[:5])
        if len(self.issues) > 5:
            summary += f" (+{len(self.issues) - 5} more)"
        super().__init__(f"Preset '{preset_id}' is invalid: {summary}")


class PresetNotFoundError(Exception):
    """Raised when a preset (or preset version) does not exist in the registry."""

    def __init__(self, preset_id: str, version: int = None):
        self.preset_id = preset_id
        self.version = version
        if version is None:
            super().__init__(f"Preset not found: id={preset_id}")
        else:
            super().__init__(f"Preset not found: id={preset_id}, version={version}")


class DuplicatePresetError(Exception):
    """Raised when the same (id, version) pair is registered twice."""

    def __init__(self, preset_id: str, version: int):
        self.preset_id = preset_id
        self.version = version
        super().__init__(
            f"Preset '{preset_id}' version {version} is already registered. "
            f"Publish a new version instead of replacing an existing one."
        )
