"""
Command builder input and output models.

CommandSpec is the builder's only output: an ordered argument vector plus
declared output paths and pass information. It is immutable once built and
opaque to the process runner beyond "argv + outputs".
"""

from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator


class Overrides(BaseModel):
    """
    Per-job overrides applied on top of a preset.

    None means "use the preset's value".
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    quality: Optional[float] = None
    bitrate: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    encoder_preset: Optional[str] = None
    subtitle_language: Optional[str] = None
    extra_args: Tuple[str, ...] = ()

    @field_validator("width", "height")
    @classmethod
    def validate_dimensions(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("Dimensions must be positive")
        return v


class OutputTarget(BaseModel):
    """
    Where the final pass writes.

    overwrite defaults to False: the builder never emits the overwrite flag
    unless the caller explicitly asks for it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str
    overwrite: bool = False

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Output path cannot be empty")
        return v

    @property
    def directory(self) -> str:
        return str(Path(self.path).parent)

    @classmethod
    def in_directory(
        cls,
        source_path: str,
        output_dir: str,
        container: str,
        suffix: str = "",
        overwrite: bool = False,
    ) -> "OutputTarget":
        """Target named after the source: <output_dir>/<stem><suffix>.<container>."""
        stem = Path(source_path).stem
        return cls(
            path=str(Path(output_dir) / f"{stem}{suffix}.{container}"),
            overwrite=overwrite,
        )


class CommandSpec(BaseModel):
    """
    One resolved process invocation.

    Attributes:
        args: Full argument vector, argv[0] is the FFmpeg binary
        outputs: Files this invocation produces (empty for analysis passes)
        pass_index: 1-based pass number
        pass_count: 1 for single-pass, 2 for two-pass encodes
        pass_log_base: Shared pass statistics base path (two-pass only)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    args: Tuple[str, ...]
    outputs: Tuple[str, ...] = ()
    pass_index: int = 1
    pass_count: int = 1
    pass_log_base: Optional[str] = None

    @property
    def is_analysis_pass(self) -> bool:
        return self.pass_count == 2 and self.pass_index == 1

    def command_line(self) -> str:
        """Human-readable command for logs. Not shell-safe."""
        return " ".join(self.args)
