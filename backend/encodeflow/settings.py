"""
EngineSettings: engine-wide configuration.

One immutable object holds every tunable the engine reads at start-up:
tool paths, concurrency limit, retry policy, channel sizes and process
termination grace.

Sources, later ones winning:
1. Defaults below
2. A JSON file (from_json_file)
3. ENCODEFLOW_* environment variables (from_env)

Changing the concurrency limit at runtime goes through
Orchestrator.set_concurrency_limit, not through a new settings object.
"""

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .codecs import DEFAULT_VAAPI_DEVICE

ENV_PREFIX = "ENCODEFLOW_"


class SettingsError(ValueError):
    """Invalid engine configuration."""

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid setting '{field_name}': {reason}")


def _parse_optional_float(raw: str) -> Optional[float]:
    if raw.strip().lower() in ("", "none", "null"):
        return None
    return float(raw)


@dataclass(frozen=True)
class EngineSettings:
    """
    Engine configuration.

    Attributes:
        ffmpeg_path: Encoder binary used in built commands
        ffprobe_path: Probe binary used by submit_path
        max_concurrent_jobs: Global worker slot limit
        retry_cap: Retries per job after a retryable failure
        backoff_base: First retry delay in seconds (None: retry immediately)
        backoff_factor: Delay multiplier per further retry
        backoff_max: Upper bound on any retry delay
        diagnostic_tail_lines: Trailing process output kept on failure
        event_channel_capacity: Worker to control-thread channel bound
        terminate_grace_seconds: Time a process tree gets to exit before SIGKILL
        vaapi_device: DRM render node for VAAPI encoders
        ema_alpha: Smoothing factor for the encode-rate estimate
        post_success_workers: Thread pool size for post-success handlers
    """

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    max_concurrent_jobs: int = 2
    retry_cap: int = 2
    backoff_base: Optional[float] = None
    backoff_factor: float = 2.0
    backoff_max: float = 300.0
    diagnostic_tail_lines: int = 20
    event_channel_capacity: int = 256
    terminate_grace_seconds: float = 5.0
    vaapi_device: str = DEFAULT_VAAPI_DEVICE
    ema_alpha: float = 0.3
    post_success_workers: int = 4

    def __post_init__(self):
        if self.max_concurrent_jobs < 1:
            raise SettingsError("max_concurrent_jobs", "must be >= 1")
        if self.retry_cap < 0:
            raise SettingsError("retry_cap", "must be >= 0")
        if self.backoff_base is not None and self.backoff_base < 0:
            raise SettingsError("backoff_base", "must be >= 0")
        if self.diagnostic_tail_lines < 0:
            raise SettingsError("diagnostic_tail_lines", "must be >= 0")
        if self.event_channel_capacity < 1:
            raise SettingsError("event_channel_capacity", "must be >= 1")
        if self.terminate_grace_seconds < 0:
            raise SettingsError("terminate_grace_seconds", "must be >= 0")
        if not 0.0 < self.ema_alpha <= 1.0:
            raise SettingsError("ema_alpha", "must be in (0, 1]")
        if self.post_success_workers < 1:
            raise SettingsError("post_success_workers", "must be >= 1")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EngineSettings":
        """
        Build settings from a mapping. Missing keys keep their defaults.

        Raises:
            SettingsError: Unknown key or invalid value
        """
        if not data:
            return DEFAULT_ENGINE_SETTINGS
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise SettingsError(key, "unknown setting")
        return cls(**dict(data))

    @classmethod
    def from_json_file(cls, path: Path) -> "EngineSettings":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise SettingsError(str(path), "settings file must hold a JSON object")
        return cls.from_dict(data)

    def with_updates(self, **kwargs) -> "EngineSettings":
        """Copy with some fields replaced."""
        return replace(self, **kwargs)

    def with_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Apply ENCODEFLOW_<FIELD> variables on top of these settings.

        Example: ENCODEFLOW_MAX_CONCURRENT_JOBS=4
        """
        environ = os.environ if environ is None else environ
        updates: Dict[str, Any] = {}
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = getattr(self, f.name)
            try:
                if f.name == "backoff_base":
                    updates[f.name] = _parse_optional_float(raw)
                elif isinstance(current, int):
                    updates[f.name] = int(raw)
                elif isinstance(current, float):
                    updates[f.name] = float(raw)
                else:
                    updates[f.name] = raw
            except ValueError:
                raise SettingsError(f.name, f"cannot parse {raw!r} from {ENV_PREFIX + f.name.upper()}")
        if not updates:
            return self
        return self.with_updates(**updates)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config_file: Optional[Path] = None,
    ) -> "EngineSettings":
        """
        Defaults, then config_file (or ENCODEFLOW_CONFIG), then ENCODEFLOW_* variables.
        """
        environ = os.environ if environ is None else environ
        if config_file is None and environ.get(ENV_PREFIX + "CONFIG"):
            config_file = Path(environ[ENV_PREFIX + "CONFIG"])
        base = cls.from_json_file(config_file) if config_file else DEFAULT_ENGINE_SETTINGS
        return base.with_env_overrides(environ)


DEFAULT_ENGINE_SETTINGS = EngineSettings()
