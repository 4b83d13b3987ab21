"""
Pytest configuration and shared fixtures for the encodeflow suite.

Integration tests never need FFmpeg: real child processes are Python
interpreters, and `fake_ffmpeg` is an executable script that speaks FFmpeg's
-progress protocol and is steered by its own argv.
"""

import os
import stat
import sys
import textwrap
import time
from typing import Any, Callable, Dict, Optional

import pytest

from encodeflow.commands.models import CommandSpec
from encodeflow.media.models import SourceDescriptor, StreamInfo, StreamKind
from encodeflow.presets.models import PresetDefinition


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: spawns real child processes (Python stand-ins for FFmpeg)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (several seconds of wall time)"
    )


# =============================================================================
# Presets and sources
# =============================================================================


def _merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


BASE_PRESET: Dict[str, Any] = {
    "id": "web-h264",
    "version": 1,
    "name": "Web H.264",
    "container": "mp4",
    "video": {
        "encoder": "libx264",
        "rate_control": "crf",
        "quality": 23,
        "encoder_preset": "medium",
        "pixel_format": "yuv420p",
    },
    "audio": [{"action": "transcode", "encoder": "aac", "bitrate": "160k", "channels": 2}],
}


@pytest.fixture
def preset_data() -> Callable[..., Dict[str, Any]]:
    """Plain preset dict (deep-merged with updates)."""

    def _make(**updates) -> Dict[str, Any]:
        return _merge(BASE_PRESET, updates)

    return _make


@pytest.fixture
def make_preset(preset_data) -> Callable[..., PresetDefinition]:
    """PresetDefinition built from the base preset plus updates."""

    def _make(**updates) -> PresetDefinition:
        return PresetDefinition.model_validate(preset_data(**updates))

    return _make


@pytest.fixture
def source() -> SourceDescriptor:
    """
    Ten-second source:
        0 video h264
        1 audio eng, 2 audio fra
        3 subtitle eng, 4 subtitle spa
    """
    return SourceDescriptor(
        path="/media/in/movie.mkv",
        duration=10.0,
        format_name="matroska,webm",
        streams=(
            StreamInfo(index=0, kind=StreamKind.VIDEO, codec="h264", width=1920, height=1080),
            StreamInfo(index=1, kind=StreamKind.AUDIO, codec="ac3", channels=6, language="eng"),
            StreamInfo(index=2, kind=StreamKind.AUDIO, codec="aac", channels=2, language="fra"),
            StreamInfo(index=3, kind=StreamKind.SUBTITLE, codec="subrip", language="eng"),
            StreamInfo(index=4, kind=StreamKind.SUBTITLE, codec="subrip", language="spa"),
        ),
    )


# =============================================================================
# Child processes
# =============================================================================


PROGRESS_SCRIPT = """
import sys, time
steps = {steps}
for i in range(1, steps + 1):
    time.sleep({delay})
    sys.stdout.write("frame=%d\\nfps=25.0\\nout_time_us=%d\\nspeed=1.0x\\nprogress=continue\\n" % (i * 10, i * 10000000 // steps))
    sys.stdout.flush()
sys.stderr.write("encoder said goodbye\\n")
sys.stderr.flush()
if {exit_code} == 0:
    sys.stdout.write("progress=end\\n")
    sys.stdout.flush()
sys.exit({exit_code})
"""


@pytest.fixture
def python_spec() -> Callable[..., CommandSpec]:
    """CommandSpec running inline Python code."""

    def _make(code: str, pass_index: int = 1, pass_count: int = 1) -> CommandSpec:
        return CommandSpec(
            args=(sys.executable, "-c", textwrap.dedent(code)),
            pass_index=pass_index,
            pass_count=pass_count,
        )

    return _make


@pytest.fixture
def progress_spec(python_spec) -> Callable[..., CommandSpec]:
    """CommandSpec that reports progress over ten media seconds, then exits."""

    def _make(
        steps: int = 4,
        delay: float = 0.02,
        exit_code: int = 0,
        pass_index: int = 1,
        pass_count: int = 1,
    ) -> CommandSpec:
        code = PROGRESS_SCRIPT.format(steps=steps, delay=delay, exit_code=exit_code)
        return python_spec(code, pass_index=pass_index, pass_count=pass_count)

    return _make


@pytest.fixture
def sleeper_spec(python_spec) -> Callable[..., CommandSpec]:
    """CommandSpec that runs until killed, optionally with a child of its own."""

    def _make(with_child: bool = False, pid_file: Optional[str] = None) -> CommandSpec:
        lines = ["import subprocess, sys, time"]
        if with_child:
            lines.append(
                "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(120)'])"
            )
            if pid_file:
                lines.append(f"open({pid_file!r}, 'w').write(str(child.pid))")
        lines += [
            "sys.stdout.write('progress=continue\\n')",
            "sys.stdout.flush()",
            "time.sleep(120)",
        ]
        return python_spec("\n".join(lines))

    return _make


FAKE_FFMPEG = """#!{python}
import sys, time

args = sys.argv[1:]


def opt(name, default):
    if name in args:
        return args[args.index(name) + 1]
    return default


exit_code = int(opt("-fake_exit", "0"))
steps = int(opt("-fake_steps", "4"))
delay = float(opt("-fake_delay", "0.02"))
duration_us = 10000000
for i in range(1, steps + 1):
    time.sleep(delay)
    sys.stdout.write("frame=%d\\nfps=25.0\\nout_time_us=%d\\nspeed=1.0x\\nprogress=continue\\n" % (i * 10, duration_us * i // steps))
    sys.stdout.flush()
if exit_code:
    sys.stderr.write("Conversion failed!\\n")
    sys.exit(exit_code)
output = args[-1]
if output != "-":
    with open(output, "wb") as f:
        f.write(b"fake")
sys.stdout.write("progress=end\\n")
sys.stdout.flush()
"""


@pytest.fixture
def fake_ffmpeg(tmp_path) -> str:
    """
    Executable FFmpeg stand-in.

    Steered by extra args: -fake_exit N, -fake_steps N, -fake_delay S.
    Writes the last argument as the output file on success.
    """
    path = tmp_path / "fake-ffmpeg"
    path.write_text(FAKE_FFMPEG.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


# =============================================================================
# Helpers
# =============================================================================


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    """Poll predicate until it holds or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def pid_alive(pid: int) -> bool:
    """True if pid exists and is not a zombie."""
    import psutil

    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


@pytest.fixture
def wait_for():
    return wait_until


@pytest.fixture
def is_alive():
    return pid_alive


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Engine settings must not leak in from the developer's environment."""
    for key in list(os.environ):
        if key.startswith("ENCODEFLOW_"):
            monkeypatch.delenv(key, raising=False)
