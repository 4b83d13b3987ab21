"""
FFmpeg -progress parsing.

FFmpeg writes key=value blocks to the progress channel, each block
terminated by a progress=continue or progress=end line:

    frame=240
    fps=48.00
    out_time_us=10000000
    out_time_ms=10000000
    out_time=00:00:10.000000
    speed=1.92x
    progress=continue

We parse:
- out_time_us / out_time_ms / out_time -> elapsed media time of the current pass
  (out_time_ms is microseconds despite its name)
- Compare against the source duration -> fraction of the pass
- Combine passes -> overall fraction, never decreasing, clamped to [0, 1]
- Media seconds per wall second, smoothed with an EMA -> rate and ETA
"""

import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


LINE_PATTERN = re.compile(r"^([a-z0-9_]+)=(.*)$")
OUT_TIME_PATTERN = re.compile(r"^(-)?(\d+):(\d{2}):(\d{2}(?:\.\d+)?)$")


@dataclass(frozen=True)
class ProgressSample:
    """
    One decoded progress block.

    fraction is overall completion across all passes. rate is media seconds
    encoded per wall-clock second. eta_seconds is None until at least two
    samples have been observed.
    """

    fraction: float
    media_time: float
    pass_index: int
    pass_count: int
    rate: Optional[float] = None
    eta_seconds: Optional[float] = None
    frame: Optional[int] = None
    fps: Optional[float] = None
    speed: Optional[float] = None
    ended: bool = False


def is_progress_line(line: Optional[str]) -> bool:
    """True if the line follows the key=value progress grammar."""
    return bool(line) and LINE_PATTERN.match(line.strip()) is not None


def _parse_out_time(block: Dict[str, str]) -> Optional[float]:
    """
    Elapsed media seconds from a block. None when absent or malformed.

    Negative values (reported before the first frame) count as zero.
    """
    for key in ("out_time_us", "out_time_ms"):
        if key in block:
            try:
                return max(0.0, int(block[key]) / 1_000_000)
            except ValueError:
                return None
    if "out_time" in block:
        match = OUT_TIME_PATTERN.match(block["out_time"])
        if not match:
            return None
        negative, hours, minutes, seconds = match.groups()
        if negative:
            return 0.0
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    return None


def _optional_number(value: Optional[str], cast: Callable = float):
    """Auxiliary fields are best-effort: garbage becomes None."""
    if value is None:
        return None
    try:
        return cast(value.strip().rstrip("x"))
    except ValueError:
        return None


class ProgressParser:
    """
    Stateful decoder of one job's progress channel.

    Usage:
        parser = ProgressParser(duration=source.duration, pass_count=2)
        parser.start_pass(1)
        for line in progress_lines:
            sample = parser.feed(line)
            if sample:
                publish(sample)
    """

    def __init__(
        self,
        duration: float,
        pass_count: int = 1,
        ema_alpha: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0 < ema_alpha <= 1:
            raise ValueError("ema_alpha must be in (0, 1]")
        self.duration = max(0.0, duration)
        self.pass_count = max(1, pass_count)
        self.ema_alpha = ema_alpha
        self._clock = clock

        self._pass_index = 1
        self._block: Dict[str, str] = {}
        self._fraction = 0.0
        self._rate: Optional[float] = None
        self._samples = 0
        # (wall time, overall media seconds) of the previous sample in this pass
        self._last_point: Optional[tuple] = None

    @property
    def fraction(self) -> float:
        return self._fraction

    @property
    def samples_seen(self) -> int:
        return self._samples

    def start_pass(self, pass_index: int) -> None:
        """Begin a new pass. Fraction and rate carry over; timing restarts."""
        if not 1 <= pass_index <= self.pass_count:
            raise ValueError(f"pass_index must be in [1, {self.pass_count}]")
        if pass_index != self._pass_index:
            self._last_point = None
        self._pass_index = pass_index
        self._block = {}

    def feed(self, line: str) -> Optional[ProgressSample]:
        """
        Consume one raw progress line.

        Returns a ProgressSample when the line completes a block with a
        usable time marker, None otherwise (including malformed input).
        """
        match = LINE_PATTERN.match(line.strip())
        if not match:
            return None
        key, value = match.group(1), match.group(2).strip()
        if key != "progress":
            self._block[key] = value
            return None

        block, self._block = self._block, {}
        ended = value == "end"
        media_time = _parse_out_time(block)
        if media_time is None and not ended:
            return None
        if media_time is None:
            media_time = self.duration
        return self._sample(block, media_time, ended)

    def _sample(self, block: Dict[str, str], media_time: float, ended: bool) -> ProgressSample:
        if ended:
            pass_fraction = 1.0
        elif self.duration > 0:
            pass_fraction = min(1.0, media_time / self.duration)
        else:
            pass_fraction = 0.0

        overall = (self._pass_index - 1 + pass_fraction) / self.pass_count
        self._fraction = max(self._fraction, min(1.0, max(0.0, overall)))

        # Rate over the whole job's media timeline, so it survives pass changes
        media_total = (self._pass_index - 1) * self.duration + min(media_time, self.duration or media_time)
        now = self._clock()
        if self._last_point is not None:
            last_wall, last_media = self._last_point
            elapsed = now - last_wall
            advanced = media_total - last_media
            if elapsed > 0 and advanced >= 0:
                instant = advanced / elapsed
                if self._rate is None:
                    self._rate = instant
                else:
                    self._rate = self.ema_alpha * instant + (1 - self.ema_alpha) * self._rate
        if self._last_point is None or media_total >= self._last_point[1]:
            self._last_point = (now, media_total)
        self._samples += 1

        return ProgressSample(
            fraction=self._fraction,
            media_time=media_time,
            pass_index=self._pass_index,
            pass_count=self.pass_count,
            rate=self._rate,
            eta_seconds=self._eta(),
            frame=_optional_number(block.get("frame"), int),
            fps=_optional_number(block.get("fps")),
            speed=_optional_number(block.get("speed")),
            ended=ended,
        )

    def _eta(self) -> Optional[float]:
        if self._samples < 2:
            return None
        if self._fraction >= 1.0:
            return 0.0
        if not self._rate or self.duration <= 0:
            return None
        return (1.0 - self._fraction) * self.duration * self.pass_count / self._rate


def format_eta(eta_seconds: Optional[float]) -> str:
    """
    Compact ETA for progress lines: "--" while unknown, else 42s, 2m05s or 1h02m.
    """
    if eta_seconds is None:
        return "--"
    total = max(0, int(round(eta_seconds)))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{seconds:02d}s"
    return f"{seconds}s"
