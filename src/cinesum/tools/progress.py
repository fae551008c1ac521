"""Progress parsing for external tool output."""

import re
from collections.abc import Callable

_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+\.?\d*)")
_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")


class TimecodeProgressMonitor:
    """Monitor FFmpeg-style progress (``time=HH:MM:SS.ss``) from stderr output."""

    def __init__(self, total_duration: float, callback: Callable[[float], None] | None = None):
        self.total_duration = total_duration
        self.callback = callback
        self.current_time = 0.0

    def parse_line(self, line: str) -> float | None:
        """Parse a stderr line; returns progress as a percentage when found."""
        match = _TIME_RE.search(line)
        if match:
            hours = int(match.group(1))
            minutes = int(match.group(2))
            seconds = float(match.group(3))
            self.current_time = hours * 3600 + minutes * 60 + seconds
            progress = self.progress
            if self.callback:
                self.callback(progress)
            return progress
        return None

    @property
    def progress(self) -> float:
        """Current progress as a percentage [0, 100]."""
        if self.total_duration <= 0:
            return 0.0
        return min(100.0, self.current_time / self.total_duration * 100)


class PercentProgressMonitor:
    """Monitor ``NN%`` progress lines (tqdm bars and similar)."""

    def __init__(self, callback: Callable[[float], None] | None = None):
        self.callback = callback
        self.last = 0.0

    def parse_line(self, line: str) -> float | None:
        matches = _PERCENT_RE.findall(line)
        if not matches:
            return None
        value = float(matches[-1])
        if value > 100:
            return None
        self.last = value
        if self.callback:
            self.callback(value)
        return value

    @property
    def progress(self) -> float:
        return self.last
