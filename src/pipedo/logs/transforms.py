"""Line-oriented stream transformers used by the log pipeline."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, TextIO

DEFAULT_PROGRESS_MARKER = "## done: "
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


class DisplayFilter:
    """Decide which lines of the combined stream reach the terminal.

    Level 0 shows nothing, level 1 shows only progress lines (with the marker
    stripped) and level 2 or higher shows every line.
    """

    def __init__(self, level: int, marker: str = DEFAULT_PROGRESS_MARKER) -> None:
        if level < 0:
            raise ValueError("display level must be >= 0")
        self.level = level
        self.marker = marker

    def __call__(self, line: str) -> str | None:
        if self.level <= 0:
            return None
        if self.level == 1:
            if self.marker and line.startswith(self.marker):
                return line[len(self.marker):]
            return None
        return line


class Timestamper:
    """Prefix each line with the time it was captured."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or datetime.now

    def __call__(self, line: str) -> str:
        return f"{self._clock().strftime(TIMESTAMP_FORMAT)}\t{line}"


class LineSink:
    """Append lines to a text file, flushing after each one."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._handle: TextIO | None = self.path.open("a", encoding="utf-8")

    def write(self, line: str) -> None:
        if self._handle is None:
            raise ValueError(f"sink for {self.path} is closed")
        self._handle.write(line)
        self._handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


__all__ = [
    "DEFAULT_PROGRESS_MARKER",
    "DisplayFilter",
    "LineSink",
    "TIMESTAMP_FORMAT",
    "Timestamper",
]
