"""Fan the plan's output into the terminal display and the persisted session logs."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, TextIO

from .transforms import DEFAULT_PROGRESS_MARKER, DisplayFilter, LineSink, Timestamper

if TYPE_CHECKING:
    from ..session.workspace import Workspace

logger = logging.getLogger(__name__)


class LogPipelineError(RuntimeError):
    """Raised when the session log files cannot be set up."""


class LogPipeline:
    """Compose the stream transformers for one plan execution.

    Every line read from the plan goes through three stages, outermost first:

    1. the timestamper, which appends the raw line to ``stdout.log`` or
       ``stderr.log`` depending on the stream it came from;
    2. the unified tee, which appends the line to ``log.txt``;
    3. the display filter, which decides whether the line reaches the terminal.

    The display level therefore never changes what is persisted.
    """

    def __init__(
        self,
        *,
        display: TextIO | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._display: TextIO | None = display if display is not None else sys.stdout
        self._timestamper = Timestamper(clock)
        self._filter = DisplayFilter(0)
        self._unified: LineSink | None = None
        self._streams: dict[str, LineSink] = {}
        self._failure: LogPipelineError | None = None

    @property
    def failure(self) -> LogPipelineError | None:
        """The persistence error that stopped logging, if any."""

        return self._failure

    @property
    def display_filter(self) -> DisplayFilter:
        return self._filter

    def configure_display(self, level: int, marker: str = DEFAULT_PROGRESS_MARKER) -> None:
        self._filter = DisplayFilter(level, marker)

    def attach_persistence(self, workspace: "Workspace") -> None:
        """Open the unified and per-stream logs inside ``workspace`` and create the legacy alias."""

        created: list[Path] = []
        try:
            self._unified = LineSink(workspace.log_path)
            created.append(workspace.log_path)
            for name, path in (("stdout", workspace.stdout_log_path), ("stderr", workspace.stderr_log_path)):
                self._streams[name] = LineSink(path)
                created.append(path)
            alias = workspace.legacy_log_path
            if alias.is_symlink() or alias.exists():
                alias.unlink()
            os.symlink(workspace.log_path.name, alias)
        except OSError as exc:
            self.close()
            for path in created:
                path.unlink(missing_ok=True)
            raise LogPipelineError(f"Cannot create session logs in {workspace.path}: {exc}") from exc
        logger.debug("Attached session logs", extra={"workspace": str(workspace.path)})

    def emit(self, stream: str, line: str) -> None:
        """Push one line from ``stream`` ("stdout" or "stderr") through every stage.

        Raises ``LogPipelineError`` when a session log cannot be written. A
        terminal that stops accepting output is dropped and the session logs
        keep recording.
        """

        if not line.endswith("\n"):
            line += "\n"
        try:
            sink = self._streams.get(stream)
            if sink is not None:
                sink.write(self._timestamper(line))
            if self._unified is not None:
                self._unified.write(line)
        except OSError as exc:
            raise LogPipelineError(f"Cannot write session log: {exc}") from exc
        self._show(line)

    def _show(self, line: str) -> None:
        if self._display is None:
            return
        shown = self._filter(line)
        if shown is None:
            return
        try:
            self._display.write(shown)
            self._display.flush()
        except (OSError, ValueError) as exc:
            logger.warning("Terminal output closed (%s); recording to session logs only", exc)
            self._display = None

    def _deliver(self, stream: str, raw: bytes) -> None:
        if self._failure is not None:
            return
        try:
            self.emit(stream, raw.decode("utf-8", errors="replace"))
        except LogPipelineError as exc:
            self._failure = exc
            logger.error("%s; discarding further plan output", exc)

    async def pump(self, stream: str, reader: asyncio.StreamReader) -> None:
        """Read ``reader`` to end of file, one line at a time.

        A line longer than the reader's buffer limit is emitted in pieces. The
        stream is read to the end even after a log write failed, so the plan
        never blocks on a full pipe.
        """

        while True:
            at_eof = False
            try:
                raw = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                raw, at_eof = exc.partial, True
            except asyncio.LimitOverrunError as exc:
                raw = await reader.read(exc.consumed)
            if raw:
                self._deliver(stream, raw)
            if at_eof:
                break

    async def drain(self, stdout: asyncio.StreamReader, stderr: asyncio.StreamReader) -> None:
        """Consume both plan streams until they reach end of file."""

        await asyncio.gather(self.pump("stdout", stdout), self.pump("stderr", stderr))

    def close(self) -> None:
        if self._unified is not None:
            self._unified.close()
            self._unified = None
        for sink in self._streams.values():
            sink.close()
        self._streams.clear()


def tail_lines(path: Path, count: int) -> list[str]:
    """Return the last ``count`` lines of ``path`` (empty when the file is missing)."""

    if count <= 0:
        return []
    try:
        with Path(path).open("r", encoding="utf-8", errors="replace") as handle:
            return list(deque(handle, maxlen=count))
    except FileNotFoundError:
        return []


__all__ = ["LogPipeline", "LogPipelineError", "tail_lines"]
