"""Per-session workspace directories."""

from __future__ import annotations

import hashlib
import logging
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

PLAN_FILE = "plan.sh"
ORIGINAL_PLAN_FILE = "plan.orig.sh"
VERSION_FILE = "version.txt"
ENVIRONMENT_FILE = "env.txt"
UNIFIED_LOG_FILE = "log.txt"
LEGACY_LOG_FILE = "run.log"
STDOUT_LOG_FILE = "stdout.log"
STDERR_LOG_FILE = "stderr.log"


def format_session_id(timestamp_ns: int) -> str:
    """Render ``timestamp_ns`` as ``YYYYMMDD/HHMMSS.NNNNNNNNN`` in local time."""

    seconds, nanos = divmod(timestamp_ns, 1_000_000_000)
    stamp = datetime.fromtimestamp(seconds)
    return f"{stamp:%Y%m%d}/{stamp:%H%M%S}.{nanos:09d}"


@dataclass(slots=True)
class Workspace:
    """Directory holding every artifact of one session."""

    session_id: str
    path: Path

    @property
    def plan_path(self) -> Path:
        return self.path / PLAN_FILE

    @property
    def original_plan_path(self) -> Path:
        return self.path / ORIGINAL_PLAN_FILE

    @property
    def version_path(self) -> Path:
        return self.path / VERSION_FILE

    @property
    def environment_path(self) -> Path:
        return self.path / ENVIRONMENT_FILE

    @property
    def log_path(self) -> Path:
        return self.path / UNIFIED_LOG_FILE

    @property
    def legacy_log_path(self) -> Path:
        return self.path / LEGACY_LOG_FILE

    @property
    def stdout_log_path(self) -> Path:
        return self.path / STDOUT_LOG_FILE

    @property
    def stderr_log_path(self) -> Path:
        return self.path / STDERR_LOG_FILE


@dataclass(frozen=True, slots=True)
class PlanFingerprint:
    """Content hash, size and modification time of a plan file."""

    digest: str
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, path: Path) -> "PlanFingerprint":
        data = Path(path).read_bytes()
        stat = Path(path).stat()
        return cls(digest=hashlib.sha256(data).hexdigest(), size=stat.st_size, mtime_ns=stat.st_mtime_ns)


class WorkspaceAllocator:
    """Create uniquely named, time-ordered workspaces under ``run_root``."""

    def __init__(self, run_root: Path, *, clock_ns: Callable[[], int] | None = None) -> None:
        self._run_root = Path(run_root)
        self._clock_ns = clock_ns or time.time_ns
        self._last_ns = 0

    @property
    def run_root(self) -> Path:
        return self._run_root

    def allocate(self) -> Workspace:
        timestamp_ns = max(self._clock_ns(), self._last_ns + 1)
        while True:
            session_id = format_session_id(timestamp_ns)
            path = self._run_root / session_id
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                path.mkdir()
            except FileExistsError:
                timestamp_ns += 1
                continue
            self._last_ns = timestamp_ns
            logger.debug("Allocated workspace", extra={"session_id": session_id})
            return Workspace(session_id=session_id, path=path)

    def discard(self, workspace: Workspace) -> None:
        """Remove ``workspace`` and its date directory when that becomes empty."""

        shutil.rmtree(workspace.path)
        parent = workspace.path.parent
        if parent != self._run_root and not any(parent.iterdir()):
            parent.rmdir()


__all__ = [
    "ENVIRONMENT_FILE",
    "LEGACY_LOG_FILE",
    "ORIGINAL_PLAN_FILE",
    "PLAN_FILE",
    "PlanFingerprint",
    "STDERR_LOG_FILE",
    "STDOUT_LOG_FILE",
    "UNIFIED_LOG_FILE",
    "VERSION_FILE",
    "Workspace",
    "WorkspaceAllocator",
    "format_session_id",
]
