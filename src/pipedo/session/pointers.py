"""Status pointers naming the running, latest, finished and aborted sessions."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .workspace import Workspace

logger = logging.getLogger(__name__)

POINTERS_FILE = "pointers.json"
LOCK_FILE = "pointers.lock"

_BACKUP_RE = re.compile(r"^FINISHED\.~(\d+)~$")


class PointerStoreError(RuntimeError):
    """Raised when the pointer coordination file cannot be read."""


class StatusPointer(str, Enum):
    RUNNING = "RUNNING"
    LATEST = "LATEST"
    FINISHED = "FINISHED"
    ABORTED = "ABORTED"


class PointerRecord(BaseModel):
    """The session a pointer refers to."""

    session_id: str = Field(..., description="Identifier of the session workspace.")
    workspace: Path = Field(..., description="Absolute path of the session workspace.")
    updated_at: datetime = Field(..., description="When the pointer was last written.")


_RECORDS = TypeAdapter(dict[str, PointerRecord])


def backup_name(index: int) -> str:
    return f"{StatusPointer.FINISHED.value}.~{index}~"


class StatusPointerStore:
    """Keep the status pointers as records in one coordination file.

    Updates rewrite ``pointers.json`` atomically while holding an exclusive
    lock on ``pointers.lock``. Sessions running concurrently still race on
    which session a pointer ends up naming.
    """

    def __init__(self, run_root: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._run_root = Path(run_root)
        self._path = self._run_root / POINTERS_FILE
        self._lock_path = self._run_root / LOCK_FILE
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._run_root.mkdir(parents=True, exist_ok=True)
        with self._lock_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self) -> dict[str, PointerRecord]:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return {}
        try:
            return _RECORDS.validate_json(raw)
        except ValidationError as exc:
            raise PointerStoreError(f"Corrupt pointer file {self._path}: {exc}") from exc

    def _save(self, records: dict[str, PointerRecord]) -> None:
        payload = {name: record.model_dump(mode="json") for name, record in records.items()}
        fd, tmp_name = tempfile.mkstemp(dir=self._run_root, prefix=".pointers.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def snapshot(self) -> dict[str, PointerRecord]:
        """Return every pointer, including FINISHED backups."""

        with self._locked():
            return self._load()

    def get(self, name: StatusPointer | str) -> PointerRecord | None:
        key = name.value if isinstance(name, StatusPointer) else str(name)
        return self.snapshot().get(key)

    def set(self, name: StatusPointer, workspace: Workspace) -> PointerRecord:
        record = PointerRecord(
            session_id=workspace.session_id,
            workspace=workspace.path.resolve(),
            updated_at=self._clock(),
        )
        with self._locked():
            records = self._load()
            records[StatusPointer(name).value] = record
            self._save(records)
        logger.debug(
            "Pointer updated",
            extra={"pointer": StatusPointer(name).value, "session_id": workspace.session_id},
        )
        return record

    def remove(self, name: StatusPointer) -> bool:
        with self._locked():
            records = self._load()
            removed = records.pop(StatusPointer(name).value, None)
            if removed is not None:
                self._save(records)
        return removed is not None

    def record_finished(self, workspace: Workspace) -> str | None:
        """Point FINISHED at ``workspace``, keeping the previous target under a numbered backup.

        Returns the backup name used, if there was a previous FINISHED pointer.
        """

        record = PointerRecord(
            session_id=workspace.session_id,
            workspace=workspace.path.resolve(),
            updated_at=self._clock(),
        )
        with self._locked():
            records = self._load()
            previous = records.get(StatusPointer.FINISHED.value)
            archived: str | None = None
            if previous is not None:
                archived = backup_name(self._next_backup_index(records))
                records[archived] = previous
            records[StatusPointer.FINISHED.value] = record
            self._save(records)
        return archived

    @staticmethod
    def _next_backup_index(records: dict[str, PointerRecord]) -> int:
        indexes = [int(match.group(1)) for match in map(_BACKUP_RE.match, records) if match]
        return max(indexes, default=0) + 1

    def finished_backups(self) -> list[tuple[str, PointerRecord]]:
        """Return the FINISHED backups, oldest first."""

        records = self.snapshot()
        backups = [
            (int(match.group(1)), name)
            for name, match in ((name, _BACKUP_RE.match(name)) for name in records)
            if match
        ]
        return [(name, records[name]) for _, name in sorted(backups)]


__all__ = [
    "POINTERS_FILE",
    "PointerRecord",
    "PointerStoreError",
    "StatusPointer",
    "StatusPointerStore",
    "backup_name",
]
