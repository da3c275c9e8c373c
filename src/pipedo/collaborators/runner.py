"""Async runner for the external done-oracle, planner and version-reporter."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from .utils import sanitize_environment

logger = logging.getLogger(__name__)


class CollaboratorError(RuntimeError):
    """Base class for collaborator invocation errors."""


class CollaboratorNotFoundError(CollaboratorError):
    """Raised when a collaborator executable cannot be located."""


@dataclass(slots=True)
class CollaboratorResult:
    """Holds the outcome of a collaborator invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CollaboratorRunner:
    """Execute the collaborator commands asynchronously from the application root."""

    def __init__(
        self,
        *,
        done_command: Sequence[str],
        plan_command: Sequence[str],
        version_command: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._done_command = tuple(done_command)
        self._plan_command = tuple(plan_command)
        self._version_command = tuple(version_command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None

    @classmethod
    def from_settings(cls, settings) -> "CollaboratorRunner":
        return cls(
            done_command=settings.done_command,
            plan_command=settings.plan_command,
            version_command=settings.version_command,
            cwd=settings.app_home,
        )

    @staticmethod
    def _resolve_executable(command: Sequence[str]) -> str:
        program = command[0]
        if "/" in program:
            candidate = Path(program)
            if candidate.exists() and candidate.is_file():
                return str(candidate)
            raise CollaboratorNotFoundError(f"Collaborator executable not found at {candidate}")

        binary = shutil.which(program)
        if binary is None:
            raise CollaboratorNotFoundError(f"Collaborator executable '{program}' not found on PATH")
        return binary

    async def done(self, targets: Iterable[str]) -> CollaboratorResult:
        """Ask the done-oracle whether every target is already satisfied."""

        return await self._invoke(self._done_command, *targets)

    async def plan(self, targets: Iterable[str]) -> CollaboratorResult:
        """Ask the planner for the plan script that produces the targets."""

        return await self._invoke(self._plan_command, *targets)

    async def version(self) -> CollaboratorResult:
        return await self._invoke(self._version_command)

    async def _invoke(self, command: Sequence[str], *args: str) -> CollaboratorResult:
        cmd = [self._resolve_executable(command), *command[1:], *args]
        logger.debug("Invoking collaborator", extra={"command": cmd})
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._cwd) if self._cwd is not None else None,
            env=self._env if self._env is not None else sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CollaboratorResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeCollaboratorRunner(CollaboratorRunner):
    """Test double that answers collaborator calls from canned results."""

    def __init__(
        self,
        *,
        done: CollaboratorResult | None = None,
        plan: CollaboratorResult | None = None,
        version: CollaboratorResult | None = None,
    ) -> None:  # type: ignore[override]
        self._canned = {
            "done": done or CollaboratorResult(args=("done",), returncode=1, stdout="", stderr=""),
            "plan": plan or CollaboratorResult(args=("plan",), returncode=0, stdout="#\n", stderr=""),
            "version": version
            or CollaboratorResult(args=("version",), returncode=0, stdout="pipedo fake\n", stderr=""),
        }
        self._invocations: list[tuple[str, ...]] = []

    async def done(self, targets: Iterable[str]) -> CollaboratorResult:  # type: ignore[override]
        return self._record("done", targets)

    async def plan(self, targets: Iterable[str]) -> CollaboratorResult:  # type: ignore[override]
        return self._record("plan", targets)

    async def version(self) -> CollaboratorResult:  # type: ignore[override]
        return self._record("version", ())

    def _record(self, name: str, args: Iterable[str]) -> CollaboratorResult:
        self._invocations.append((name, *args))
        return self._canned[name]

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "CollaboratorError",
    "CollaboratorNotFoundError",
    "CollaboratorResult",
    "CollaboratorRunner",
    "FakeCollaboratorRunner",
]
