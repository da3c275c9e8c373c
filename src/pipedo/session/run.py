"""Run-session state machine: check, plan, edit, execute, record."""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import shlex
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Sequence, TextIO

from ..collaborators import CollaboratorError, CollaboratorRunner
from ..collaborators.utils import format_environment, sanitize_environment
from ..config import PipedoSettings
from ..logs import LogPipeline, tail_lines
from ..process import ProcessGroupSupervisor
from .pointers import StatusPointer, StatusPointerStore
from .workspace import PlanFingerprint, Workspace, WorkspaceAllocator

logger = logging.getLogger(__name__)

EXIT_CANCELED = 3
PIPE_LIMIT = 1024 * 1024
DRAIN_TIMEOUT = 10.0


class SessionState(str, Enum):
    CHECKING = "CHECKING"
    PLANNING = "PLANNING"
    EDITING = "EDITING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    ABORTED = "ABORTED"
    SATISFIED = "SATISFIED"
    CANCELED = "CANCELED"


class SessionError(RuntimeError):
    """Base class for errors that abort a session before its plan runs."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class PlanningError(SessionError):
    """Raised when the plan or its snapshots cannot be produced."""


@dataclass(slots=True)
class SessionResult:
    state: SessionState
    exit_code: int
    workspace: Workspace | None = None


def strip_plan_metadata(text: str) -> str:
    """Drop the planner's leading metadata line."""

    _, _, body = text.partition("\n")
    if body and not body.endswith("\n"):
        body += "\n"
    return body


def signal_exit_code(signum: int) -> int:
    return 128 + signum


def newest_done_at(app_home: Path, targets: Iterable[str], pattern: str) -> datetime | None:
    """Return the newest modification time among files matching ``pattern`` for any target.

    Target names are matched literally and may be absolute; empty names match
    nothing. Matches that cannot be inspected, such as dangling symlinks, are
    skipped.
    """

    newest: float | None = None
    for target in targets:
        if not target:
            continue
        for match in glob.glob(pattern.format(target=glob.escape(target)), root_dir=app_home):
            try:
                mtime = os.stat(os.path.join(app_home, match)).st_mtime
            except OSError:
                continue
            if newest is None or mtime > newest:
                newest = mtime
    return datetime.fromtimestamp(newest) if newest is not None else None


class RunSession:
    """Drive one invocation from the done check through plan execution."""

    def __init__(
        self,
        targets: Sequence[str],
        settings: PipedoSettings,
        *,
        collaborators: CollaboratorRunner | None = None,
        supervisor: ProcessGroupSupervisor | None = None,
        pointers: StatusPointerStore | None = None,
        allocator: WorkspaceAllocator | None = None,
        pipeline: LogPipeline | None = None,
        interactive: bool | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        cwd: Path | None = None,
    ) -> None:
        run_root = settings.resolved_run_root
        self.targets = list(targets)
        self.settings = settings
        self._collaborators = collaborators or CollaboratorRunner.from_settings(settings)
        self._supervisor = supervisor or ProcessGroupSupervisor.from_settings(settings)
        self._pointers = pointers or StatusPointerStore(run_root)
        self._allocator = allocator or WorkspaceAllocator(run_root)
        self._stdout = stdout if stdout is not None else sys.stdout
        self._stderr = stderr if stderr is not None else sys.stderr
        self._pipeline = pipeline or LogPipeline(display=self._stdout)
        self._interactive = interactive
        self._cwd = Path(cwd) if cwd is not None else Path.cwd()
        self._state = SessionState.CHECKING
        self._plan_env: dict[str, str] = {}

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s -> %s", self._state.value, state.value)
        self._state = state

    async def run(self) -> SessionResult:
        """Run the session and return its terminal state and exit code.

        Raises ``CollaboratorError`` or ``SessionError`` when the session
        aborts before its plan starts.
        """

        self._transition(SessionState.CHECKING)
        if await self._check():
            self._transition(SessionState.SATISFIED)
            return SessionResult(SessionState.SATISFIED, 0)

        workspace = await self._prepare()
        if self._should_edit():
            if not await self._edit(workspace):
                return SessionResult(SessionState.CANCELED, EXIT_CANCELED)
        self._reconcile(workspace)
        return await self._execute(workspace)

    async def _check(self) -> bool:
        result = await self._collaborators.done(self.targets)
        if not result.ok:
            return False
        if self.settings.verbosity > 0:
            done_at = newest_done_at(self.settings.app_home, self.targets, self.settings.done_marker_pattern)
            when = f" at {done_at:%Y-%m-%d %H:%M:%S}" if done_at is not None else ""
            print(f"All done{when}: {' '.join(self.targets)}", file=self._stdout)
        return True

    async def _prepare(self) -> Workspace:
        self._transition(SessionState.PLANNING)
        workspace = self._allocator.allocate()
        logger.info("Planning %s in %s", " ".join(self.targets), workspace.path)

        result = await self._collaborators.plan(self.targets)
        if not result.ok:
            detail = result.stderr.strip() or "no output"
            raise PlanningError(
                f"planner exited with code {result.returncode}: {detail}",
                exit_code=result.returncode if result.returncode > 0 else 1,
            )

        version = await self._version()
        self._plan_env = sanitize_environment(
            {
                "PIPEDO_APP": str(self.settings.app_home),
                "PIPEDO_RUN_DIR": str(workspace.path),
                "PIPEDO_RUN_ID": workspace.session_id,
                "PIPEDO_PWD": str(self._cwd),
            }
        )
        plan_text = strip_plan_metadata(result.stdout)
        try:
            workspace.plan_path.write_text(plan_text, encoding="utf-8")
            workspace.original_plan_path.write_text(plan_text, encoding="utf-8")
            workspace.version_path.write_text(version, encoding="utf-8")
            workspace.environment_path.write_text(format_environment(self._plan_env), encoding="utf-8")
        except OSError as exc:
            raise PlanningError(f"cannot write session files in {workspace.path}: {exc}") from exc
        return workspace

    async def _version(self) -> str:
        try:
            result = await self._collaborators.version()
        except (CollaboratorError, OSError) as exc:
            logger.warning("Version unavailable: %s", exc)
            return ""
        if not result.ok:
            logger.warning("Version unavailable: reporter exited with code %d", result.returncode)
            return ""
        return result.stdout

    def _should_edit(self) -> bool:
        if not self.settings.edit_plan or not self.settings.editor:
            return False
        if self._interactive is not None:
            return self._interactive
        return sys.stdin.isatty() and sys.stdout.isatty()

    async def _edit(self, workspace: Workspace) -> bool:
        """Open the plan in the editor; return False (after discarding the workspace) if it was left unchanged."""

        self._transition(SessionState.EDITING)
        before = PlanFingerprint.of(workspace.plan_path)
        command = [*shlex.split(self.settings.editor or ""), str(workspace.plan_path)]
        try:
            process = await asyncio.create_subprocess_exec(*command)
            returncode = await process.wait()
            if returncode:
                logger.info("Editor exited with code %d", returncode)
        except OSError as exc:
            logger.warning("Cannot start editor %s: %s", command[0], exc)

        try:
            after: PlanFingerprint | None = PlanFingerprint.of(workspace.plan_path)
        except FileNotFoundError:
            after = None
        if after is None or after == before:
            self._allocator.discard(workspace)
            self._transition(SessionState.CANCELED)
            print("pipedo: canceled: plan was not saved", file=self._stderr)
            return False
        return True

    def _reconcile(self, workspace: Workspace) -> None:
        original = workspace.original_plan_path
        if original.exists() and original.read_bytes() == workspace.plan_path.read_bytes():
            original.unlink()

    async def _execute(self, workspace: Workspace) -> SessionResult:
        self._transition(SessionState.RUNNING)
        workspace.plan_path.chmod(0o755)
        self._pipeline.configure_display(self.settings.verbosity, self.settings.progress_marker)
        self._pipeline.attach_persistence(workspace)

        self._pointers.set(StatusPointer.RUNNING, workspace)
        self._pointers.set(StatusPointer.LATEST, workspace)
        self._supervisor.install(asyncio.get_running_loop())
        returncode: int | None = None
        try:
            returncode = await self._run_plan(workspace)
        finally:
            self._supervisor.uninstall()
            self._pipeline.close()
            if returncode is None:
                self._pointers.remove(StatusPointer.RUNNING)
                self._pointers.set(StatusPointer.ABORTED, workspace)
                self._transition(SessionState.ABORTED)

        received = self._supervisor.received_signal
        if received is not None:
            exit_code = signal_exit_code(received)
        elif returncode < 0:
            exit_code = signal_exit_code(-returncode)
        else:
            exit_code = returncode
        failure = self._pipeline.failure
        if failure is not None and exit_code == 0:
            exit_code = 1

        self._pointers.remove(StatusPointer.RUNNING)
        if exit_code == 0:
            archived = self._pointers.record_finished(workspace)
            self._transition(SessionState.SUCCEEDED)
            logger.info("Finished %s", workspace.session_id, extra={"archived": archived})
            return SessionResult(SessionState.SUCCEEDED, 0, workspace)

        if self.settings.verbosity < 2:
            for line in tail_lines(workspace.log_path, self.settings.log_tail_lines):
                self._stderr.write(line)
        if failure is not None:
            print(f"pipedo: error: session log is incomplete: {failure}", file=self._stderr)
        print(
            f"pipedo: error: {workspace.session_id} failed with exit code {exit_code} "
            f"(log: {workspace.log_path})",
            file=self._stderr,
        )
        self._pointers.set(StatusPointer.ABORTED, workspace)
        self._transition(SessionState.ABORTED)
        return SessionResult(SessionState.ABORTED, exit_code, workspace)

    async def _run_plan(self, workspace: Workspace) -> int:
        if self._supervisor.received_signal is not None:
            return -self._supervisor.received_signal
        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.plan_shell,
                str(workspace.plan_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.settings.app_home),
                env=self._plan_env or None,
                start_new_session=True,
                limit=PIPE_LIMIT,
            )
        except OSError as exc:
            self._pipeline.emit("stderr", f"pipedo: cannot execute plan: {exc}")
            return 127

        self._supervisor.track_group(process.pid)
        drain = asyncio.ensure_future(self._pipeline.drain(process.stdout, process.stderr))
        try:
            return await process.wait()
        finally:
            await self._supervisor.cleanup()
            try:
                await asyncio.wait_for(drain, timeout=DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Plan output still open after cleanup; log may be incomplete")


__all__ = [
    "EXIT_CANCELED",
    "PlanningError",
    "RunSession",
    "SessionError",
    "SessionResult",
    "SessionState",
    "newest_done_at",
    "signal_exit_code",
    "strip_plan_metadata",
]
