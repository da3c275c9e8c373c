from __future__ import annotations

import asyncio
import io
import json
import os
import signal
from datetime import datetime
from pathlib import Path

import psutil
import pytest

from pipedo.collaborators import CollaboratorResult, FakeCollaboratorRunner
from pipedo.config import PipedoSettings
from pipedo.logs import LineSink
from pipedo.process import ProcessGroupSupervisor
from pipedo.session import (
    EXIT_CANCELED,
    PlanningError,
    RunSession,
    SessionState,
    StatusPointer,
    StatusPointerStore,
)
from pipedo.session.run import newest_done_at, strip_plan_metadata


def _result(returncode: int = 0, stdout: str = "", stderr: str = "") -> CollaboratorResult:
    return CollaboratorResult(args=("fake",), returncode=returncode, stdout=stdout, stderr=stderr)


def _settings(tmp_path: Path, **overrides) -> PipedoSettings:
    values = {
        "app_home": tmp_path,
        "plan_shell": "sh",
        "escalation_initial_backoff": 0.05,
        "escalation_max_rounds": 3,
        "edit_plan": False,
        "editor": None,
        "verbosity": 1,
    }
    values.update(overrides)
    return PipedoSettings(**values)


def _session(
    tmp_path: Path,
    plan: str,
    *,
    done_rc: int = 1,
    plan_rc: int = 0,
    version: CollaboratorResult | None = None,
    interactive: bool = False,
    supervisor: ProcessGroupSupervisor | None = None,
    targets: tuple[str, ...] = ("A",),
    stdout: io.StringIO | None = None,
    **overrides,
) -> tuple[RunSession, io.StringIO, io.StringIO]:
    fake = FakeCollaboratorRunner(
        done=_result(done_rc),
        plan=_result(plan_rc, stdout="# plan metadata\n" + plan, stderr="no such target" if plan_rc else ""),
        version=version,
    )
    stdout = stdout if stdout is not None else io.StringIO()
    stderr = io.StringIO()
    session = RunSession(
        list(targets),
        _settings(tmp_path, **overrides),
        collaborators=fake,
        supervisor=supervisor,
        interactive=interactive,
        stdout=stdout,
        stderr=stderr,
        cwd=tmp_path,
    )
    return session, stdout, stderr


def _workspaces(tmp_path: Path) -> list[Path]:
    return sorted(path for path in (tmp_path / "run").glob("*/*") if path.is_dir())


def _editor(tmp_path: Path, body: str) -> str:
    script = tmp_path / "editor.sh"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return str(script)


def test_satisfied_targets_short_circuit(tmp_path: Path) -> None:
    (tmp_path / "A").write_text("done")
    session, stdout, _ = _session(tmp_path, "touch B\n", done_rc=0)

    result = asyncio.run(session.run())

    assert result.state is SessionState.SATISFIED
    assert result.exit_code == 0
    assert result.workspace is None
    assert not (tmp_path / "run").exists()
    assert stdout.getvalue().startswith("All done at ")
    assert stdout.getvalue().rstrip().endswith(": A")


def test_satisfied_summary_is_silent_at_verbosity_zero(tmp_path: Path) -> None:
    session, stdout, _ = _session(tmp_path, "", done_rc=0, verbosity=0)

    assert asyncio.run(session.run()).exit_code == 0
    assert stdout.getvalue() == ""


def test_one_step_plan_produces_target(tmp_path: Path) -> None:
    plan = "echo building A\ntouch A\necho '## done: A'\n"
    session, stdout, _ = _session(tmp_path, plan)

    result = asyncio.run(session.run())

    assert result.state is SessionState.SUCCEEDED
    assert result.exit_code == 0
    assert (tmp_path / "A").exists()
    assert _workspaces(tmp_path) == [result.workspace.path]

    workspace = result.workspace
    assert workspace.plan_path.read_text() == plan
    assert os.access(workspace.plan_path, os.X_OK)
    assert not workspace.original_plan_path.exists()
    assert workspace.version_path.read_text() == "pipedo fake\n"
    assert f"PIPEDO_RUN_ID={workspace.session_id}\n" in workspace.environment_path.read_text()
    assert "building A" in workspace.log_path.read_text()
    assert workspace.legacy_log_path.read_text() == workspace.log_path.read_text()
    assert "\tbuilding A\n" in workspace.stdout_log_path.read_text()
    assert stdout.getvalue() == "A\n"

    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.FINISHED).session_id == workspace.session_id
    assert store.get(StatusPointer.LATEST).session_id == workspace.session_id
    assert store.get(StatusPointer.RUNNING) is None
    assert store.get(StatusPointer.ABORTED) is None


def test_running_pointer_is_visible_to_the_plan(tmp_path: Path) -> None:
    plan = 'cp "$PIPEDO_APP/run/pointers.json" seen.json\necho "dir=$PIPEDO_RUN_DIR pwd=$PIPEDO_PWD"\n'
    session, _, _ = _session(tmp_path, plan)

    result = asyncio.run(session.run())

    seen = json.loads((tmp_path / "seen.json").read_text())
    assert seen["RUNNING"]["session_id"] == result.workspace.session_id
    assert seen["LATEST"]["session_id"] == result.workspace.session_id
    log = result.workspace.log_path.read_text()
    assert f"dir={result.workspace.path}" in log
    assert f"pwd={tmp_path}" in log


def test_repeated_successes_keep_finished_history(tmp_path: Path) -> None:
    finished = []
    for _ in range(3):
        session, _, _ = _session(tmp_path, "true\n")
        finished.append(asyncio.run(session.run()).workspace.session_id)

    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.FINISHED).session_id == finished[-1]
    assert [record.session_id for _, record in store.finished_backups()] == finished[:-1]
    assert len(_workspaces(tmp_path)) == 3


def test_failed_plan_is_recorded_as_aborted(tmp_path: Path) -> None:
    session, _, stderr = _session(tmp_path, "echo step one\necho broken >&2\nexit 5\n")

    result = asyncio.run(session.run())

    assert result.state is SessionState.ABORTED
    assert result.exit_code == 5
    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.ABORTED).session_id == result.workspace.session_id
    assert store.get(StatusPointer.RUNNING) is None
    assert store.get(StatusPointer.FINISHED) is None
    output = stderr.getvalue()
    assert "step one\n" in output
    assert "broken\n" in output
    assert "pipedo: error:" in output
    assert "exit code 5" in output


def test_failure_tail_is_skipped_when_output_was_shown(tmp_path: Path) -> None:
    session, stdout, stderr = _session(tmp_path, "echo visible\nexit 1\n", verbosity=2)

    asyncio.run(session.run())

    assert stdout.getvalue() == "visible\n"
    assert "visible" not in stderr.getvalue()
    assert "pipedo: error:" in stderr.getvalue()


def test_planning_failure_never_runs(tmp_path: Path) -> None:
    session, _, _ = _session(tmp_path, "touch A\n", plan_rc=2)

    with pytest.raises(PlanningError) as excinfo:
        asyncio.run(session.run())

    assert excinfo.value.exit_code == 2
    assert "no such target" in str(excinfo.value)
    assert not (tmp_path / "A").exists()
    assert StatusPointerStore(tmp_path / "run").snapshot() == {}


def test_version_failure_is_tolerated(tmp_path: Path) -> None:
    session, _, _ = _session(tmp_path, "true\n", version=_result(1, stderr="unknown"))

    result = asyncio.run(session.run())

    assert result.exit_code == 0
    assert result.workspace.version_path.read_text() == ""


def test_unexecutable_plan_shell_aborts(tmp_path: Path) -> None:
    session, _, _ = _session(tmp_path, "true\n", plan_shell=str(tmp_path / "no-shell"))

    result = asyncio.run(session.run())

    assert result.state is SessionState.ABORTED
    assert result.exit_code == 127
    assert "cannot execute plan" in result.workspace.log_path.read_text()


def test_unsaved_edit_cancels_session(tmp_path: Path) -> None:
    session, _, stderr = _session(
        tmp_path,
        "touch A\n",
        interactive=True,
        edit_plan=True,
        editor=_editor(tmp_path, "exit 0\n"),
    )

    result = asyncio.run(session.run())

    assert result.state is SessionState.CANCELED
    assert result.exit_code == EXIT_CANCELED
    assert _workspaces(tmp_path) == []
    assert not (tmp_path / "A").exists()
    assert not (tmp_path / "run" / "pointers.json").exists()
    assert "canceled" in stderr.getvalue()


def test_edited_plan_runs_and_keeps_original(tmp_path: Path) -> None:
    editor = _editor(tmp_path, 'echo "touch edited" >> "$1"\nexit 1\n')
    session, _, _ = _session(tmp_path, "touch A\n", interactive=True, edit_plan=True, editor=editor)

    result = asyncio.run(session.run())

    assert result.state is SessionState.SUCCEEDED
    assert (tmp_path / "edited").exists()
    assert result.workspace.original_plan_path.read_text() == "touch A\n"


def test_editing_is_skipped_without_a_terminal(tmp_path: Path) -> None:
    editor = _editor(tmp_path, "exit 0\n")
    session, _, _ = _session(tmp_path, "touch A\n", interactive=False, edit_plan=True, editor=editor)

    assert asyncio.run(session.run()).state is SessionState.SUCCEEDED


def test_interrupt_terminates_signal_ignoring_descendants(tmp_path: Path) -> None:
    plan = (
        "sh -c 'trap \"\" TERM; exec sleep 30' &\n"
        "echo $! > bg.pid\n"
        "echo started\n"
        "sleep 30\n"
    )
    supervisor = ProcessGroupSupervisor(initial_backoff=0.05, max_rounds=3)
    session, _, _ = _session(tmp_path, plan, supervisor=supervisor)

    async def scenario():
        task = asyncio.ensure_future(session.run())
        for _ in range(200):
            logs = list((tmp_path / "run").glob("*/*/log.txt"))
            if logs and "started" in logs[0].read_text():
                break
            await asyncio.sleep(0.05)
        os.kill(os.getpid(), signal.SIGINT)
        return await asyncio.wait_for(task, timeout=30)

    result = asyncio.run(scenario())

    assert result.state is SessionState.ABORTED
    assert result.exit_code == 128 + signal.SIGINT
    assert supervisor.descendants() == set()
    background = int((tmp_path / "bg.pid").read_text())
    assert not psutil.pid_exists(background) or psutil.Process(background).status() == psutil.STATUS_ZOMBIE
    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.RUNNING) is None
    assert store.get(StatusPointer.ABORTED).session_id == result.workspace.session_id


def test_multi_megabyte_output_line_does_not_stall_plan(tmp_path: Path) -> None:
    plan = "head -c 3000000 /dev/zero | tr '\\0' a\necho\necho after\ntouch A\n"
    session, _, _ = _session(tmp_path, plan)

    async def scenario():
        return await asyncio.wait_for(session.run(), timeout=30)

    result = asyncio.run(scenario())

    assert result.state is SessionState.SUCCEEDED
    assert (tmp_path / "A").exists()
    log = result.workspace.log_path.read_text()
    assert log.endswith("after\n")
    assert log.count("a") >= 3000000


class ClosedTerminal(io.StringIO):
    def write(self, text: str) -> int:
        raise BrokenPipeError(32, "Broken pipe")


def test_closed_terminal_does_not_interrupt_session(tmp_path: Path) -> None:
    session, _, _ = _session(tmp_path, "echo hi\ntouch A\n", stdout=ClosedTerminal(), verbosity=2)

    result = asyncio.run(session.run())

    assert result.state is SessionState.SUCCEEDED
    assert (tmp_path / "A").exists()
    assert result.workspace.log_path.read_text() == "hi\n"
    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.RUNNING) is None
    assert store.get(StatusPointer.FINISHED).session_id == result.workspace.session_id


def test_log_write_failure_aborts_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def disk_full(self, line: str) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(LineSink, "write", disk_full)
    session, _, stderr = _session(tmp_path, "echo hi\ntouch A\n")

    result = asyncio.run(session.run())

    assert result.state is SessionState.ABORTED
    assert result.exit_code == 1
    assert (tmp_path / "A").exists()
    assert "session log is incomplete" in stderr.getvalue()
    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.RUNNING) is None
    assert store.get(StatusPointer.FINISHED) is None
    assert store.get(StatusPointer.ABORTED).session_id == result.workspace.session_id


class ExplodingCleanupSupervisor(ProcessGroupSupervisor):
    async def cleanup(self, *, settle_timeout: float = 5.0) -> bool:
        await super().cleanup(settle_timeout=settle_timeout)
        raise RuntimeError("cleanup exploded")


def test_unexpected_execution_error_still_records_abort(tmp_path: Path) -> None:
    supervisor = ExplodingCleanupSupervisor(initial_backoff=0.05, max_rounds=3)
    session, _, _ = _session(tmp_path, "echo hi\n", supervisor=supervisor)

    with pytest.raises(RuntimeError, match="cleanup exploded"):
        asyncio.run(session.run())

    assert session.state is SessionState.ABORTED
    store = StatusPointerStore(tmp_path / "run")
    assert store.get(StatusPointer.RUNNING) is None
    assert store.get(StatusPointer.ABORTED) is not None
    assert store.get(StatusPointer.LATEST).session_id == store.get(StatusPointer.ABORTED).session_id


def test_satisfied_absolute_target_reports_done_time(tmp_path: Path) -> None:
    target = tmp_path / "outputs" / "A"
    target.parent.mkdir()
    target.write_text("done")
    session, stdout, _ = _session(tmp_path, "", done_rc=0, targets=(str(target),))

    result = asyncio.run(session.run())

    assert result.state is SessionState.SATISFIED
    assert stdout.getvalue().startswith("All done at ")


def test_strip_plan_metadata() -> None:
    assert strip_plan_metadata("# targets: A\necho a\n") == "echo a\n"
    assert strip_plan_metadata("# targets: A\necho a") == "echo a\n"
    assert strip_plan_metadata("# only metadata") == ""


def test_newest_done_at_takes_latest_match(tmp_path: Path) -> None:
    older = tmp_path / "A.done"
    newer = tmp_path / "B.done"
    older.write_text("")
    newer.write_text("")
    os.utime(older, (1_700_000_000, 1_700_000_000))
    os.utime(newer, (1_700_000_500, 1_700_000_500))

    assert newest_done_at(tmp_path, ["A", "B"], "{target}.done") == datetime.fromtimestamp(1_700_000_500)
    assert newest_done_at(tmp_path, ["C"], "{target}.done") is None


def test_newest_done_at_accepts_absolute_targets(tmp_path: Path) -> None:
    output = tmp_path / "outputs" / "A.done"
    output.parent.mkdir()
    output.write_text("")
    os.utime(output, (1_700_000_000, 1_700_000_000))

    done_at = newest_done_at(tmp_path, [str(tmp_path / "outputs" / "A")], "{target}*")

    assert done_at == datetime.fromtimestamp(1_700_000_000)


def test_newest_done_at_ignores_empty_target(tmp_path: Path) -> None:
    (tmp_path / "unrelated").write_text("")

    assert newest_done_at(tmp_path, [""], "{target}*") is None


def test_newest_done_at_skips_dangling_symlinks(tmp_path: Path) -> None:
    (tmp_path / "A.link").symlink_to(tmp_path / "missing")
    real = tmp_path / "A.done"
    real.write_text("")
    os.utime(real, (1_700_000_000, 1_700_000_000))

    assert newest_done_at(tmp_path, ["A"], "{target}.*") == datetime.fromtimestamp(1_700_000_000)
    real.unlink()
    assert newest_done_at(tmp_path, ["A"], "{target}.*") is None


def test_newest_done_at_matches_target_names_literally(tmp_path: Path) -> None:
    (tmp_path / "report[1].csv").write_text("")
    (tmp_path / "report1.csv").write_text("")
    os.utime(tmp_path / "report[1].csv", (1_700_000_000, 1_700_000_000))
    os.utime(tmp_path / "report1.csv", (1_700_000_900, 1_700_000_900))

    assert newest_done_at(tmp_path, ["report[1]"], "{target}*") == datetime.fromtimestamp(1_700_000_000)
