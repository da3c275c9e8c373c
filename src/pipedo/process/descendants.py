"""Enumerate the live processes descended from the orchestrator."""

from __future__ import annotations

import os
from typing import Iterable

import psutil


def _alive(proc: psutil.Process) -> bool:
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def find_descendants(root_pid: int | None = None, groups: Iterable[int] = ()) -> set[int]:
    """Return the pids descended from ``root_pid`` plus members of the tracked process ``groups``.

    Process groups catch helpers whose intermediate parents already exited and
    which were reparented away from ``root_pid``. Zombies are left out since
    they cannot be signaled any further. The result is computed fresh on every
    call.
    """

    root_pid = os.getpid() if root_pid is None else root_pid
    found: set[int] = set()

    try:
        children = psutil.Process(root_pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    found.update(child.pid for child in children if _alive(child))

    wanted = set(groups)
    if wanted:
        for proc in psutil.process_iter():
            if proc.pid in (root_pid, 0) or proc.pid in found:
                continue
            try:
                pgid = os.getpgid(proc.pid)
            except (ProcessLookupError, PermissionError):
                continue
            if pgid in wanted and _alive(proc):
                found.add(proc.pid)

    return found


__all__ = ["find_descendants"]
