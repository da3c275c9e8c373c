"""Run sessions, their workspaces and status pointers."""

from .pointers import PointerRecord, PointerStoreError, StatusPointer, StatusPointerStore
from .run import (
    EXIT_CANCELED,
    PlanningError,
    RunSession,
    SessionError,
    SessionResult,
    SessionState,
)
from .workspace import PlanFingerprint, Workspace, WorkspaceAllocator

__all__ = [
    "EXIT_CANCELED",
    "PlanFingerprint",
    "PlanningError",
    "PointerRecord",
    "PointerStoreError",
    "RunSession",
    "SessionError",
    "SessionResult",
    "SessionState",
    "StatusPointer",
    "StatusPointerStore",
    "Workspace",
    "WorkspaceAllocator",
]
