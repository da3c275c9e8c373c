"""External collaborator invocation utilities."""

from .runner import (
    CollaboratorError,
    CollaboratorNotFoundError,
    CollaboratorResult,
    CollaboratorRunner,
    FakeCollaboratorRunner,
)

__all__ = [
    "CollaboratorError",
    "CollaboratorNotFoundError",
    "CollaboratorResult",
    "CollaboratorRunner",
    "FakeCollaboratorRunner",
]
