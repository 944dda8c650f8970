"""
Error taxonomy for the operations hub.

Every rejection carries a human-readable message plus a ``kind`` tag so the
web layer can map it to a response without string matching.
"""

from __future__ import annotations

from typing import Optional, Sequence


class OpsHubError(RuntimeError):
    """Base class for errors surfaced to callers."""

    kind = "internal"


class CapacityError(OpsHubError):
    """Too many sessions, globally or for one project."""

    kind = "capacity"


class ValidationError(OpsHubError):
    """Malformed or disallowed input."""

    kind = "validation"


class SandboxError(ValidationError):
    """A path resolved outside the allowed home/temp roots."""

    kind = "sandbox"


class SessionStateError(ValidationError):
    """Operation attempted on a session that is no longer live."""

    kind = "session_state"


class NotFoundError(OpsHubError):
    """Unknown project, worktree or session id."""

    kind = "not_found"


class ExternalToolError(OpsHubError):
    """A git/CLI tool invocation failed or could not be spawned."""

    kind = "external_tool"

    def __init__(self, message: str, *, command: Optional[Sequence[str]] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = tuple(command or ())
        self.stderr = stderr


class RegistryError(OpsHubError):
    """The persisted project store could not be read."""

    kind = "registry"
