"""Error taxonomy for the sandbox engine.

Every failure that crosses the SessionManager's public methods is one of
these. Command failures and timeouts are not errors: they come back as an
ExecutionResult with a non-zero exit code.
"""

from __future__ import annotations

from dataclasses import dataclass


class SandboxError(Exception):
    """Base class for all sandbox engine errors."""


@dataclass
class SessionNotFound(SandboxError):
    """Raised when a session is absent, expired, or owned by someone else.

    The three cases are reported identically so that callers cannot probe
    for other tenants' session ids.
    """

    session_id: str

    def __str__(self) -> str:
        return f"Session not found or expired: {self.session_id}"


@dataclass
class SessionUnavailable(SandboxError):
    """Raised when a session exists but can no longer run work (stopped or error)."""

    session_id: str
    state: str

    def __str__(self) -> str:
        return f"Session {self.session_id} is {self.state}"


@dataclass
class CapacityExceeded(SandboxError):
    """Raised when a session or disk quota is exhausted."""

    resource: str  # "sessions" or "disk"
    limit: int

    def __str__(self) -> str:
        if self.resource == "sessions":
            return f"Maximum sandbox sessions reached ({self.limit})"
        return f"{self.resource} quota exceeded (limit {self.limit} bytes)"


@dataclass
class CommandRejected(SandboxError):
    """Raised by the command gate before any process is spawned."""

    command: str
    reason: str

    def __str__(self) -> str:
        return f"Command not allowed: {self.command} ({self.reason})"


@dataclass
class ProvisioningFailure(SandboxError):
    """Raised when the execution backend could not be created for a session."""

    session_id: str
    reason: str

    def __str__(self) -> str:
        return f"Failed to provision session {self.session_id}: {self.reason}"


@dataclass
class FilesystemError(SandboxError):
    """Raised when a workspace read or write fails."""

    path: str
    reason: str

    def __str__(self) -> str:
        return f"Filesystem error on '{self.path}': {self.reason}"


class PathOutsideWorkspace(FilesystemError):
    """Raised when a relative path resolves outside the session workspace."""

    def __init__(self, path: str) -> None:
        super().__init__(path=path, reason="path escapes the workspace root")


@dataclass
class ProcessNotFound(SandboxError):
    """Raised when a detached process id is unknown for the session."""

    process_id: str

    def __str__(self) -> str:
        return f"Process not found: {self.process_id}"


@dataclass
class ServerStartFailure(SandboxError):
    """Raised when a detached server process could not be spawned."""

    command: str
    reason: str

    def __str__(self) -> str:
        return f"Failed to start '{self.command}': {self.reason}"
