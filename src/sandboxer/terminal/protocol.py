"""Execution backend protocol shared by the local and container variants."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from sandboxer.terminal.result import ExecutionResult

if TYPE_CHECKING:
    from sandboxer.session.session_manager import Session


@dataclass
class ServerHandle:
    """Backend-specific handle for a detached server process.

    Attributes:
        pid: OS process id (host pid for local, container pid for container).
        handle: Backend-private object (asyncio Process, exec id, ...).
    """

    pid: int | None
    handle: Any = None


class ExecutionBackend(Protocol):
    """Protocol for running commands on behalf of a session.

    Implementations:
    - LocalProcessBackend: subprocesses in the session workspace
    - ContainerBackend: exec inside one long-lived container per session

    The SessionManager picks the variant at session creation and stores its
    name and handle on the Session; backends hold no session table of their own.
    """

    name: str

    async def provision(self, session: Session) -> str | None:
        """Prepare per-session resources.

        Returns:
            A backend handle (container id) or None when nothing is provisioned.

        Raises:
            ProvisioningFailure: If the resources could not be created.
        """
        ...

    async def run(
        self,
        session: Session,
        command: str,
        *,
        timeout: float,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
    ) -> ExecutionResult:
        """Run one command to completion or until timeout.

        Raises:
            CommandRejected: If the backend's gate refuses the command.
        """
        ...

    async def start_server(
        self, session: Session, command: str, log_path: Path
    ) -> ServerHandle:
        """Start a detached process whose combined output is appended to log_path."""
        ...

    async def stop_server(self, session: Session, handle: ServerHandle) -> None:
        """Terminate a detached process. Must not raise if it already exited."""
        ...

    async def teardown(self, session: Session) -> None:
        """Release everything provisioned for the session. Best-effort, never raises."""
        ...

    async def reclaim_orphans(self) -> int:
        """Remove resources left behind by a previous process. Returns count removed."""
        ...
