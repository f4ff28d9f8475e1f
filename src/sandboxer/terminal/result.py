"""Command execution result dataclass."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

# Exit code reported for commands killed at their timeout (matches coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124


@dataclass
class ExecutionResult:
    """Outcome of one command invocation inside a session.

    A result is only built once the process has terminated or been killed,
    so every field is always populated.

    Attributes:
        command: The command line that was executed.
        stdout: Captured standard output (may be truncated).
        stderr: Captured standard error (may be truncated).
        exit_code: Process exit code; non-zero for failures, timeouts and kills.
        duration_ms: Wall-clock duration in milliseconds.
        error: Diagnostic message when the command did not complete normally.
        truncated: True if output hit the output ceiling.
        status: "ok", "error", or "timeout".
        signal: Signal name if the process was killed (e.g., "SIGKILL").
    """

    command: str
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float
    error: str | None = None
    truncated: bool = False
    status: str = "ok"  # "ok", "error", "timeout"
    signal: str | None = None

    @property
    def success(self) -> bool:
        """True if command completed with exit code 0."""
        return self.exit_code == 0 and self.status == "ok"

    @property
    def timed_out(self) -> bool:
        return self.status == "timeout"

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for the route layer's JSON encoder."""
        data = asdict(self)
        data["success"] = self.success
        return data

    def __repr__(self) -> str:
        if self.success:
            lines = self.stdout.count("\n") + 1 if self.stdout else 0
            return f"<ExecutionResult ok, {lines} lines>"
        return f"<ExecutionResult {self.status}, exit={self.exit_code}>"
