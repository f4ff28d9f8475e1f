"""Registry of detached (long-running) processes per session."""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sandboxer.errors import ProcessNotFound
from sandboxer.terminal.protocol import ServerHandle


@dataclass
class DetachedProcess:
    """A server or watcher started by start_server().

    Attributes:
        process_id: Opaque id handed back to the caller.
        session_id: Owning session.
        command: Command line that was started.
        port: Port the process is expected to listen on.
        log_path: File receiving the combined stdout/stderr.
        url: Address callers can reach the server at.
        started_at: Epoch seconds.
        handle: Backend handle used to stop the process.
    """

    session_id: str
    command: str
    port: int
    log_path: Path
    url: str
    handle: ServerHandle
    process_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "session_id": self.session_id,
            "command": self.command,
            "port": self.port,
            "url": self.url,
            "pid": self.pid,
            "log_path": str(self.log_path),
            "started_at": self.started_at,
        }


class ProcessRegistry:
    """Tracks detached processes keyed by session, then process id.

    Only bookkeeping lives here; starting and stopping go through the
    session's execution backend.
    """

    def __init__(self) -> None:
        self._processes: dict[str, dict[str, DetachedProcess]] = {}

    def register(self, record: DetachedProcess) -> DetachedProcess:
        self._processes.setdefault(record.session_id, {})[record.process_id] = record
        return record

    def get(self, session_id: str, process_id: str) -> DetachedProcess:
        """Look up a process.

        Raises:
            ProcessNotFound: If the session has no process with this id.
        """
        record = self._processes.get(session_id, {}).get(process_id)
        if record is None:
            raise ProcessNotFound(process_id=process_id)
        return record

    def list(self, session_id: str) -> list[DetachedProcess]:
        return sorted(self._processes.get(session_id, {}).values(), key=lambda p: p.started_at)

    def remove(self, session_id: str, process_id: str) -> DetachedProcess | None:
        records = self._processes.get(session_id)
        if not records:
            return None
        record = records.pop(process_id, None)
        if not records:
            del self._processes[session_id]
        return record

    def drain(self, session_id: str) -> list[DetachedProcess]:
        """Remove and return every process of a session."""
        return list(self._processes.pop(session_id, {}).values())

    def count(self, session_id: str) -> int:
        return len(self._processes.get(session_id, {}))

    @staticmethod
    def tail_log(record: DetachedProcess, lines: int = 100) -> list[str]:
        """Return the last `lines` lines of a process log ([] if not written yet)."""
        if lines <= 0:
            return []
        try:
            with open(record.log_path, encoding="utf-8", errors="replace") as f:
                return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
        except FileNotFoundError:
            return []
