"""Session lifecycle for the sandbox engine.

The SessionManager owns the one piece of global mutable state: the session
table. Every other component receives a Session (or its workdir) from here
and never keeps a table of its own.

Lifecycle:
    INITIALIZING -> READY -> RUNNING -> READY ... -> STOPPED | ERROR

All removals, whether explicit, on expiry or during shutdown, go through
destroy_session(), which is idempotent and de-duplicates concurrent callers.
"""

from __future__ import annotations

import asyncio
import json
import shlex
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from sandboxer.clean import clean_workspaces
from sandboxer.config import Config, ExecutionMode, LimitsConfig, get_config
from sandboxer.errors import (
    CapacityExceeded,
    FilesystemError,
    ProvisioningFailure,
    SessionNotFound,
    SessionUnavailable,
)
from sandboxer.logging import VERBOSE, get_logger, session_logger, setup_logging
from sandboxer.session.gate import CommandGate
from sandboxer.session.processes import DetachedProcess, ProcessRegistry
from sandboxer.session.sweeper import ExpirySweeper
from sandboxer.session.workspace import WorkspaceStore, parse_size
from sandboxer.terminal.result import ExecutionResult

if TYPE_CHECKING:
    from sandboxer.terminal.protocol import ExecutionBackend

log = get_logger("session")

PACKAGE_MANAGERS = ("npm", "yarn", "pnpm", "bun", "pip")
SCRIPT_RUNNERS = ("npm", "yarn", "pnpm", "bun")

# Lockfile -> package manager, checked in order
_LOCKFILES: tuple[tuple[str, str], ...] = (
    ("bun.lockb", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("requirements.txt", "pip"),
)

_HEALTH_POLL_INTERVAL = 0.25


class SessionState(Enum):
    """Lifecycle state of a session."""

    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"  # Transient marker around one in-flight command
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class ResourceLimits:
    """Docker-style resource ceilings fixed at session creation.

    Attributes:
        cpu: CPU share, e.g. "0.5" or "2".
        memory: Memory size, e.g. "512m".
        disk: Workspace and /tmp size, e.g. "1g".
    """

    cpu: str = "1"
    memory: str = "512m"
    disk: str = "1g"

    @classmethod
    def from_config(cls, config: LimitsConfig) -> ResourceLimits:
        return cls(cpu=str(config.cpu), memory=str(config.memory), disk=str(config.disk))

    @property
    def disk_bytes(self) -> int:
        return parse_size(self.disk)

    @property
    def memory_bytes(self) -> int:
        return parse_size(self.memory)

    def clamp(self, requested: Mapping[str, Any] | ResourceLimits | None) -> ResourceLimits:
        """Return the requested limits with every value capped at this ceiling.

        Missing values fall back to the ceiling itself.

        Raises:
            ValueError: On unknown keys, malformed sizes, or non-positive values.
        """
        if requested is None:
            return self
        if isinstance(requested, ResourceLimits):
            requested = {f.name: getattr(requested, f.name) for f in fields(requested)}
        unknown = set(requested) - {"cpu", "memory", "disk"}
        if unknown:
            raise ValueError(f"Unknown resource options: {sorted(unknown)}")

        cpu = self.cpu
        if requested.get("cpu") is not None:
            value = float(requested["cpu"])
            if value <= 0:
                raise ValueError(f"cpu must be positive, got {requested['cpu']!r}")
            cpu = str(requested["cpu"]) if value <= float(self.cpu) else self.cpu

        sizes: dict[str, str] = {}
        for name in ("memory", "disk"):
            ceiling = getattr(self, name)
            raw = requested.get(name)
            if raw is None:
                sizes[name] = ceiling
                continue
            value = parse_size(raw if isinstance(raw, int) else str(raw))
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {raw!r}")
            sizes[name] = str(raw) if value <= parse_size(ceiling) else ceiling

        return ResourceLimits(cpu=cpu, memory=sizes["memory"], disk=sizes["disk"])


@dataclass
class HistoryEntry:
    """One executed command remembered on its session."""

    command: str
    exit_code: int
    status: str
    duration_ms: float
    started_at: float


@dataclass
class Session:
    """A single tenant's ephemeral workspace and its execution backend.

    Attributes:
        session_id: uuid4 string, never reused.
        owner: Tenant id; lookups with a different owner see no session.
        workdir: Absolute workspace path, unique to this session.
        backend: Name of the execution backend chosen at creation.
        limits: Resource ceilings fixed at creation.
        created_at: Epoch seconds.
        expires_at: Epoch seconds; slides on activity, capped by max lifetime.
        project_id: Optional caller project the session belongs to.
        backend_handle: Container id in container mode.
    """

    session_id: str
    owner: str
    workdir: Path
    backend: str
    limits: ResourceLimits
    created_at: float
    expires_at: float
    project_id: str | None = None
    backend_handle: str | None = None
    state: SessionState = SessionState.INITIALIZING
    commands_run: int = 0
    history: deque[HistoryEntry] = field(default_factory=lambda: deque(maxlen=100))

    @property
    def created(self) -> datetime:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc)

    @property
    def expires(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "owner": self.owner,
            "project_id": self.project_id,
            "workdir": str(self.workdir),
            "backend": self.backend,
            "container_id": self.backend_handle,
            "state": self.state.value,
            "limits": {"cpu": self.limits.cpu, "memory": self.limits.memory, "disk": self.limits.disk},
            "created_at": self.created.isoformat(),
            "expires_at": self.expires.isoformat(),
            "commands_run": self.commands_run,
        }


@dataclass
class SessionStats:
    """Resource usage snapshot for one session."""

    files: int
    disk_usage: int  # bytes
    uptime: float  # seconds
    processes: int
    commands_run: int


@dataclass
class ServerInfo:
    """Result of start_server().

    Attributes:
        process_id: Id for log reads and stop_process().
        url: Where the server is expected to listen.
        ready: True once the url answered, False if it did not within the
            wait, None when readiness was not probed.
    """

    process_id: str
    url: str
    ready: bool | None = None


def build_backend(config: Config) -> ExecutionBackend:
    """Create the execution backend selected by config.execution.mode."""
    execution = config.execution
    if execution.mode is ExecutionMode.CONTAINER:
        from sandboxer.terminal.container_executor import ContainerBackend

        return ContainerBackend(
            image=execution.image,
            output_limit=execution.output_limit,
            provision_timeout=execution.provision_timeout,
        )

    from sandboxer.terminal.subprocess_executor import LocalProcessBackend

    return LocalProcessBackend(
        gate=CommandGate.from_config(config.gate),
        output_limit=execution.output_limit,
    )


def install_command(manager: str, packages: Iterable[str] = (), dev: bool = False) -> str:
    """Map a package manager to its canonical install invocation.

    With no packages this installs from the project manifest.

    Raises:
        ValueError: On an unknown manager or a package name that looks like an option.
    """
    if manager not in PACKAGE_MANAGERS:
        raise ValueError(f"Unknown package manager: {manager!r} (expected one of {PACKAGE_MANAGERS})")
    names = list(packages)
    for name in names:
        if not name or name.startswith("-"):
            raise ValueError(f"Invalid package name: {name!r}")
    quoted = " ".join(shlex.quote(n) for n in names)

    if manager == "pip":
        if not names:
            return "python -m pip install -r requirements.txt"
        return f"python -m pip install {quoted}"
    if not names:
        return f"{manager} install"
    if manager == "npm":
        return f"npm install {'--save-dev ' if dev else ''}{quoted}"
    if manager == "yarn":
        return f"yarn add {'--dev ' if dev else ''}{quoted}"
    # pnpm and bun share the same syntax
    return f"{manager} add {'-D ' if dev else ''}{quoted}"


def script_command(script: str, manager: str = "npm") -> str:
    """Map a package manager to the invocation running a package.json script."""
    if manager not in SCRIPT_RUNNERS:
        raise ValueError(f"Unknown script runner: {manager!r} (expected one of {SCRIPT_RUNNERS})")
    if not script or script.startswith("-"):
        raise ValueError(f"Invalid script name: {script!r}")
    name = shlex.quote(script)
    if manager in ("npm", "bun"):
        return f"{manager} run {name}"
    return f"{manager} {name}"


def detect_package_manager(workdir: Path) -> str:
    """Guess the package manager from lockfiles in the workspace (default npm)."""
    for lockfile, manager in _LOCKFILES:
        if (workdir / lockfile).exists():
            return manager
    return "npm"


def read_package_scripts(workdir: Path) -> dict[str, str]:
    """The "scripts" table of workspace package.json; empty when there is none.

    Raises:
        FilesystemError: If package.json is unreadable, not JSON, or scripts is not an object.
    """
    manifest = workdir / "package.json"
    if not manifest.is_file():
        return {}
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FilesystemError(path="package.json", reason=f"cannot parse: {e}") from e
    scripts = data.get("scripts", {}) if isinstance(data, dict) else None
    if not isinstance(scripts, dict):
        raise FilesystemError(path="package.json", reason='"scripts" is not an object')
    return {str(name): str(command) for name, command in scripts.items()}


async def wait_for_http(url: str, timeout: float) -> bool:
    """Poll a url until it answers with any HTTP response or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    async with httpx.AsyncClient() as client:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                await client.get(url, timeout=min(remaining, 2.0))
                return True
            except httpx.HTTPError:
                pass
            await asyncio.sleep(min(_HEALTH_POLL_INTERVAL, max(deadline - loop.time(), 0)))


class SessionManager:
    """Manages sandbox sessions: creation, lookup, expiry, work and teardown.

    Usage:
        async with SessionManager(load_config()) as manager:
            session = await manager.create_session("u1")
            await manager.write_file(session.session_id, "run.sh", "echo hi")
            result = await manager.execute_command(session.session_id, "sh run.sh")
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        backend: ExecutionBackend | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the session manager.

        Args:
            config: Engine configuration; the global config when omitted.
            backend: Execution backend; built from config.execution.mode when omitted.
            clock: Source of epoch seconds for expiry bookkeeping.
        """
        self._config = config or get_config()
        self._clock = clock
        self._backend = backend or build_backend(self._config)
        self._workspaces = WorkspaceStore(self._config.workspace.base_dir)
        self._processes = ProcessRegistry()
        self._ceiling = ResourceLimits.from_config(self._config.limits)

        self._sessions: dict[str, Session] = {}
        self._table_lock = asyncio.Lock()
        self._command_locks: dict[str, asyncio.Lock] = {}
        self._destroying: dict[str, asyncio.Task[bool]] = {}

        self._sweeper = ExpirySweeper(self, interval=self._config.sessions.sweep_interval)
        self._started = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    @property
    def workspaces(self) -> WorkspaceStore:
        return self._workspaces

    def __len__(self) -> int:
        return len(self._sessions)

    # --- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Reclaim leftovers from a previous run and start the expiry sweeper."""
        if self._started:
            return
        self._started = True
        setup_logging(self._config.logging)
        self._workspaces.base_dir.mkdir(parents=True, exist_ok=True)
        containers = await self._backend.reclaim_orphans()
        removed = await asyncio.to_thread(
            clean_workspaces, self._workspaces.base_dir, keep=set(self._sessions)
        )
        if containers or removed:
            log.info(
                "Reclaimed %d orphan containers and %d orphan workspaces", containers, len(removed)
            )
        self._sweeper.start()

    async def shutdown(self) -> None:
        """Stop the sweeper and destroy every session."""
        await self._sweeper.stop()
        session_ids = list(self._sessions)
        if session_ids:
            await asyncio.gather(*(self.destroy_session(sid) for sid in session_ids))
            log.info("Shutdown destroyed %d sessions", len(session_ids))
        self._started = False

    async def __aenter__(self) -> SessionManager:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.shutdown()

    # --- session table ---------------------------------------------------

    def _expiry_from(self, session: Session, now: float, seconds: float) -> float:
        return min(now + seconds, session.created_at + self._config.sessions.max_lifetime)

    def _touch(self, session: Session) -> None:
        """Slide expiry forward after a successful operation."""
        if session.state in (SessionState.STOPPED, SessionState.ERROR):
            return
        session.expires_at = max(
            session.expires_at,
            self._expiry_from(session, self._clock(), self._config.sessions.idle_timeout),
        )

    async def create_session(
        self,
        owner: str,
        *,
        project_id: str | None = None,
        resources: Mapping[str, Any] | ResourceLimits | None = None,
    ) -> Session:
        """Create a session with a fresh workspace and provisioned backend.

        Args:
            owner: Tenant id.
            project_id: Optional caller project id carried on the session.
            resources: Requested cpu/memory/disk, clamped to the configured ceilings.

        Returns:
            The session in READY state.

        Raises:
            CapacityExceeded: If the session limit is reached even after sweeping.
            ProvisioningFailure: If the workspace or backend could not be set up.
            ValueError: On malformed resource options.
        """
        limits = self._ceiling.clamp(resources)
        max_sessions = self._config.sessions.max_sessions

        if len(self._sessions) >= max_sessions:
            await self.sweep_expired()

        async with self._table_lock:
            if len(self._sessions) >= max_sessions:
                raise CapacityExceeded(resource="sessions", limit=max_sessions)
            now = self._clock()
            session_id = str(uuid.uuid4())
            session = Session(
                session_id=session_id,
                owner=owner,
                project_id=project_id,
                workdir=self._workspaces.workdir_for(session_id),
                backend=self._backend.name,
                limits=limits,
                created_at=now,
                expires_at=now,
                history=deque(maxlen=self._config.sessions.history_limit),
            )
            session.expires_at = self._expiry_from(session, now, self._config.sessions.idle_timeout)
            # Reserve the slot before any await so concurrent creates cannot overshoot
            self._sessions[session_id] = session

        try:
            await asyncio.to_thread(self._workspaces.create, session.workdir)
            session.backend_handle = await self._backend.provision(session)
        except (ProvisioningFailure, FilesystemError) as e:
            session.state = SessionState.ERROR
            log.error("Session %s provisioning failed: %s", session_id, e)
            await self.destroy_session(session_id)
            if isinstance(e, ProvisioningFailure):
                raise
            raise ProvisioningFailure(session_id=session_id, reason=str(e)) from e
        except asyncio.CancelledError:
            session.state = SessionState.ERROR
            await self.destroy_session(session_id)
            raise

        if session.state is not SessionState.INITIALIZING:
            # Destroyed while provisioning: release what provisioning just created
            await self._backend.teardown(session)
            raise SessionNotFound(session_id=session_id)
        session.state = SessionState.READY
        log.info(
            "Session %s created for %s (%s, %d/%d live)",
            session_id,
            owner,
            session.backend,
            len(self._sessions),
            max_sessions,
        )
        return session

    async def get_session(self, session_id: str, *, owner: str | None = None) -> Session | None:
        """Look up a live session.

        An expired session is destroyed on the spot and reported absent, as is
        a session being destroyed or one owned by someone else.
        """
        session = self._sessions.get(session_id)
        if session is None or session.state is SessionState.STOPPED:
            return None
        if owner is not None and session.owner != owner:
            return None
        if session.is_expired(self._clock()):
            log.debug("Session %s expired on lookup", session_id)
            await self.destroy_session(session_id)
            return None
        return session

    async def _require(self, session_id: str, owner: str | None = None) -> Session:
        """Look up a session that can accept work.

        Raises:
            SessionNotFound: If absent, expired, or owned by someone else.
            SessionUnavailable: If the session is initializing or in ERROR.
        """
        session = await self.get_session(session_id, owner=owner)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        self._ensure_usable(session)
        return session

    @staticmethod
    def _ensure_usable(session: Session) -> None:
        if session.state is SessionState.STOPPED:
            raise SessionNotFound(session_id=session.session_id)
        if session.state in (SessionState.ERROR, SessionState.INITIALIZING):
            raise SessionUnavailable(session_id=session.session_id, state=session.state.value)

    async def extend_session(
        self, session_id: str, seconds: float | None = None, *, owner: str | None = None
    ) -> Session:
        """Push expiry to now + seconds (idle timeout by default), capped at max lifetime.

        A shorter duration than what is left keeps the current expiry.

        Raises:
            SessionNotFound: If the session is absent or expired.
        """
        if seconds is not None and seconds <= 0:
            raise ValueError(f"seconds must be positive, got {seconds}")
        session = await self.get_session(session_id, owner=owner)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        duration = seconds if seconds is not None else self._config.sessions.idle_timeout
        session.expires_at = max(
            session.expires_at, self._expiry_from(session, self._clock(), duration)
        )
        log.debug("Session %s extended to %s", session_id, session.expires.isoformat())
        return session

    async def destroy_session(self, session_id: str, *, owner: str | None = None) -> bool:
        """Destroy a session. Idempotent.

        Concurrent calls for the same id share one teardown; only the call
        that started it returns True.

        Args:
            session_id: Session to destroy.
            owner: When given, a session owned by someone else is left alone.

        Returns:
            True if this call destroyed the session, False if it was already
            gone, belongs to another owner, or another caller was destroying it.
        """
        session = self._sessions.get(session_id)
        if owner is not None and session is not None and session.owner != owner:
            return False
        task = self._destroying.get(session_id)
        if task is not None:
            await asyncio.shield(task)
            return False
        if session_id not in self._sessions:
            return False

        task = asyncio.create_task(self._teardown(session_id))
        self._destroying[session_id] = task
        task.add_done_callback(lambda _t: self._destroying.pop(session_id, None))
        return await asyncio.shield(task)

    async def _teardown(self, session_id: str) -> bool:
        """Release everything a session holds; the table row goes last."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.state = SessionState.STOPPED
        slog = session_logger(log, session_id)

        for record in self._processes.drain(session_id):
            try:
                await self._backend.stop_server(session, record.handle)
            except Exception as e:
                slog.warning("Failed to stop process %s: %s", record.process_id, e)

        try:
            await self._backend.teardown(session)
        except Exception as e:
            slog.warning("Backend teardown failed: %s", e)

        if not await asyncio.to_thread(self._workspaces.remove, session.workdir):
            slog.warning("Workspace %s not fully removed", session.workdir)

        async with self._table_lock:
            self._sessions.pop(session_id, None)
            self._command_locks.pop(session_id, None)
        log.info("Session %s destroyed", session_id)
        return True

    async def list_sessions(self, owner: str | None = None) -> list[Session]:
        """List live, non-expired sessions, optionally for one owner."""
        now = self._clock()
        sessions = [
            s
            for s in self._sessions.values()
            if s.state is not SessionState.STOPPED
            and not s.is_expired(now)
            and (owner is None or s.owner == owner)
        ]
        return sorted(sessions, key=lambda s: s.created_at)

    async def sweep_expired(self) -> int:
        """Destroy every expired session through destroy_session().

        Returns:
            Number of sessions this sweep destroyed.
        """
        now = self._clock()
        expired = [
            sid
            for sid, s in list(self._sessions.items())
            if s.is_expired(now) and s.state is not SessionState.STOPPED
        ]
        if not expired:
            return 0
        results = await asyncio.gather(*(self.destroy_session(sid) for sid in expired))
        removed = sum(1 for r in results if r)
        log.info("Expiry sweep destroyed %d of %d expired sessions", removed, len(expired))
        return removed

    # --- files -----------------------------------------------------------

    async def write_file(
        self,
        session_id: str,
        path: str,
        content: str,
        encoding: str = "utf8",
        *,
        owner: str | None = None,
    ) -> int:
        """Write one file into the session workspace.

        Returns:
            Number of bytes written.

        Raises:
            SessionNotFound, PathOutsideWorkspace, CapacityExceeded, FilesystemError
        """
        session = await self._require(session_id, owner)
        written = await asyncio.to_thread(
            self._workspaces.write_file,
            session.workdir,
            path,
            content,
            encoding,
            quota=session.limits.disk_bytes,
        )
        self._touch(session)
        return written

    async def write_files(
        self,
        session_id: str,
        files: Iterable[Mapping[str, Any]],
        *,
        owner: str | None = None,
    ) -> int:
        """Write a batch of {path, content, encoding} files in order.

        Stops at the first failure; earlier files stay written.

        Returns:
            Number of files written.
        """
        session = await self._require(session_id, owner)
        count = await asyncio.to_thread(
            self._workspaces.write_files, session.workdir, list(files), quota=session.limits.disk_bytes
        )
        self._touch(session)
        return count

    async def read_file(
        self,
        session_id: str,
        path: str,
        encoding: str = "utf8",
        *,
        owner: str | None = None,
    ) -> str:
        session = await self._require(session_id, owner)
        content = await asyncio.to_thread(self._workspaces.read_file, session.workdir, path, encoding)
        self._touch(session)
        return content

    async def list_files(
        self, session_id: str, path: str = ".", *, owner: str | None = None
    ) -> Iterator[str]:
        """List workspace files; the session and directory are checked now, entries yielded lazily."""
        session = await self._require(session_id, owner)
        files = await asyncio.to_thread(self._workspaces.iter_files, session.workdir, path)
        self._touch(session)
        return files

    # --- commands --------------------------------------------------------

    async def execute_command(
        self,
        session_id: str,
        command: str,
        *,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
        owner: str | None = None,
    ) -> ExecutionResult:
        """Run a command in the session, one at a time per session.

        Args:
            session_id: Target session.
            command: Command line.
            timeout: Seconds before the command is killed (configured default if None).
            env: Environment overrides.
            stdin: Optional text fed to standard input.
            owner: Expected owner.

        Returns:
            ExecutionResult. Failures, timeouts and output overruns are results,
            not exceptions.

        Raises:
            SessionNotFound: If the session is absent or expired.
            SessionUnavailable: If the session is in ERROR.
            CommandRejected: If the command gate refuses the command.
        """
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        session = await self._require(session_id, owner)
        lock = self._command_locks.setdefault(session_id, asyncio.Lock())

        async with lock:
            # The session may have been destroyed while queued
            self._ensure_usable(session)
            started_at = self._clock()
            session.state = SessionState.RUNNING
            try:
                result = await self._backend.run(
                    session,
                    command,
                    timeout=timeout or self._config.execution.default_timeout,
                    env=env,
                    stdin=stdin,
                )
            except SessionUnavailable:
                session.state = SessionState.ERROR
                session_logger(log, session_id).error("Backend lost, session marked as error")
                raise
            finally:
                if session.state is SessionState.RUNNING:
                    session.state = SessionState.READY

            session.commands_run += 1
            session.history.append(
                HistoryEntry(
                    command=command,
                    exit_code=result.exit_code,
                    status=result.status,
                    duration_ms=result.duration_ms,
                    started_at=started_at,
                )
            )
            self._touch(session)
        session_logger(log, session_id).log(VERBOSE, "%r -> %s", command, result)
        return result

    async def install_dependencies(
        self,
        session_id: str,
        packages: Iterable[str] = (),
        *,
        manager: str | None = None,
        dev: bool = False,
        owner: str | None = None,
    ) -> ExecutionResult:
        """Install packages (or the project manifest) with a package manager.

        The manager is detected from workspace lockfiles when not given.
        Runs through execute_command() with the install timeout.
        """
        session = await self._require(session_id, owner)
        manager = manager or await asyncio.to_thread(detect_package_manager, session.workdir)
        command = install_command(manager, packages, dev=dev)
        return await self.execute_command(
            session_id, command, timeout=self._config.execution.install_timeout, owner=owner
        )

    async def run_script(
        self,
        session_id: str,
        script: str,
        *,
        manager: str = "npm",
        timeout: float | None = None,
        owner: str | None = None,
    ) -> ExecutionResult:
        """Run a package.json script."""
        return await self.execute_command(
            session_id, script_command(script, manager), timeout=timeout, owner=owner
        )

    async def available_scripts(self, session_id: str, *, owner: str | None = None) -> dict[str, str]:
        """Scripts declared in the workspace package.json, name -> command.

        A workspace without a package.json has no scripts.

        Raises:
            SessionNotFound: If the session is absent, expired, or owned by someone else.
            FilesystemError: If package.json is not valid JSON.
        """
        session = await self._require(session_id, owner)
        scripts = await asyncio.to_thread(read_package_scripts, session.workdir)
        self._touch(session)
        return scripts

    async def command_history(
        self, session_id: str, limit: int = 10, *, owner: str | None = None
    ) -> list[HistoryEntry]:
        """Most recent commands, oldest first.

        Readable while the session is in ERROR, so callers can see what led there.

        Raises:
            SessionNotFound: If the session is absent, expired, or owned by someone else.
        """
        session = await self.get_session(session_id, owner=owner)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        self._touch(session)
        if limit <= 0:
            return []
        return list(session.history)[-limit:]

    # --- detached processes ----------------------------------------------

    async def start_server(
        self,
        session_id: str,
        command: str,
        port: int = 3000,
        *,
        wait_timeout: float | None = None,
        owner: str | None = None,
    ) -> ServerInfo:
        """Start a long-running process whose output goes to a per-process log.

        Args:
            session_id: Target session.
            command: Command line to start.
            port: Port the process will listen on.
            wait_timeout: When set, poll the url until it answers or this many seconds pass.
            owner: Expected owner.

        Raises:
            SessionNotFound, SessionUnavailable, CommandRejected, ServerStartFailure
        """
        if not 0 < port < 65536:
            raise ValueError(f"Invalid port: {port}")
        session = await self._require(session_id, owner)
        process_id = uuid.uuid4().hex[:12]
        log_path = self._workspaces.internal_dir(session.workdir) / "logs" / f"{process_id}.log"

        handle = await self._backend.start_server(session, command, log_path)
        if session.state is SessionState.STOPPED or session_id not in self._sessions:
            # Destroyed while starting: the registry was already drained
            await self._backend.stop_server(session, handle)
            raise SessionNotFound(session_id=session_id)

        record = self._processes.register(
            DetachedProcess(
                process_id=process_id,
                session_id=session_id,
                command=command,
                port=port,
                log_path=log_path,
                url=f"http://{self._config.execution.server_host}:{port}",
                handle=handle,
                started_at=self._clock(),
            )
        )
        self._touch(session)
        log.info("Session %s: started %s (%s) at %s", session_id, process_id, command, record.url)

        ready: bool | None = None
        if wait_timeout is not None and wait_timeout > 0:
            ready = await wait_for_http(record.url, wait_timeout)
            if not ready:
                log.warning("Session %s: %s not answering after %ss", session_id, record.url, wait_timeout)
        return ServerInfo(process_id=process_id, url=record.url, ready=ready)

    async def read_process_log(
        self, session_id: str, process_id: str, lines: int = 100, *, owner: str | None = None
    ) -> list[str]:
        """Last lines of a detached process's log.

        Raises:
            SessionNotFound, ProcessNotFound
        """
        session = await self._require(session_id, owner)
        record = self._processes.get(session.session_id, process_id)
        lines_out = await asyncio.to_thread(ProcessRegistry.tail_log, record, lines)
        self._touch(session)
        return lines_out

    async def stop_process(
        self, session_id: str, process_id: str, *, owner: str | None = None
    ) -> bool:
        """Stop one detached process. Returns False if it was not registered."""
        session = await self._require(session_id, owner)
        record = self._processes.remove(session_id, process_id)
        if record is None:
            self._touch(session)
            return False
        await self._backend.stop_server(session, record.handle)
        self._touch(session)
        log.info("Session %s: stopped %s", session_id, process_id)
        return True

    async def list_processes(
        self, session_id: str, *, owner: str | None = None
    ) -> list[DetachedProcess]:
        session = await self._require(session_id, owner)
        self._touch(session)
        return self._processes.list(session.session_id)

    # --- stats -----------------------------------------------------------

    async def get_session_stats(
        self, session_id: str, *, owner: str | None = None
    ) -> SessionStats:
        """File count, disk usage, uptime, detached processes and commands run."""
        session = await self._require(session_id, owner)

        def scan() -> tuple[int, int]:
            files = sum(1 for _ in self._workspaces.iter_files(session.workdir))
            return files, self._workspaces.disk_usage(session.workdir)

        files, disk_usage = await asyncio.to_thread(scan)
        self._touch(session)
        return SessionStats(
            files=files,
            disk_usage=disk_usage,
            uptime=self._clock() - session.created_at,
            processes=self._processes.count(session_id),
            commands_run=session.commands_run,
        )
