"""Container execution backend built on the Docker SDK.

Each session owns one long-lived container started at session setup:
- CPU and memory capped from the session's ResourceLimits
- networking disabled, read-only root filesystem
- /tmp as a size-capped tmpfs
- the host workspace bind-mounted read-write at /workspace

Commands are exec'd into that container, so startup cost is paid once per
session. Docker SDK calls are blocking and run in worker threads.
"""

from __future__ import annotations

import asyncio
import math
import shlex
import time
import uuid
from collections.abc import Iterator
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import DockerException, NotFound

from sandboxer.errors import ProvisioningFailure, ServerStartFailure, SessionUnavailable
from sandboxer.logging import get_logger
from sandboxer.session.workspace import INTERNAL_DIR
from sandboxer.terminal.protocol import ServerHandle
from sandboxer.terminal.result import TIMEOUT_EXIT_CODE, ExecutionResult
from sandboxer.terminal.subprocess_executor import DEFAULT_OUTPUT_LIMIT, pid_file_for

if TYPE_CHECKING:
    from sandboxer.session.session_manager import Session

log = get_logger("backend.container")

CONTAINER_WORKDIR = "/workspace"
SESSION_LABEL = "sandboxer.session"
DEFAULT_IMAGE = "node:18-alpine"

# Extra seconds the outer wait allows beyond the in-container `timeout`
_EXEC_GRACE = 5.0

# Seconds a timed-out provision waits for a late container to be removed
_LATE_START_GRACE = 30.0


def container_name(session_id: str) -> str:
    return f"sandbox-{session_id}"


def nano_cpus(cpu: str) -> int:
    """Convert a docker-style CPU share ("0.5", "2") to nano CPUs."""
    value = float(cpu)
    if value <= 0:
        raise ValueError(f"cpu limit must be positive, got {cpu!r}")
    return int(value * 1e9)


class ContainerBackend:
    """Execute commands inside one isolated container per session."""

    name = "container"

    def __init__(
        self,
        client: Any | None = None,
        image: str = DEFAULT_IMAGE,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        provision_timeout: float = 60.0,
        stop_timeout: int = 5,
    ) -> None:
        """Initialize the container backend.

        Args:
            client: A docker.DockerClient; created from the environment on first use.
            image: Image every session container runs.
            output_limit: Maximum bytes of stdout+stderr kept per command.
            provision_timeout: Seconds allowed for container startup.
            stop_timeout: Seconds docker waits before killing on stop.
        """
        self._client = client
        self._image = image
        self._output_limit = output_limit
        self._provision_timeout = provision_timeout
        self._stop_timeout = stop_timeout
        self._cleanup_tasks: set[asyncio.Task[None]] = set()

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def provision(self, session: Session) -> str | None:
        """Start the session's container and return its id.

        Raises:
            ProvisioningFailure: On docker errors, bad limits, or startup timeout.
        """
        limits = session.limits
        try:
            cpus = nano_cpus(limits.cpu)
        except ValueError as e:
            raise ProvisioningFailure(session_id=session.session_id, reason=str(e)) from e

        def run_container() -> Any:
            return self.client.containers.run(
                self._image,
                command=["sleep", "infinity"],
                detach=True,
                name=container_name(session.session_id),
                nano_cpus=cpus,
                mem_limit=limits.memory,
                network_mode="none",
                read_only=True,
                tmpfs={"/tmp": f"rw,noexec,nosuid,size={limits.disk}"},
                volumes={str(session.workdir): {"bind": CONTAINER_WORKDIR, "mode": "rw"}},
                working_dir=CONTAINER_WORKDIR,
                labels={SESSION_LABEL: session.session_id},
            )

        # The worker thread cannot be cancelled; keep its future so a container
        # that finishes starting after we gave up is still removed
        pending = asyncio.ensure_future(asyncio.to_thread(run_container))
        try:
            container = await asyncio.wait_for(
                asyncio.shield(pending), timeout=self._provision_timeout
            )
        except asyncio.TimeoutError as e:
            cleanup = self._remove_when_started(session, pending)
            await asyncio.wait({cleanup}, timeout=_LATE_START_GRACE)
            raise ProvisioningFailure(
                session_id=session.session_id,
                reason=f"container did not start within {self._provision_timeout}s",
            ) from e
        except asyncio.CancelledError:
            self._remove_when_started(session, pending)
            raise
        except DockerException as e:
            raise ProvisioningFailure(session_id=session.session_id, reason=str(e)) from e

        log.info(
            "Session %s: container %s started (%s, cpu=%s, mem=%s)",
            session.session_id,
            container.id[:12],
            self._image,
            limits.cpu,
            limits.memory,
        )
        return str(container.id)

    def _remove_when_started(self, session: Session, pending: asyncio.Future[Any]) -> asyncio.Task[None]:
        """Remove the container an abandoned provision call eventually returns."""

        async def remove() -> None:
            try:
                container = await pending
            except DockerException:
                return
            await asyncio.to_thread(self._force_remove, container)
            log.info(
                "Session %s: removed container %s that started after provisioning gave up",
                session.session_id,
                container.id[:12],
            )

        task = asyncio.create_task(remove())
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        return task

    @staticmethod
    def _force_remove(container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            pass
        except DockerException as e:
            log.warning("Failed to remove container %s: %s", container.id, e)

    def _container(self, session: Session) -> Any:
        if not session.backend_handle:
            raise SessionUnavailable(session_id=session.session_id, state="error")
        try:
            return self.client.containers.get(session.backend_handle)
        except NotFound as e:
            raise SessionUnavailable(session_id=session.session_id, state="error") from e

    async def run(
        self,
        session: Session,
        command: str,
        *,
        timeout: float,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
    ) -> ExecutionResult:
        """Exec a command inside the session container.

        The command runs under `timeout -s KILL` inside the container and the
        host side waits a little longer than that before giving up. Output is
        read as it streams; past the output ceiling reading stops and the exec
        is killed.

        Raises:
            SessionUnavailable: If the session's container no longer exists.
        """
        start_time = time.perf_counter()
        exec_env = dict(env or {})
        script = command
        if stdin is not None:
            exec_env["SANDBOX_STDIN"] = stdin
            script = f'printf "%s" "$SANDBOX_STDIN" | ( {command} )'

        # The wrapper shell records its pid, then becomes `timeout`, so an
        # output overrun can kill the exec from a second exec
        pid_path = self._exec_pid_path(session)
        rel_pid = PurePosixPath(CONTAINER_WORKDIR) / pid_path.relative_to(session.workdir).as_posix()
        wrapper = (
            f"echo $$ > {shlex.quote(str(rel_pid))}; "
            f"exec timeout -s KILL {max(1, math.ceil(timeout))} sh -c {shlex.quote(script)}"
        )
        argv = ["sh", "-c", wrapper]

        def exec_in_container() -> tuple[int | None, bytes, bytes, bool]:
            container = self._container(session)
            api = self.client.api
            exec_id = api.exec_create(
                container.id, argv, environment=exec_env or None, workdir=CONTAINER_WORKDIR
            )["Id"]
            stdout, stderr, overflow = self._consume(api.exec_start(exec_id, stream=True, demux=True))
            if overflow:
                self._kill_exec(container, pid_path)
            return api.exec_inspect(exec_id).get("ExitCode"), stdout, stderr, overflow

        try:
            exit_code, stdout, stderr, overflow = await asyncio.wait_for(
                asyncio.to_thread(exec_in_container), timeout=timeout + _EXEC_GRACE
            )
        except asyncio.TimeoutError:
            return self._timeout_result(command, timeout, start_time, b"", b"")
        except DockerException as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            return ExecutionResult(
                command=command,
                stdout="",
                stderr=str(e),
                exit_code=1,
                duration_ms=duration_ms,
                error=f"Container exec failed: {e}",
                status="error",
            )
        finally:
            pid_path.unlink(missing_ok=True)

        elapsed = time.perf_counter() - start_time
        code = exit_code if exit_code is not None else 1
        error: str | None = None
        if overflow:
            error = f"Output exceeded {self._output_limit} bytes; process killed"
            if code in (0, 1):
                code = 128 + 9
        elif code in (TIMEOUT_EXIT_CODE, 137) and elapsed >= timeout:
            return self._timeout_result(command, timeout, start_time, stdout, stderr)

        return ExecutionResult(
            command=command,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=code,
            duration_ms=elapsed * 1000,
            error=error,
            truncated=overflow,
            status="ok" if code == 0 else "error",
            signal="SIGKILL" if overflow else None,
        )

    @staticmethod
    def _exec_pid_path(session: Session) -> Path:
        path = session.workdir / INTERNAL_DIR / "exec" / f"{uuid.uuid4().hex[:12]}.pid"
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def _consume(self, stream: Iterator[tuple[bytes | None, bytes | None]]) -> tuple[bytes, bytes, bool]:
        """Read a demuxed exec stream until it ends or the output ceiling is hit."""
        stdout = bytearray()
        stderr = bytearray()
        try:
            for out_chunk, err_chunk in stream:
                for chunk, buf in ((out_chunk, stdout), (err_chunk, stderr)):
                    if not chunk:
                        continue
                    room = self._output_limit - len(stdout) - len(stderr)
                    if len(chunk) > room:
                        buf.extend(chunk[: max(room, 0)])
                        return bytes(stdout), bytes(stderr), True
                    buf.extend(chunk)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        return bytes(stdout), bytes(stderr), False

    def _kill_exec(self, container: Any, pid_path: Path) -> None:
        try:
            pid = int(pid_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            log.warning("No pid recorded for overrunning exec in %s", container.id[:12])
            return
        script = f"kill -KILL -- -{pid} 2>/dev/null || {{ pkill -KILL -P {pid}; kill -KILL {pid}; }} 2>/dev/null; true"
        try:
            container.exec_run(["sh", "-c", script], workdir=CONTAINER_WORKDIR)
        except DockerException as e:
            log.warning("Failed to kill overrunning exec %d in %s: %s", pid, container.id[:12], e)

    def _timeout_result(
        self, command: str, timeout: float, start_time: float, stdout: bytes, stderr: bytes
    ) -> ExecutionResult:
        return ExecutionResult(
            command=command,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=TIMEOUT_EXIT_CODE,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            error=f"Command timed out after {timeout}s",
            status="timeout",
            signal="SIGKILL",
        )

    async def start_server(
        self, session: Session, command: str, log_path: Path
    ) -> ServerHandle:
        """Start a detached exec that appends its output to log_path.

        The exec writes its pid next to the log through the workspace bind mount.
        """
        rel_log = PurePosixPath(CONTAINER_WORKDIR) / log_path.relative_to(session.workdir).as_posix()
        pid_path = pid_file_for(log_path)
        rel_pid = PurePosixPath(CONTAINER_WORKDIR) / pid_path.relative_to(session.workdir).as_posix()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        script = (
            f"echo $$ > {shlex.quote(str(rel_pid))}; "
            f"exec sh -c {shlex.quote(command)} >> {shlex.quote(str(rel_log))} 2>&1"
        )

        def exec_detached() -> None:
            container = self._container(session)
            container.exec_run(["sh", "-c", script], detach=True, workdir=CONTAINER_WORKDIR)

        try:
            await asyncio.wait_for(asyncio.to_thread(exec_detached), timeout=_EXEC_GRACE * 2)
        except asyncio.TimeoutError as e:
            raise ServerStartFailure(command=command, reason="container exec timed out") from e
        except DockerException as e:
            raise ServerStartFailure(command=command, reason=str(e)) from e

        pid = await self._read_pid(pid_path)
        log.info("Session %s: detached container pid %s: %s", session.session_id, pid, command)
        return ServerHandle(pid=pid, handle=session.backend_handle)

    async def _read_pid(self, pid_path: Path, wait: float = 2.0) -> int | None:
        deadline = time.monotonic() + wait
        while time.monotonic() < deadline:
            try:
                return int(pid_path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError):
                await asyncio.sleep(0.05)
        return None

    async def stop_server(self, session: Session, handle: ServerHandle) -> None:
        if handle.pid is None:
            return
        script = f"pkill -TERM -P {handle.pid} 2>/dev/null; kill -TERM {handle.pid} 2>/dev/null; true"

        def kill_in_container() -> None:
            container = self._container(session)
            container.exec_run(["sh", "-c", script], workdir=CONTAINER_WORKDIR)

        try:
            await asyncio.wait_for(asyncio.to_thread(kill_in_container), timeout=_EXEC_GRACE * 2)
        except (asyncio.TimeoutError, DockerException, SessionUnavailable) as e:
            log.warning("Session %s: failed to stop pid %s: %s", session.session_id, handle.pid, e)

    async def teardown(self, session: Session) -> None:
        """Stop and remove the session container, logging failures."""
        ref = session.backend_handle or container_name(session.session_id)

        def remove_container() -> None:
            try:
                container = self.client.containers.get(ref)
            except NotFound:
                return
            try:
                container.stop(timeout=self._stop_timeout)
            except DockerException as e:
                log.debug("Stop failed for %s, forcing removal: %s", ref, e)
            container.remove(force=True)

        try:
            await asyncio.wait_for(
                asyncio.to_thread(remove_container), timeout=self._stop_timeout + _EXEC_GRACE * 2
            )
        except (asyncio.TimeoutError, DockerException) as e:
            log.warning("Session %s: failed to remove container %s: %s", session.session_id, ref, e)
        else:
            log.debug("Session %s: container %s removed", session.session_id, ref)

    async def reclaim_orphans(self) -> int:
        """Remove every container carrying the session label."""

        def remove_labelled() -> int:
            removed = 0
            for container in self.client.containers.list(all=True, filters={"label": SESSION_LABEL}):
                try:
                    container.remove(force=True)
                    removed += 1
                except DockerException as e:
                    log.warning("Failed to remove orphan container %s: %s", container.id, e)
            return removed

        try:
            removed = await asyncio.to_thread(remove_labelled)
        except DockerException as e:
            log.warning("Orphan container scan failed: %s", e)
            return 0
        if removed:
            log.info("Removed %d orphan session containers", removed)
        return removed
