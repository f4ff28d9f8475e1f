"""Subprocess-based execution backend for trusted local hosts."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import signal
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from sandboxer.errors import ServerStartFailure
from sandboxer.logging import get_logger
from sandboxer.session.gate import CommandGate
from sandboxer.terminal.protocol import ServerHandle
from sandboxer.terminal.result import TIMEOUT_EXIT_CODE, ExecutionResult

if TYPE_CHECKING:
    from sandboxer.session.session_manager import Session

log = get_logger("backend.local")

DEFAULT_OUTPUT_LIMIT = 10 * 1024 * 1024
_READ_CHUNK = 64 * 1024


def pid_file_for(log_path: Path) -> Path:
    """Pid file written next to a detached process's log."""
    return log_path.with_suffix(".pid")


def _exit_status(returncode: int) -> tuple[int, str | None]:
    """Map a subprocess returncode to (exit_code, signal_name).

    Negative return codes mean the process died from a signal; those are
    reported shell-style as 128 + signum so they are always non-zero.
    """
    if returncode >= 0:
        return returncode, None
    signum = -returncode
    try:
        name = signal.Signals(signum).name
    except ValueError:
        name = f"SIG{signum}"
    return 128 + signum, name


def kill_process_group(process: asyncio.subprocess.Process, sig: int = signal.SIGKILL) -> None:
    """Signal a process and everything in its process group."""
    if process.returncode is not None:
        return
    if sys.platform == "win32":
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        return
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(sig)


class LocalProcessBackend:
    """Execute commands as subprocesses inside the session workspace.

    Commands are split shell-style and started without a shell, so the
    command gate sees the executable that actually runs. Each command gets
    its own process group; timeouts and output overruns kill the whole group.
    """

    name = "local"

    def __init__(
        self,
        gate: CommandGate | None = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        kill_grace: float = 5.0,
    ) -> None:
        """Initialize the local backend.

        Args:
            gate: Command gate; defaults to the built-in allow-list.
            output_limit: Maximum bytes of stdout+stderr captured per command.
            kill_grace: Seconds to wait for a killed process to be reaped.
        """
        self._gate = gate or CommandGate()
        self._output_limit = output_limit
        self._kill_grace = kill_grace
        # In-flight commands and detached servers keyed by session id
        self._running: dict[str, set[asyncio.subprocess.Process]] = {}
        self._servers: dict[str, set[asyncio.subprocess.Process]] = {}

    @property
    def gate(self) -> CommandGate:
        return self._gate

    async def provision(self, session: Session) -> str | None:
        # Nothing to create: the workspace directory is the whole sandbox
        return None

    async def run(
        self,
        session: Session,
        command: str,
        *,
        timeout: float,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
    ) -> ExecutionResult:
        """Run a command in the session workspace.

        Args:
            session: The session whose workspace is the working directory.
            command: Command line; the first token must pass the gate.
            timeout: Hard wall-clock limit in seconds.
            env: Overrides merged over the host environment.
            stdin: Optional text fed to the process's standard input.

        Returns:
            ExecutionResult with captured output and exit status.

        Raises:
            CommandRejected: If the gate refuses the command. Nothing is spawned.
        """
        self._gate.check(command)
        start_time = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start_time) * 1000

        try:
            argv = shlex.split(command)
        except ValueError as e:
            return ExecutionResult(
                command=command,
                stdout="",
                stderr=str(e),
                exit_code=2,
                duration_ms=elapsed_ms(),
                error=f"Could not parse command: {e}",
                status="error",
            )

        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(session.workdir),
                env=process_env,
                start_new_session=True,
            )
        except FileNotFoundError:
            return self._spawn_failure(command, 127, f"Command not found: {argv[0]}", elapsed_ms())
        except PermissionError:
            return self._spawn_failure(command, 126, f"Permission denied: {argv[0]}", elapsed_ms())
        except OSError as e:
            return self._spawn_failure(command, 1, f"OS error: {e}", elapsed_ms())

        running = self._running.setdefault(session.session_id, set())
        running.add(process)
        log.debug("Session %s: started pid %d: %s", session.session_id, process.pid, command)

        stdout_buf = bytearray()
        stderr_buf = bytearray()
        overflow = False

        async def drain(stream: asyncio.StreamReader | None, buf: bytearray) -> None:
            nonlocal overflow
            if stream is None:
                return
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                room = self._output_limit - len(stdout_buf) - len(stderr_buf)
                if len(chunk) > room:
                    buf.extend(chunk[: max(room, 0)])
                    overflow = True
                    kill_process_group(process)
                    return
                buf.extend(chunk)

        async def feed() -> None:
            if stdin is None or process.stdin is None:
                return
            try:
                process.stdin.write(stdin.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            finally:
                process.stdin.close()

        async def communicate() -> None:
            await asyncio.gather(
                drain(process.stdout, stdout_buf),
                drain(process.stderr, stderr_buf),
                feed(),
            )
            await process.wait()

        try:
            await asyncio.wait_for(communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            kill_process_group(process)
            await self._reap(process)
            log.info("Session %s: command timed out after %ss: %s", session.session_id, timeout, command)
            return ExecutionResult(
                command=command,
                stdout=stdout_buf.decode("utf-8", errors="replace"),
                stderr=stderr_buf.decode("utf-8", errors="replace"),
                exit_code=TIMEOUT_EXIT_CODE,
                duration_ms=elapsed_ms(),
                error=f"Command timed out after {timeout}s",
                truncated=overflow,
                status="timeout",
                signal="SIGKILL",
            )
        finally:
            running.discard(process)

        exit_code, signal_name = _exit_status(process.returncode or 0)
        error: str | None = None
        if overflow:
            error = f"Output exceeded {self._output_limit} bytes; process killed"
            if exit_code == 0:
                exit_code = 128 + signal.SIGKILL
                signal_name = "SIGKILL"
        elif signal_name:
            error = f"Process killed by {signal_name}"

        return ExecutionResult(
            command=command,
            stdout=stdout_buf.decode("utf-8", errors="replace"),
            stderr=stderr_buf.decode("utf-8", errors="replace"),
            exit_code=exit_code,
            duration_ms=elapsed_ms(),
            error=error,
            truncated=overflow,
            status="ok" if exit_code == 0 else "error",
            signal=signal_name,
        )

    async def start_server(
        self, session: Session, command: str, log_path: Path
    ) -> ServerHandle:
        """Start a detached server whose stdout/stderr are appended to log_path.

        The process runs in its own session so it outlives the request that
        started it; it is only reclaimed through stop_server() or teardown().

        Raises:
            CommandRejected: If the gate refuses the command.
            ServerStartFailure: If the process could not be spawned.
        """
        self._gate.check(command)
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ServerStartFailure(command=command, reason=f"could not parse command: {e}") from e

        log_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(log_path, "ab") as log_file:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(session.workdir),
                    env=os.environ.copy(),
                    start_new_session=True,
                )
        except OSError as e:
            raise ServerStartFailure(command=command, reason=str(e)) from e

        pid_file_for(log_path).write_text(str(process.pid), encoding="utf-8")
        self._servers.setdefault(session.session_id, set()).add(process)
        log.info("Session %s: detached pid %d: %s", session.session_id, process.pid, command)
        return ServerHandle(pid=process.pid, handle=process)

    async def stop_server(self, session: Session, handle: ServerHandle) -> None:
        process = handle.handle
        if not isinstance(process, asyncio.subprocess.Process):
            return
        self._servers.get(session.session_id, set()).discard(process)
        kill_process_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            kill_process_group(process)
            await self._reap(process)

    async def teardown(self, session: Session) -> None:
        """Kill in-flight commands and any detached servers still tracked."""
        processes = self._running.pop(session.session_id, set())
        processes |= self._servers.pop(session.session_id, set())
        for process in processes:
            kill_process_group(process)
        for process in processes:
            await self._reap(process)

    async def reclaim_orphans(self) -> int:
        # Detached local processes are found through pid files by sandboxer.clean
        return 0

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            log.warning("Process %d did not exit after SIGKILL", process.pid)

    @staticmethod
    def _spawn_failure(command: str, code: int, message: str, duration_ms: float) -> ExecutionResult:
        return ExecutionResult(
            command=command,
            stdout="",
            stderr=message,
            exit_code=code,
            duration_ms=duration_ms,
            error=message,
            status="error",
        )
