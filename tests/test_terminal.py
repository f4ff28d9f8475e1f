"""Tests for execution results and the local process backend."""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from sandboxer.errors import CommandRejected, ServerStartFailure
from sandboxer.session.gate import CommandGate
from sandboxer.session.session_manager import ResourceLimits, Session
from sandboxer.terminal.result import TIMEOUT_EXIT_CODE, ExecutionResult
from sandboxer.terminal.subprocess_executor import (
    LocalProcessBackend,
    _exit_status,
    pid_file_for,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")

TEST_COMMANDS = frozenset({"sh", "sleep", "true", "pwd", "cat"})


def make_session(workdir: Path, session_id: str = "s1") -> Session:
    return Session(
        session_id=session_id,
        owner="u1",
        workdir=workdir,
        backend="local",
        limits=ResourceLimits(),
        created_at=0.0,
        expires_at=60.0,
    )


class TestExecutionResult:
    """Tests for ExecutionResult dataclass."""

    def test_success_property(self):
        result = ExecutionResult(command="echo hi", stdout="hi\n", stderr="", exit_code=0, duration_ms=1.0)
        assert result.success is True
        assert result.timed_out is False

    def test_failure_property(self):
        result = ExecutionResult(
            command="false", stdout="", stderr="", exit_code=1, duration_ms=1.0, status="error"
        )
        assert result.success is False

    def test_timeout_property(self):
        result = ExecutionResult(
            command="sleep 100",
            stdout="",
            stderr="",
            exit_code=TIMEOUT_EXIT_CODE,
            duration_ms=1000.0,
            error="Command timed out after 1s",
            status="timeout",
            signal="SIGKILL",
        )
        assert result.success is False
        assert result.timed_out is True

    def test_repr_ok(self):
        result = ExecutionResult(command="echo", stdout="a\nb", stderr="", exit_code=0, duration_ms=1.0)
        assert repr(result) == "<ExecutionResult ok, 2 lines>"

    def test_repr_error(self):
        result = ExecutionResult(
            command="false", stdout="", stderr="", exit_code=1, duration_ms=1.0, status="error"
        )
        assert "error" in repr(result)
        assert "exit=1" in repr(result)

    def test_to_dict(self):
        data = ExecutionResult(command="echo", stdout="x", stderr="", exit_code=0, duration_ms=2.5).to_dict()
        assert data["stdout"] == "x"
        assert data["success"] is True
        assert data["truncated"] is False


class TestExitStatus:
    def test_normal_exit(self):
        assert _exit_status(3) == (3, None)

    def test_killed_by_signal(self):
        assert _exit_status(-9) == (137, "SIGKILL")


class TestLocalProcessBackend:
    """Tests for LocalProcessBackend."""

    @pytest.fixture
    def backend(self):
        return LocalProcessBackend(gate=CommandGate(allowed_commands=TEST_COMMANDS | {"echo", "ls"}))

    @pytest.fixture
    def session(self, tmp_path):
        workdir = tmp_path / "ws"
        workdir.mkdir()
        return make_session(workdir)

    @pytest.mark.asyncio
    async def test_echo_basic(self, backend, session):
        result = await backend.run(session, "echo hello", timeout=10)
        assert result.success
        assert result.stdout == "hello\n"
        assert result.status == "ok"
        assert result.exit_code == 0
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, backend, session):
        result = await backend.run(session, "pwd", timeout=10)
        assert Path(result.stdout.strip()).resolve() == session.workdir.resolve()

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, backend, session):
        result = await backend.run(session, "sh -c 'echo oops >&2; exit 3'", timeout=10)
        assert not result.success
        assert result.exit_code == 3
        assert result.status == "error"
        assert result.stderr == "oops\n"

    @pytest.mark.asyncio
    async def test_env_overrides_merged(self, backend, session):
        result = await backend.run(
            session, "sh -c 'echo $GREETING:$HOME'", timeout=10, env={"GREETING": "hey"}
        )
        assert result.stdout.startswith("hey:")
        assert result.stdout.strip() != "hey:"

    @pytest.mark.asyncio
    async def test_stdin(self, backend, session):
        result = await backend.run(session, "cat", timeout=10, stdin="from stdin")
        assert result.stdout == "from stdin"

    @pytest.mark.asyncio
    async def test_no_shell_interpretation(self, backend, session):
        result = await backend.run(session, "echo a; ls /", timeout=10)
        assert result.stdout == "a; ls /\n"

    @pytest.mark.asyncio
    async def test_rejected_before_spawn(self, backend, session, monkeypatch):
        spawned = []

        async def fake_exec(*args, **kwargs):
            spawned.append(args)
            raise AssertionError("should not spawn")

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        with pytest.raises(CommandRejected):
            await backend.run(session, "perl -e 1", timeout=10)
        assert spawned == []

    @pytest.mark.asyncio
    async def test_command_not_found(self, session):
        backend = LocalProcessBackend(gate=CommandGate(allowed_commands=frozenset({"nonexistent_command_xyz"})))
        result = await backend.run(session, "nonexistent_command_xyz", timeout=10)
        assert result.exit_code == 127
        assert result.status == "error"
        assert result.error

    @pytest.mark.asyncio
    async def test_unparseable_command(self, backend, session):
        result = await backend.run(session, "echo 'unterminated", timeout=10)
        assert result.exit_code == 2
        assert "parse" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_bounded(self, backend, session):
        start = time.monotonic()
        result = await backend.run(session, "sleep 30", timeout=0.5)
        elapsed = time.monotonic() - start
        assert elapsed < 5
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.status == "timeout"
        assert result.timed_out
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_timeout_kills_process_group(self, backend, session):
        # The child sleep must die with its parent shell
        result = await backend.run(session, "sh -c 'sleep 30 & echo started; wait'", timeout=0.5)
        assert result.status == "timeout"
        assert result.stdout == "started\n"
        assert backend._running.get(session.session_id) == set()

    @pytest.mark.asyncio
    async def test_output_limit(self, session):
        backend = LocalProcessBackend(
            gate=CommandGate(allowed_commands=TEST_COMMANDS), output_limit=1000
        )
        result = await backend.run(session, "sh -c 'while :; do echo xxxxxxxxxxxxxxxx; done'", timeout=10)
        assert result.truncated
        assert result.exit_code != 0
        assert result.error
        assert len(result.stdout) + len(result.stderr) <= 1000

    @pytest.mark.asyncio
    async def test_teardown_kills_in_flight_command(self, backend, session):
        task = asyncio.create_task(backend.run(session, "sleep 30", timeout=30))
        for _ in range(100):
            if backend._running.get(session.session_id):
                break
            await asyncio.sleep(0.02)
        await backend.teardown(session)
        result = await asyncio.wait_for(task, timeout=5)
        assert result.exit_code != 0
        assert result.signal == "SIGKILL"


class TestLocalServers:
    """Detached processes started through start_server()."""

    @pytest.fixture
    def backend(self):
        return LocalProcessBackend(gate=CommandGate(allowed_commands=TEST_COMMANDS), kill_grace=2.0)

    @pytest.fixture
    def session(self, tmp_path):
        workdir = tmp_path / "ws"
        workdir.mkdir()
        return make_session(workdir)

    @pytest.mark.asyncio
    async def test_start_writes_log_and_pid(self, backend, session):
        log_path = session.workdir / ".sandbox" / "logs" / "p1.log"
        handle = await backend.start_server(session, "sh -c 'echo listening; sleep 30'", log_path)
        try:
            assert handle.pid
            assert pid_file_for(log_path).read_text() == str(handle.pid)
            for _ in range(100):
                if log_path.exists() and "listening" in log_path.read_text():
                    break
                await asyncio.sleep(0.02)
            assert "listening" in log_path.read_text()
        finally:
            await backend.stop_server(session, handle)
        assert handle.handle.returncode is not None

    @pytest.mark.asyncio
    async def test_gate_applies_to_servers(self, backend, session, tmp_path):
        with pytest.raises(CommandRejected):
            await backend.start_server(session, "node server.js", tmp_path / "x.log")

    @pytest.mark.asyncio
    async def test_spawn_failure(self, session, tmp_path):
        backend = LocalProcessBackend(gate=CommandGate(allowed_commands=frozenset({"no_such_server_bin"})))
        with pytest.raises(ServerStartFailure):
            await backend.start_server(session, "no_such_server_bin", tmp_path / "x.log")

    @pytest.mark.asyncio
    async def test_teardown_kills_servers(self, backend, session):
        handle = await backend.start_server(session, "sleep 30", session.workdir / "s.log")
        await backend.teardown(session)
        assert handle.handle.returncode is not None
        with pytest.raises(ProcessLookupError):
            os.kill(handle.pid, 0)

    @pytest.mark.asyncio
    async def test_stop_already_exited(self, backend, session):
        handle = await backend.start_server(session, "true", session.workdir / "t.log")
        await handle.handle.wait()
        await backend.stop_server(session, handle)

    @pytest.mark.asyncio
    async def test_reclaim_orphans_is_noop(self, backend):
        assert await backend.reclaim_orphans() == 0
