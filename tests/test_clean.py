"""Tests for the clean module."""

from __future__ import annotations

import subprocess
import sys
import uuid
from pathlib import Path

import pytest

from sandboxer.clean import PID_GLOB, clean_workspaces, kill_orphan_processes, main

needs_proc = pytest.mark.skipif(not Path("/proc/self/cwd").exists(), reason="requires /proc")


def make_workspace(base: Path, session_id: str | None = None) -> Path:
    workdir = base / (session_id or str(uuid.uuid4()))
    (workdir / "src").mkdir(parents=True)
    (workdir / "src" / "index.js").write_text("console.log(1)")
    return workdir


def write_pid(workdir: Path, pid: int) -> Path:
    pid_file = workdir / PID_GLOB.replace("*", "proc")
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(pid))
    return pid_file


class TestCleanWorkspaces:
    def test_removes_session_dirs(self, tmp_path: Path):
        a = make_workspace(tmp_path)
        b = make_workspace(tmp_path)
        removed = clean_workspaces(tmp_path)
        assert sorted(removed) == sorted([a, b])
        assert not a.exists()
        assert not b.exists()

    def test_keeps_live_sessions(self, tmp_path: Path):
        live = make_workspace(tmp_path)
        orphan = make_workspace(tmp_path)
        removed = clean_workspaces(tmp_path, keep={live.name})
        assert removed == [orphan]
        assert live.exists()

    def test_ignores_non_session_entries(self, tmp_path: Path):
        other = tmp_path / "not-a-session"
        other.mkdir()
        (tmp_path / f"{uuid.uuid4()}").write_text("a file, not a workspace")
        assert clean_workspaces(tmp_path) == []
        assert other.exists()

    def test_missing_base_dir(self, tmp_path: Path):
        assert clean_workspaces(tmp_path / "missing") == []


@needs_proc
class TestKillOrphanProcesses:
    def test_kills_process_running_in_workspace(self, tmp_path: Path):
        workdir = make_workspace(tmp_path)
        proc = subprocess.Popen(["sleep", "30"], cwd=workdir, start_new_session=True)
        try:
            write_pid(workdir, proc.pid)
            assert kill_orphan_processes(workdir) == [proc.pid]
            assert proc.wait(timeout=5) != 0
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_spares_recycled_pid_elsewhere(self, tmp_path: Path):
        workdir = make_workspace(tmp_path)
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        proc = subprocess.Popen(["sleep", "30"], cwd=elsewhere, start_new_session=True)
        try:
            write_pid(workdir, proc.pid)
            assert kill_orphan_processes(workdir) == []
            assert proc.poll() is None
        finally:
            proc.kill()
            proc.wait()

    def test_stale_pid_file(self, tmp_path: Path):
        workdir = make_workspace(tmp_path)
        proc = subprocess.Popen(["true"], cwd=workdir)
        proc.wait()
        write_pid(workdir, proc.pid)
        assert kill_orphan_processes(workdir) == []

    def test_garbage_pid_file(self, tmp_path: Path):
        workdir = make_workspace(tmp_path)
        write_pid(workdir, 0).write_text("not a pid")
        assert kill_orphan_processes(workdir) == []

    def test_clean_kills_before_removing(self, tmp_path: Path):
        workdir = make_workspace(tmp_path)
        proc = subprocess.Popen(["sleep", "30"], cwd=workdir, start_new_session=True)
        try:
            write_pid(workdir, proc.pid)
            assert clean_workspaces(tmp_path) == [workdir]
            assert proc.wait(timeout=5) != 0
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()


class TestMain:
    def test_main_with_base_dir(self, tmp_path: Path, monkeypatch, capsys):
        make_workspace(tmp_path)
        monkeypatch.setattr(sys, "argv", ["sandboxer-clean", str(tmp_path)])
        main()
        assert "Removed 1 workspaces" in capsys.readouterr().out

    def test_main_nothing_to_clean(self, tmp_path: Path, monkeypatch, capsys):
        monkeypatch.setenv("SANDBOX_BASE_DIR", str(tmp_path))
        monkeypatch.setattr(sys, "argv", ["sandboxer-clean"])
        main()
        assert "Nothing to clean." in capsys.readouterr().out
