#!/usr/bin/env python3
"""Reclaim session workspaces left behind by a previous process.

Session metadata lives only in memory, so after a crash every directory
under the base dir is an orphan. Detached processes are found through the
pid files written next to their logs and killed before the directory goes.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import signal
import sys
import uuid
from collections.abc import Iterable
from pathlib import Path

from sandboxer.logging import get_logger

log = get_logger("clean")

# Relative to a workspace root; must match the layout SessionManager writes
PID_GLOB = ".sandbox/logs/*.pid"


def _is_session_dir(path: Path) -> bool:
    """Only uuid-named directories are treated as session workspaces."""
    if not path.is_dir() or path.is_symlink():
        return False
    try:
        uuid.UUID(path.name)
    except ValueError:
        return False
    return True


def _process_cwd(pid: int) -> Path | None:
    try:
        return Path(os.readlink(f"/proc/{pid}/cwd"))
    except OSError:
        return None


def kill_orphan_processes(workdir: Path) -> list[int]:
    """Kill detached processes recorded in a workspace's pid files.

    A pid is only signalled when /proc shows it still running inside the
    workspace, so a recycled pid is never hit.

    Returns:
        Pids that were signalled.
    """
    killed: list[int] = []
    root = workdir.resolve()
    for pid_file in root.glob(PID_GLOB):
        try:
            pid = int(pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            continue
        cwd = _process_cwd(pid)
        if cwd is None:
            continue
        if cwd != root and root not in cwd.parents:
            continue
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.kill(pid, signal.SIGKILL)
        killed.append(pid)
        log.debug("Killed orphan pid %d in %s", pid, root)
    return killed


def clean_workspaces(base_dir: Path | str, keep: Iterable[str] = ()) -> list[Path]:
    """Remove orphaned session workspaces under base_dir.

    Args:
        base_dir: Directory holding one subdirectory per session.
        keep: Session ids that are live and must be left alone.

    Returns:
        Workspaces that were removed.
    """
    base = Path(base_dir)
    if not base.is_dir():
        return []
    live = set(keep)
    removed: list[Path] = []

    for path in sorted(base.iterdir()):
        if path.name in live or not _is_session_dir(path):
            continue
        if sys.platform != "win32":
            kill_orphan_processes(path)
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            log.warning("Could not remove orphan workspace %s", path)
            continue
        removed.append(path)

    if removed:
        log.info("Removed %d orphan workspaces under %s", len(removed), base)
    return removed


def main() -> None:
    from sandboxer.config import load_config

    base_dir = sys.argv[1] if len(sys.argv) > 1 else load_config().workspace.base_dir
    removed = clean_workspaces(base_dir)
    if removed:
        print(f"Removed {len(removed)} workspaces:")
        for p in removed[:10]:
            print(f"  {p}")
        if len(removed) > 10:
            print(f"  ... and {len(removed) - 10} more")
    else:
        print("Nothing to clean.")


if __name__ == "__main__":
    main()
