"""Per-session workspace directories on the host filesystem.

Every session owns exactly one directory under the configured base dir.
All paths handed in by callers are relative to that directory and are
confined to it: absolute paths, `..` escapes and symlinks pointing outside
are rejected before any I/O happens.
"""

from __future__ import annotations

import base64
import binascii
import os
import re
import shutil
import sys
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from sandboxer.errors import CapacityExceeded, FilesystemError, PathOutsideWorkspace
from sandboxer.logging import get_logger

log = get_logger("workspace")

# Engine-private directory inside each workspace (process logs, pid files)
INTERNAL_DIR = ".sandbox"

ENCODINGS = ("utf8", "base64")

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)b?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_size(value: str | int) -> int:
    """Parse a docker-style size ("512m", "1g", "2048") into bytes.

    Raises:
        ValueError: If the value is not a recognizable size.
    """
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.lower()])


def _check_encoding(encoding: str) -> None:
    if encoding not in ENCODINGS:
        raise ValueError(f"Unsupported encoding: {encoding!r} (expected one of {ENCODINGS})")


class WorkspaceStore:
    """Filesystem operations confined to session workspaces.

    The store holds no per-session state: every method takes the workdir
    the SessionManager handed out, so the session table stays the single
    source of truth for which directories exist.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir).expanduser().resolve()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def workdir_for(self, session_id: str) -> Path:
        return self._base_dir / session_id

    def create(self, workdir: Path) -> Path:
        """Create a fresh workspace directory.

        Raises:
            FilesystemError: If the directory cannot be created or already exists.
        """
        try:
            workdir.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise FilesystemError(path=str(workdir), reason=str(e)) from e
        log.debug("Workspace created: %s", workdir)
        return workdir

    def remove(self, workdir: Path) -> bool:
        """Recursively delete a workspace. Best-effort: failures are logged.

        Returns:
            True if the directory is gone afterwards.
        """
        if not workdir.exists():
            return True
        errors: list[str] = []

        def on_error(func: object, path: str, exc_info: object) -> None:
            errors.append(path)

        if sys.version_info >= (3, 12):
            shutil.rmtree(workdir, onexc=on_error)
        else:
            shutil.rmtree(workdir, onerror=on_error)
        if errors:
            log.warning("Failed to remove %d paths under %s (first: %s)", len(errors), workdir, errors[0])
        return not workdir.exists()

    def resolve(self, workdir: Path, relative_path: str) -> Path:
        """Resolve a caller path to an absolute path inside the workspace.

        Symlinks are followed before the containment check, so a link that
        points outside the workspace is rejected like a `..` escape.

        Raises:
            PathOutsideWorkspace: If the path is absolute or escapes the workspace.
        """
        if not relative_path or relative_path in (".", "./"):
            return workdir.resolve()
        if os.path.isabs(relative_path) or relative_path.startswith(("/", "\\")):
            raise PathOutsideWorkspace(relative_path)

        root = workdir.resolve()
        try:
            resolved = (root / relative_path).resolve()
        except (OSError, RuntimeError) as e:
            # RuntimeError: symlink loop on older interpreters
            raise FilesystemError(path=relative_path, reason=str(e)) from e
        try:
            resolved.relative_to(root)
        except ValueError:
            log.debug("Path outside workspace denied: %s -> %s", relative_path, resolved)
            raise PathOutsideWorkspace(relative_path) from None
        return resolved

    def write_file(
        self,
        workdir: Path,
        path: str,
        content: str,
        encoding: str = "utf8",
        *,
        quota: int | None = None,
    ) -> int:
        """Write a file, creating parent directories as needed.

        Args:
            workdir: Session workspace.
            path: Path relative to the workspace.
            content: Text, or base64 text when encoding is "base64".
            encoding: "utf8" or "base64".
            quota: Maximum total workspace size in bytes after the write.

        Returns:
            Number of bytes written.

        Raises:
            PathOutsideWorkspace: If the path escapes the workspace.
            CapacityExceeded: If the write would exceed the disk quota.
            FilesystemError: On invalid base64 or OS errors.
        """
        usage = self.disk_usage(workdir) if quota is not None else 0
        written, _delta = self._write(workdir, path, content, encoding, quota, usage)
        return written

    def write_files(
        self, workdir: Path, files: Iterable[Mapping[str, Any]], *, quota: int | None = None
    ) -> int:
        """Write {path, content, encoding} entries in order; stops at the first failure.

        The workspace is measured once and the batch's own writes are
        counted against the quota as they go.

        Returns:
            Number of files written.
        """
        usage = self.disk_usage(workdir) if quota is not None else 0
        count = 0
        for entry in files:
            _written, delta = self._write(
                workdir, entry["path"], entry["content"], entry.get("encoding", "utf8"), quota, usage
            )
            usage += delta
            count += 1
        return count

    def _write(
        self, workdir: Path, path: str, content: str, encoding: str, quota: int | None, usage: int
    ) -> tuple[int, int]:
        """Write one file given the current workspace usage; returns (bytes written, usage change)."""
        _check_encoding(encoding)
        target = self.resolve(workdir, path)
        if encoding == "base64":
            try:
                data = base64.b64decode(content, validate=True)
            except (binascii.Error, ValueError) as e:
                raise FilesystemError(path=path, reason=f"invalid base64 content: {e}") from e
        else:
            data = content.encode("utf-8")

        existing = target.stat().st_size if target.is_file() else 0
        delta = len(data) - existing
        if quota is not None and usage + delta > quota:
            raise CapacityExceeded(resource="disk", limit=quota)

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise FilesystemError(path=path, reason=str(e)) from e
        return len(data), delta

    def read_file(self, workdir: Path, path: str, encoding: str = "utf8") -> str:
        """Read a file; base64 encoding returns the bytes as base64 text.

        Raises:
            PathOutsideWorkspace: If the path escapes the workspace.
            FilesystemError: If the file is missing, not UTF-8, or unreadable.
        """
        _check_encoding(encoding)
        target = self.resolve(workdir, path)
        try:
            data = target.read_bytes()
        except OSError as e:
            raise FilesystemError(path=path, reason=e.strerror or str(e)) from e
        if encoding == "base64":
            return base64.b64encode(data).decode("ascii")
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FilesystemError(path=path, reason="file is not valid UTF-8; read it as base64") from e

    def iter_files(self, workdir: Path, path: str = ".") -> Iterator[str]:
        """Enumerate files under a workspace directory.

        The directory is resolved and checked immediately; the listing
        itself is produced lazily, depth-first in sorted order, as paths
        relative to the workspace root using forward slashes.

        Raises:
            PathOutsideWorkspace: If the path escapes the workspace.
            FilesystemError: If the path does not exist.
        """
        root = workdir.resolve()
        start = self.resolve(workdir, path)
        if not start.exists():
            raise FilesystemError(path=path, reason="no such file or directory")
        if start.is_file():
            return iter([start.relative_to(root).as_posix()])
        return self._walk(root, start)

    def _walk(self, root: Path, directory: Path) -> Iterator[str]:
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError as e:
            log.warning("Cannot list %s: %s", directory, e)
            return
        for entry in entries:
            if directory == root and entry.name == INTERNAL_DIR:
                continue
            if entry.is_symlink():
                # Never follow links out of the workspace
                continue
            if entry.is_dir():
                yield from self._walk(root, entry)
            elif entry.is_file():
                yield entry.relative_to(root).as_posix()

    def disk_usage(self, workdir: Path) -> int:
        """Total size in bytes of all regular files in the workspace."""
        total = 0
        for dirpath, _dirnames, filenames in os.walk(workdir):
            for name in filenames:
                file_path = os.path.join(dirpath, name)
                if os.path.islink(file_path):
                    continue
                try:
                    total += os.path.getsize(file_path)
                except OSError:
                    continue
        return total

    def internal_dir(self, workdir: Path) -> Path:
        """Engine-private directory for logs and pid files."""
        return workdir / INTERNAL_DIR
