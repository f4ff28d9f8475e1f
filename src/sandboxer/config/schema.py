"""Configuration schema dataclasses for sandboxer.

Defines the structure of configuration at all levels (system, user, explicit
file, environment). All fields have defaults so partial configs merge cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_ALLOWED_COMMANDS: tuple[str, ...] = (
    "node",
    "npm",
    "yarn",
    "pnpm",
    "bun",
    "python",
    "python3",
    "go",
    "rustc",
    "cargo",
    "java",
    "javac",
    "gcc",
    "g++",
    "make",
    "git",
    "curl",
    "wget",
    "ls",
    "cat",
    "echo",
    "mkdir",
    "touch",
    "cp",
    "mv",
)

DEFAULT_DENY_PATTERNS: tuple[str, ...] = (
    r"rm\s+-rf\s+/\s*$",
    r"rm\s+-rf\s+\*",
    r">\s*/dev/sda",
    r"mkfs",
    r"dd\s+if=",
    r":\(\)\{.*\}.*:",
    r"sudo\s+rm",
    r"chmod\s+-R\s+777",
)


class ExecutionMode(Enum):
    """Which execution backend new sessions get.

    - LOCAL: direct subprocess execution in the workspace (trusted hosts)
    - CONTAINER: one resource-capped, network-less container per session
    """

    LOCAL = "local"
    CONTAINER = "container"


@dataclass
class WorkspaceConfig:
    """Where session workspaces live."""

    base_dir: str = "/tmp/sandbox"


@dataclass
class ExecutionConfig:
    """Execution backend configuration.

    Example config.yaml:
        execution:
          mode: container
          image: node:18-alpine
          default_timeout: 30
    """

    mode: ExecutionMode = ExecutionMode.LOCAL
    image: str = "node:18-alpine"
    default_timeout: float = 30.0  # Seconds per command
    install_timeout: float = 120.0  # Seconds for dependency installs
    output_limit: int = 10 * 1024 * 1024  # Bytes of stdout+stderr kept per command
    provision_timeout: float = 60.0  # Seconds to wait for container startup
    server_host: str = "localhost"  # Host used in start_server urls


@dataclass
class SessionsConfig:
    """Session pool limits and expiry."""

    max_sessions: int = 100
    idle_timeout: float = 30 * 60.0  # Sliding idle expiry (seconds)
    max_lifetime: float = 4 * 60 * 60.0  # Hard cap on expires_at - created_at
    sweep_interval: float = 5 * 60.0  # Seconds between expiry sweeps
    history_limit: int = 100  # Commands remembered per session


@dataclass
class LimitsConfig:
    """Per-session resource ceilings (docker-style strings).

    Used as defaults for new sessions; requested values are clamped to them.
    """

    cpu: str = "1"
    memory: str = "512m"
    disk: str = "1g"


@dataclass
class GateConfig:
    """Command gate for the local-process backend.

    Example config.yaml:
        gate:
          extra_commands: [sh, bash]
    """

    allowed_commands: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    extra_commands: list[str] = field(default_factory=list)
    deny_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DENY_PATTERNS))


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, overrides level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object.

    Aggregates all configuration sections. All fields use default factories
    to ensure partial configs work correctly with deep merging.
    """

    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Extension point for future config sections
    extra: dict[str, Any] = field(default_factory=dict)
