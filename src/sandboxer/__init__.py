"""sandboxer: ephemeral per-session code execution sandboxes."""

__version__ = "0.1.0"

# Public API
from sandboxer.config import Config, get_config, load_config
from sandboxer.errors import (
    CapacityExceeded,
    CommandRejected,
    FilesystemError,
    PathOutsideWorkspace,
    ProcessNotFound,
    ProvisioningFailure,
    SandboxError,
    ServerStartFailure,
    SessionNotFound,
    SessionUnavailable,
)
from sandboxer.session import (
    CommandGate,
    DetachedProcess,
    ResourceLimits,
    ServerInfo,
    Session,
    SessionManager,
    SessionState,
    SessionStats,
)
from sandboxer.terminal import ExecutionResult

__all__ = [
    # Main entry point
    "SessionManager",
    "Session",
    "SessionState",
    "SessionStats",
    "ResourceLimits",
    "ServerInfo",
    "DetachedProcess",
    "CommandGate",
    "ExecutionResult",
    # Config
    "Config",
    "load_config",
    "get_config",
    # Errors
    "SandboxError",
    "SessionNotFound",
    "SessionUnavailable",
    "CapacityExceeded",
    "CommandRejected",
    "ProvisioningFailure",
    "FilesystemError",
    "PathOutsideWorkspace",
    "ProcessNotFound",
    "ServerStartFailure",
]
