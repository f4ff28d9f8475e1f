"""Session layer: gate, workspaces, detached processes, sweeper, SessionManager."""

from sandboxer.session.gate import CommandGate
from sandboxer.session.workspace import WorkspaceStore, parse_size
from sandboxer.session.processes import DetachedProcess, ProcessRegistry
from sandboxer.session.sweeper import ExpirySweeper
from sandboxer.session.session_manager import (
    HistoryEntry,
    ResourceLimits,
    ServerInfo,
    Session,
    SessionManager,
    SessionState,
    SessionStats,
)

__all__ = [
    "CommandGate",
    "DetachedProcess",
    "ExpirySweeper",
    "HistoryEntry",
    "ProcessRegistry",
    "ResourceLimits",
    "ServerInfo",
    "Session",
    "SessionManager",
    "SessionState",
    "SessionStats",
    "WorkspaceStore",
    "parse_size",
]
