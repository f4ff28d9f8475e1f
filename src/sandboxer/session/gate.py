"""Command gate for the local-process backend.

A blunt default-deny check: the first token of a command line must be on the
allow-list and the whole line must not match a known-destructive pattern.
It guards which executables start, not what they do once running; isolation
from a permitted interpreter comes from the container backend.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sandboxer.config.schema import DEFAULT_ALLOWED_COMMANDS, DEFAULT_DENY_PATTERNS
from sandboxer.errors import CommandRejected
from sandboxer.logging import TRACE, get_logger

if TYPE_CHECKING:
    from sandboxer.config.schema import GateConfig

_log = get_logger("session.gate")


def base_command(command: str) -> str:
    """Return the executable name of a command line ("" for an empty line).

    Uses shell-style splitting so quoted executables are unwrapped; falls back
    to whitespace splitting when quotes are unbalanced.
    """
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()
    return tokens[0] if tokens else ""


@dataclass
class CommandGate:
    """Allow-list predicate deciding whether a command line may run locally.

    Checking is pure: it never spawns processes or touches the filesystem.

    Attributes:
        allowed_commands: Executable names that may start.
        deny_patterns: Regexes matched against the full command line.
    """

    allowed_commands: frozenset[str] = field(
        default_factory=lambda: frozenset(DEFAULT_ALLOWED_COMMANDS)
    )
    deny_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DENY_PATTERNS))
    _compiled: list[re.Pattern[str]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.allowed_commands = frozenset(self.allowed_commands)
        self._compiled = []
        for pattern in self.deny_patterns:
            try:
                self._compiled.append(re.compile(pattern))
            except re.error as e:
                _log.warning("Ignoring invalid deny pattern %r: %s", pattern, e)

    @classmethod
    def from_config(cls, config: GateConfig | None) -> CommandGate:
        """Create a CommandGate from a GateConfig (or defaults for None)."""
        if config is None:
            return cls()
        return cls(
            allowed_commands=frozenset(config.allowed_commands) | frozenset(config.extra_commands),
            deny_patterns=list(config.deny_patterns),
        )

    def rejection_reason(self, command: str) -> str | None:
        """Return why a command would be rejected, or None if it is allowed."""
        base = base_command(command)
        if not base:
            return "empty command"
        if base not in self.allowed_commands and base.lower() not in self.allowed_commands:
            return f"'{base}' is not on the allow-list"
        for pattern in self._compiled:
            if pattern.search(command):
                return "matches a dangerous command pattern"
        return None

    def is_allowed(self, command: str) -> bool:
        """Check if a command line is permitted."""
        return self.rejection_reason(command) is None

    def check(self, command: str) -> None:
        """Raise CommandRejected unless the command is permitted."""
        reason = self.rejection_reason(command)
        if reason is not None:
            _log.debug("Command rejected: %s (%s)", command, reason)
            raise CommandRejected(command=base_command(command) or command, reason=reason)
        _log.log(TRACE, "Command allowed: %s", command)

    def list_permissions(self) -> list[dict[str, Any]]:
        """List the gate's rules for inspection."""
        rules: list[dict[str, Any]] = [
            {"command": name, "allow": True} for name in sorted(self.allowed_commands)
        ]
        rules.extend({"pattern": p, "allow": False} for p in self.deny_patterns)
        return rules
