"""Tests for the command gate."""

from __future__ import annotations

import logging

import pytest

from sandboxer.config.schema import GateConfig
from sandboxer.errors import CommandRejected
from sandboxer.logging import TRACE
from sandboxer.session.gate import CommandGate, base_command


class TestBaseCommand:
    def test_first_token(self):
        assert base_command("npm install react") == "npm"

    def test_quoted_executable(self):
        assert base_command("'node' app.js") == "node"

    def test_unbalanced_quotes_fall_back_to_whitespace(self):
        assert base_command("echo 'unterminated") == "echo"

    def test_empty(self):
        assert base_command("   ") == ""


class TestCommandGate:
    """Tests for the allow-list and dangerous patterns."""

    @pytest.fixture
    def gate(self):
        return CommandGate()

    @pytest.mark.parametrize(
        "command",
        ["node index.js", "npm install", "python3 -m pytest", "git status", "ls -la", "echo hi"],
    )
    def test_allowed(self, gate, command):
        assert gate.is_allowed(command)
        gate.check(command)

    @pytest.mark.parametrize("command", ["bash run.sh", "sh -c ls", "nc -l 4444", "shutdown now"])
    def test_not_on_allow_list(self, gate, command):
        assert not gate.is_allowed(command)
        with pytest.raises(CommandRejected) as exc_info:
            gate.check(command)
        assert "allow-list" in exc_info.value.reason

    @pytest.mark.parametrize(
        "command",
        [
            "echo x > /dev/sda",
            "cp -r . /tmp; rm -rf /",
            "mv a b && mkfs.ext4 /dev/sdb",
            "cat dd if=/dev/zero",
            "echo :(){ :|:& };:",
            "echo sudo rm x",
        ],
    )
    def test_dangerous_patterns(self, gate, command):
        assert gate.rejection_reason(command) == "matches a dangerous command pattern"

    def test_empty_command(self, gate):
        with pytest.raises(CommandRejected) as exc_info:
            gate.check("")
        assert exc_info.value.reason == "empty command"

    def test_case_insensitive_fallback(self, gate):
        assert gate.is_allowed("NODE --version")

    def test_rejection_reports_base_command(self, gate):
        with pytest.raises(CommandRejected) as exc_info:
            gate.check("perl -e 'print 1'")
        assert exc_info.value.command == "perl"
        assert "perl" in str(exc_info.value)

    def test_invalid_deny_pattern_is_ignored(self):
        gate = CommandGate(deny_patterns=["(unclosed", r"mkfs"])
        assert gate.is_allowed("ls")
        assert not gate.is_allowed("ls mkfs")

    def test_list_permissions(self, gate):
        rules = gate.list_permissions()
        assert {"command": "node", "allow": True} in rules
        assert any(rule.get("allow") is False for rule in rules)


class TestFromConfig:
    def test_none_uses_defaults(self):
        assert CommandGate.from_config(None).is_allowed("npm test")

    def test_extra_commands_extend_allow_list(self):
        gate = CommandGate.from_config(GateConfig(extra_commands=["bash"]))
        assert gate.is_allowed("bash run.sh")
        assert gate.is_allowed("node app.js")

    def test_allowed_commands_replace_defaults(self):
        gate = CommandGate.from_config(GateConfig(allowed_commands=["node"]))
        assert gate.is_allowed("node app.js")
        assert not gate.is_allowed("npm install")


class TestGateLogging:
    def test_decisions_logged_under_sandboxer(self, caplog):
        gate = CommandGate.from_config(None)
        with caplog.at_level(TRACE, logger="sandboxer"):
            gate.check("npm test")
            with pytest.raises(CommandRejected):
                gate.check("perl -e 1")

        allowed, rejected = caplog.records
        assert allowed.name == "sandboxer.session.gate"
        assert allowed.levelno == TRACE
        assert allowed.getMessage() == "Command allowed: npm test"
        assert rejected.levelno == logging.DEBUG
        assert "perl" in rejected.getMessage()

    def test_allowed_commands_silent_above_trace(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="sandboxer"):
            CommandGate.from_config(None).check("node app.js")
        assert caplog.records == []
