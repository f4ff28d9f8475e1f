"""Tests for logging configuration."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

from sandboxer.config.schema import LoggingConfig
from sandboxer.logging import (
    TRACE,
    VERBOSE,
    get_logger,
    reset_logging,
    resolve_level,
    session_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _fresh_logging():
    reset_logging()
    yield
    reset_logging()


class TestResolveLevel:
    @pytest.mark.parametrize(
        ("level", "expected"),
        [
            ("DEBUG", logging.DEBUG),
            ("info", logging.INFO),
            ("WARN", logging.WARNING),
            ("ERROR", logging.ERROR),
            ("CRITICAL", logging.CRITICAL),
            ("TRACE", TRACE),
            ("bogus", logging.INFO),
        ],
    )
    def test_level_names(self, level, expected):
        assert resolve_level(LoggingConfig(level=level)) == expected

    @pytest.mark.parametrize(
        ("verbose", "expected"),
        [(0, logging.ERROR), (2, logging.INFO), (3, VERBOSE), (4, TRACE), (9, TRACE)],
    )
    def test_verbosity(self, verbose, expected):
        assert resolve_level(LoggingConfig(verbose=verbose)) == expected

    def test_verbose_wins_over_level(self):
        assert resolve_level(LoggingConfig(level="ERROR", verbose=4)) == TRACE

    def test_default(self):
        assert resolve_level(None) == logging.INFO
        assert resolve_level(LoggingConfig()) == logging.INFO


class TestSetupLogging:
    def test_file_handler(self, tmp_path: Path):
        log_file = tmp_path / "sandboxer.log"
        assert setup_logging(LoggingConfig(level="INFO", file=str(log_file))) == logging.INFO

        get_logger("session").info("Session created")
        for handler in get_logger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert "info sandboxer.session: Session created" in content

    def test_env_var_without_config(self, tmp_path: Path, monkeypatch):
        log_file = tmp_path / "env.log"
        monkeypatch.setenv("SANDBOX_LOG", str(log_file))
        setup_logging()
        assert log_file.exists()

    def test_unopenable_file_falls_back_to_stderr(self, tmp_path: Path):
        setup_logging(LoggingConfig(file=str(tmp_path / "missing" / "dir" / "log.txt")))
        [handler] = get_logger().handlers
        assert isinstance(handler, logging.StreamHandler)
        assert not isinstance(handler, logging.FileHandler)

    def test_no_handler_when_stderr_is_not_a_console(self, monkeypatch):
        monkeypatch.setattr(sys.stderr, "isatty", lambda: False, raising=False)
        setup_logging(LoggingConfig(level="DEBUG"))
        assert get_logger().handlers == []

    def test_idempotent(self, tmp_path: Path):
        setup_logging(LoggingConfig(level="DEBUG", file=str(tmp_path / "a.log")))
        assert setup_logging(LoggingConfig(level="ERROR", file=str(tmp_path / "b.log"))) == logging.DEBUG
        assert len(get_logger().handlers) == 1
        assert not (tmp_path / "b.log").exists()


class TestLoggers:
    def test_child_logger(self):
        assert get_logger("session").name == "sandboxer.session"
        assert get_logger().name == "sandboxer"

    def test_session_logger(self, caplog):
        log = session_logger(get_logger("session"), "3f1c2a9e-0000-4000-8000-000000000001")
        with caplog.at_level(logging.INFO, logger="sandboxer"):
            log.info("destroyed")
        [record] = caplog.records
        assert record.getMessage() == "[3f1c2a9e] destroyed"
        assert record.session_id == "3f1c2a9e-0000-4000-8000-000000000001"
