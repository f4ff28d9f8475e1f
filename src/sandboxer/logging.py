"""Logging for sandboxer.

Everything logs under the "sandboxer" logger through stdlib logging:
- Level from config.logging.verbose (0-4) or config.logging.level
- A log file from config.logging.file or SANDBOX_LOG
- Stderr only when it is an interactive console
- session_logger() tags records with the session they concern
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import MutableMapping

    from sandboxer.config.schema import LoggingConfig

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("sandboxer")

_initialized = False

_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# verbose=N, 0 = errors only, 4 = everything
_VERBOSITY = (logging.ERROR, logging.WARNING, logging.INFO, VERBOSE, TRACE)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


class _LowercaseLevelFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the session id and exposes it as record.session_id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        session_id = self.extra["session_id"] if self.extra else "-"
        kwargs.setdefault("extra", {})["session_id"] = session_id
        return f"[{session_id[:8]}] {msg}", kwargs


def resolve_level(config: LoggingConfig | None) -> int:
    """Effective level for a logging config; verbose wins over level, INFO by default."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        return _VERBOSITY[max(0, min(config.verbose, len(_VERBOSITY) - 1))]
    if config.level:
        return _LEVELS.get(config.level.upper(), logging.INFO)
    return logging.INFO


def _handler(level: int, path: str | None) -> logging.Handler | None:
    if path:
        try:
            handler: logging.Handler = logging.FileHandler(
                os.path.expanduser(path), mode="a", encoding="utf-8"
            )
        except OSError as e:
            print(f"[sandboxer] Failed to open log file {path}: {e}", file=sys.stderr)
            handler = logging.StreamHandler(sys.stderr)
    elif sys.stderr.isatty():
        handler = logging.StreamHandler(sys.stderr)
    else:
        # Host process owns stderr; stay quiet unless a file is configured
        return None
    handler.setLevel(level)
    handler.setFormatter(_LowercaseLevelFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(config: LoggingConfig | None = None) -> int:
    """Configure the sandboxer logger once; later calls are no-ops.

    Args:
        config: Level, verbosity and file settings. The loader has already
            folded SANDBOX_LOG into config.file; without a config the
            variable is read directly.

    Returns:
        The level the sandboxer logger is set to.
    """
    global _initialized
    if _initialized:
        return logger.level
    _initialized = True

    level = resolve_level(config)
    logger.setLevel(level)
    path = config.file if config and config.file else os.environ.get("SANDBOX_LOG")
    handler = _handler(level, path)
    if handler is not None:
        logger.addHandler(handler)
    return level


def reset_logging() -> None:
    """Drop installed handlers so setup_logging() runs again (tests)."""
    global _initialized
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    _initialized = False


def get_logger(name: str | None = None) -> logging.Logger:
    """The sandboxer logger, or a child such as get_logger("session")."""
    return logger.getChild(name) if name else logger


def session_logger(base: logging.Logger, session_id: str) -> SessionLogAdapter:
    return SessionLogAdapter(base, {"session_id": session_id})
