"""Root pytest configuration for all tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from sandboxer.config import Config, reset_config
from sandboxer.config.schema import GateConfig, SessionsConfig, WorkspaceConfig
from sandboxer.logging import reset_logging
from sandboxer.session import SessionManager

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)

# Shell utilities the tests drive commands through; not on the default allow-list
TEST_COMMANDS = ["sh", "bash", "sleep", "true", "false", "pwd", "env"]

_ENV_VARS = (
    "SANDBOX_BASE_DIR",
    "SANDBOX_MODE",
    "USE_DOCKER",
    "SANDBOX_IMAGE",
    "MAX_SANDBOX_SESSIONS",
    "SANDBOX_TIMEOUT",
    "SANDBOX_CPU_LIMIT",
    "SANDBOX_MEMORY_LIMIT",
    "SANDBOX_DISK_LIMIT",
    "SANDBOX_LOG",
    "SANDBOX_LOG_LEVEL",
)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep host config files and SANDBOX_* variables out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    reset_config()
    reset_logging()
    yield
    reset_config()
    reset_logging()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    return tmp_path / "sandboxes"


@pytest.fixture
def make_config(base_dir: Path):
    """Build a Config rooted in tmp_path with the test shell commands allowed."""

    def factory(**sessions: object) -> Config:
        return Config(
            workspace=WorkspaceConfig(base_dir=str(base_dir)),
            sessions=SessionsConfig(**sessions),  # type: ignore[arg-type]
            gate=GateConfig(extra_commands=list(TEST_COMMANDS)),
        )

    return factory


@pytest_asyncio.fixture
async def manager(make_config, clock: FakeClock):
    """A local-mode SessionManager with a fake clock."""
    mgr = SessionManager(make_config(idle_timeout=60.0, max_lifetime=600.0), clock=clock)
    yield mgr
    await mgr.shutdown()
