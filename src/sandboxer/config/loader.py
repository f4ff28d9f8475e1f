"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from sandboxer.config.merge import merge_configs
from sandboxer.config.paths import get_config_paths
from sandboxer.config.schema import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_DENY_PATTERNS,
    Config,
    ExecutionConfig,
    ExecutionMode,
    GateConfig,
    LimitsConfig,
    LoggingConfig,
    SessionsConfig,
    WorkspaceConfig,
)
from sandboxer.logging import get_logger

# Module logger (may not be configured yet at import time)
_log = get_logger("config")

# Global cached config
_cached_config: Config | None = None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML as dict, or empty dict on error.
    """
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def _env_number(name: str, cast: type[int] | type[float]) -> int | float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        _log.warning("Ignoring non-numeric %s=%r", name, raw)
        return None


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    Environment variables take highest priority. Variable names match the
    ones the deployment already uses (SANDBOX_TIMEOUT is in milliseconds).

    Returns:
        Config dict with values from environment.
    """
    overrides: dict[str, Any] = {}

    def section(name: str) -> dict[str, Any]:
        return overrides.setdefault(name, {})

    base_dir = os.environ.get("SANDBOX_BASE_DIR")
    if base_dir:
        section("workspace")["base_dir"] = base_dir

    if os.environ.get("USE_DOCKER", "").lower() == "true":
        section("execution")["mode"] = ExecutionMode.CONTAINER.value
    mode = os.environ.get("SANDBOX_MODE")
    if mode:
        section("execution")["mode"] = mode
    image = os.environ.get("SANDBOX_IMAGE")
    if image:
        section("execution")["image"] = image

    max_sessions = _env_number("MAX_SANDBOX_SESSIONS", int)
    if max_sessions is not None:
        section("sessions")["max_sessions"] = max_sessions
    timeout_ms = _env_number("SANDBOX_TIMEOUT", float)
    if timeout_ms is not None:
        section("sessions")["idle_timeout"] = timeout_ms / 1000.0

    for env_name, key in (
        ("SANDBOX_CPU_LIMIT", "cpu"),
        ("SANDBOX_MEMORY_LIMIT", "memory"),
        ("SANDBOX_DISK_LIMIT", "disk"),
    ):
        value = os.environ.get(env_name)
        if value:
            section("limits")[key] = value

    log_path = os.environ.get("SANDBOX_LOG")
    if log_path:
        section("logging")["file"] = log_path
    log_level = os.environ.get("SANDBOX_LOG_LEVEL")
    if log_level:
        section("logging")["level"] = log_level

    return overrides


def _parse_mode(value: Any) -> ExecutionMode:
    try:
        return ExecutionMode(str(value).lower())
    except ValueError:
        _log.warning("Unknown execution mode '%s', defaulting to 'local'", value)
        return ExecutionMode.LOCAL


def _str_list(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if isinstance(v, (str, int, float))]


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass.

    Args:
        data: Merged configuration dictionary.

    Returns:
        Typed Config object.
    """
    workspace_data = data.get("workspace", {})
    workspace = WorkspaceConfig(
        base_dir=str(workspace_data.get("base_dir", WorkspaceConfig.base_dir)),
    )

    exec_data = data.get("execution", {})
    defaults = ExecutionConfig()
    execution = ExecutionConfig(
        mode=_parse_mode(exec_data.get("mode", defaults.mode.value)),
        image=exec_data.get("image", defaults.image),
        default_timeout=float(exec_data.get("default_timeout", defaults.default_timeout)),
        install_timeout=float(exec_data.get("install_timeout", defaults.install_timeout)),
        output_limit=int(exec_data.get("output_limit", defaults.output_limit)),
        provision_timeout=float(
            exec_data.get("provision_timeout", defaults.provision_timeout)
        ),
        server_host=exec_data.get("server_host", defaults.server_host),
    )

    sessions_data = data.get("sessions", {})
    session_defaults = SessionsConfig()
    sessions = SessionsConfig(
        max_sessions=int(sessions_data.get("max_sessions", session_defaults.max_sessions)),
        idle_timeout=float(sessions_data.get("idle_timeout", session_defaults.idle_timeout)),
        max_lifetime=float(sessions_data.get("max_lifetime", session_defaults.max_lifetime)),
        sweep_interval=float(
            sessions_data.get("sweep_interval", session_defaults.sweep_interval)
        ),
        history_limit=int(sessions_data.get("history_limit", session_defaults.history_limit)),
    )

    limits_data = data.get("limits", {})
    limits = LimitsConfig(
        cpu=str(limits_data.get("cpu", LimitsConfig.cpu)),
        memory=str(limits_data.get("memory", LimitsConfig.memory)),
        disk=str(limits_data.get("disk", LimitsConfig.disk)),
    )

    gate_data = data.get("gate", {})
    allowed = gate_data.get("allowed_commands")
    deny = gate_data.get("deny_patterns")
    gate = GateConfig(
        allowed_commands=_str_list(allowed) if allowed is not None else list(DEFAULT_ALLOWED_COMMANDS),
        extra_commands=_str_list(gate_data.get("extra_commands", [])),
        deny_patterns=_str_list(deny) if deny is not None else list(DEFAULT_DENY_PATTERNS),
    )

    log_data = data.get("logging", {})
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    # Extra fields for extensibility
    known_keys = {"workspace", "execution", "sessions", "limits", "gate", "logging"}
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(
        workspace=workspace,
        execution=execution,
        sessions=sessions,
        limits=limits,
        gate=gate,
        logging=logging_config,
        extra=extra,
    )


def load_config(
    config_file: str | os.PathLike[str] | None = None, reload: bool = False
) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Explicit config_file
    3. User config
    4. System config

    Configuration is fixed for the life of the process; there is no hot reload.

    Args:
        config_file: Optional explicit YAML file.
        reload: Force reload even if cached.

    Returns:
        Merged Config object.
    """
    global _cached_config

    if _cached_config is not None and not reload and config_file is None:
        return _cached_config

    configs: list[dict[str, Any]] = []

    for path in get_config_paths(config_file):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    # Cache only the global config (no explicit file)
    if config_file is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config.

    Useful for testing or forcing a reload.
    """
    global _cached_config
    _cached_config = None
