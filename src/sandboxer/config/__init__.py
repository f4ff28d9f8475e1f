"""Configuration management for sandboxer.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/sandboxer/)
- User-level config (~/.config/sandboxer/ or ~/.sandboxer/)
- An explicit config file
- Environment variable overrides (highest priority)

Example usage:
    from sandboxer.config import load_config

    config = load_config("/srv/sandboxer.yaml")
    print(config.sessions.max_sessions)
    print(config.execution.mode)
"""

from sandboxer.config.loader import (
    get_config,
    load_config,
    reset_config,
)
from sandboxer.config.paths import (
    get_config_paths,
    get_system_config_path,
    get_user_config_path,
)
from sandboxer.config.schema import (
    Config,
    ExecutionConfig,
    ExecutionMode,
    GateConfig,
    LimitsConfig,
    LoggingConfig,
    SessionsConfig,
    WorkspaceConfig,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    # Schema types
    "ExecutionConfig",
    "ExecutionMode",
    "GateConfig",
    "LimitsConfig",
    "LoggingConfig",
    "SessionsConfig",
    "WorkspaceConfig",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
]
