"""Configuration path resolution.

Config file locations, lowest priority first:
- System: /etc/sandboxer/config.yaml
- User: $XDG_CONFIG_HOME/sandboxer/, ~/.config/sandboxer/ or ~/.sandboxer/
- Explicit: a file passed to load_config()
"""

from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
APP_NAME = "sandboxer"
SHORT_NAME = ".sandboxer"


def get_system_config_path() -> Path:
    """Get system-level config path. The file may not exist."""
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_path() -> Path:
    """Get user-level config path.

    Tries XDG_CONFIG_HOME first, then ~/.config if it exists, then ~/.sandboxer.
    The file may not exist.
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_NAME / CONFIG_FILENAME

    home = Path.home()
    xdg_default = home / ".config"
    if xdg_default.exists():
        return xdg_default / APP_NAME / CONFIG_FILENAME

    return home / SHORT_NAME / CONFIG_FILENAME


def get_config_paths(config_file: str | os.PathLike[str] | None = None) -> list[Path]:
    """Get all config paths in priority order (lowest to highest).

    Args:
        config_file: Optional explicit config file, highest file priority.

    Returns:
        List of config paths: system, user, explicit.
    """
    paths = [get_system_config_path(), get_user_config_path()]
    if config_file:
        paths.append(Path(config_file))
    return paths
