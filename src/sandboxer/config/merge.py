"""Deep merge for the configuration cascade.

Each source (system file, user file, explicit file, environment) produces a
partial dict; later sources win key by key.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Return base updated with override, recursing into nested mappings.

    A None in override leaves the base value alone, so a YAML file can name a
    section without resetting it. Lists and scalars are replaced outright:
    `gate.allowed_commands` in a user file replaces the system list, and
    `gate.extra_commands` is the way to add to it.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_configs(*configs: Mapping[str, Any] | None) -> dict[str, Any]:
    """Fold config sources lowest priority first; empty sources are skipped."""
    merged: dict[str, Any] = {}
    for config in filter(None, configs):
        merged = deep_merge(merged, config)
    return merged
