"""Configuration loading helpers."""

from spawnguard.lib.config.settings import (
    ChildConfig,
    HookConfig,
    SpawnConfig,
    load_config,
    resolve_config_path,
)

__all__ = [
    "ChildConfig",
    "HookConfig",
    "SpawnConfig",
    "load_config",
    "resolve_config_path",
]
