"""Core spawnguard library exports."""

from spawnguard.lib.exec import ChildOptions, execute_argv, execute_shell
from spawnguard.lib.hooks import ExternalProgramHook, resolve_hook

__all__ = ["ChildOptions", "ExternalProgramHook", "execute_argv", "execute_shell", "resolve_hook"]
