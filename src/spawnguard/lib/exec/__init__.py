"""Process spawning primitives."""

from spawnguard.lib.exec.child import ChildOptions, ChildReport
from spawnguard.lib.exec.execute import DEFAULT_SHELL, execute_argv, execute_shell
from spawnguard.lib.exec.signals import (
    FAILURE_EXIT,
    ChildSignalGuard,
    child_signal_guard,
    status_to_exit_result,
)
from spawnguard.lib.exec.spawn import ChildHandle, prepare_spawn, wait_for_child

__all__ = [
    "DEFAULT_SHELL",
    "FAILURE_EXIT",
    "ChildHandle",
    "ChildOptions",
    "ChildReport",
    "ChildSignalGuard",
    "child_signal_guard",
    "execute_argv",
    "execute_shell",
    "prepare_spawn",
    "status_to_exit_result",
    "wait_for_child",
]
