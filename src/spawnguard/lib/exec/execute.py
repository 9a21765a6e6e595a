"""Execution entry points built on prepare_spawn/wait_for_child."""

from __future__ import annotations

import os
from collections.abc import Sequence
from typing import NoReturn

import structlog

from spawnguard.lib.exec.child import CHILD_FAILURE_STATUS, ChildOptions, write_report
from spawnguard.lib.exec.spawn import ChildHandle, prepare_spawn, wait_for_child

DEFAULT_SHELL = "/bin/sh"

logger = structlog.get_logger(__name__)


def _validate_request(program: str, argv: Sequence[str]) -> list[str]:
    if not program:
        raise ValueError("Cannot spawn process: program is empty.")
    if "\0" in program:
        raise ValueError("Cannot spawn process: program contains a NUL byte.")
    if isinstance(argv, (str, bytes)):
        raise ValueError("Cannot spawn process: argv must be a sequence, not a string.")
    resolved = list(argv)
    if not resolved:
        raise ValueError("Cannot spawn process: argument vector is empty.")
    for index, arg in enumerate(resolved):
        if not isinstance(arg, str):
            raise ValueError(
                f"Cannot spawn process: argv[{index}] must be str, got {type(arg).__name__}."
            )
        if "\0" in arg:
            raise ValueError(f"Cannot spawn process: argv[{index}] contains a NUL byte.")
    return resolved


def _exec_in_child(handle: ChildHandle, program: str, argv: list[str]) -> NoReturn:
    try:
        os.execvp(program, argv)
    except OSError as exc:
        if handle.report_fd is not None:
            write_report(handle.report_fd, "exec", exc)
    finally:
        os._exit(CHILD_FAILURE_STATUS)


def execute_argv(
    detach: bool,
    program: str,
    argv: Sequence[str],
    *,
    options: ChildOptions | None = None,
) -> int:
    """Run *program* with the literal argument vector *argv*, without a shell.

    Each entry of *argv* reaches the program as one whole argument; quotes,
    ``;``, ``|``, ``$()`` and the like are never interpreted. ``argv[0]`` is
    the name the program sees for itself. Use this for any argument that may
    carry data from outside the host.

    With ``detach=True`` the program runs in a reparented grandchild and the
    call returns as soon as the intermediate child exits.

    Returns the program's exit code, or ``FAILURE_EXIT`` (negative) when the
    fork or exec failed or the program died from a signal.
    """

    resolved_argv = _validate_request(program, argv)
    logger.debug("Spawning program.", program=program, argc=len(resolved_argv), detach=detach)

    handle = prepare_spawn(detach=detach, options=options)
    if handle.is_child:
        _exec_in_child(handle, program, resolved_argv)
    return wait_for_child(handle)


def execute_shell(
    command: str,
    *,
    shell: str = DEFAULT_SHELL,
    options: ChildOptions | None = None,
) -> int:
    """Run *command* through ``shell -c`` and wait for it.

    WARNING: the shell re-tokenizes *command*. Passing any substring that did
    not originate inside the host (caller IDs, names, message fields, ...) is
    a command-injection vulnerability. Only use this for fully host-controlled
    strings; everything else must go through ``execute_argv``.
    """

    resolved_argv = _validate_request(shell, [shell, "-c", command])
    logger.debug("Spawning shell command.", shell=shell)

    handle = prepare_spawn(detach=False, options=options)
    if handle.is_child:
        _exec_in_child(handle, shell, resolved_argv)
    return wait_for_child(handle)
