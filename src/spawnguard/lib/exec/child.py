"""Post-fork hygiene for processes about to replace their image.

Everything here runs between fork() and exec(). None of it may log, take
locks shared with other threads, or import lazily: the child only has the
thread that forked it, and any lock another thread held at fork time stays
held forever.
"""

from __future__ import annotations

import errno
import os
from collections.abc import Collection
from contextlib import suppress
from dataclasses import dataclass
from typing import Final, Literal, cast

from spawnguard.lib.exec.signals import reset_child_signal_state

FIRST_INHERITABLE_FD: Final[int] = 3
CHILD_FAILURE_STATUS: Final[int] = 127

_FALLBACK_MAXFD: Final[int] = 256

_REALTIME_POLICIES: Final[frozenset[int]] = frozenset(
    getattr(os, name) for name in ("SCHED_FIFO", "SCHED_RR") if hasattr(os, name)
)

ReportStage = Literal["setup", "fork", "exec"]
_REPORT_STAGES: Final[frozenset[str]] = frozenset({"setup", "fork", "exec"})


@dataclass(frozen=True, slots=True)
class ChildOptions:
    """Per-spawn child adjustments applied before exec."""

    drop_privileges: bool = True
    reset_realtime_priority: bool = True
    niceness: int | None = None


@dataclass(frozen=True, slots=True)
class ChildReport:
    """Failure record a child writes to the report pipe before it exits."""

    stage: ReportStage
    errno: int

    @property
    def errno_name(self) -> str:
        return errno.errorcode.get(self.errno, str(self.errno))

    def encode(self) -> bytes:
        return f"{self.stage}:{self.errno}".encode("ascii")

    @classmethod
    def decode(cls, payload: bytes) -> ChildReport | None:
        stage, sep, raw_errno = payload.decode("ascii", errors="replace").partition(":")
        if not sep or stage not in _REPORT_STAGES:
            return None
        try:
            code = int(raw_errno)
        except ValueError:
            return None
        return cls(stage=cast("ReportStage", stage), errno=code)


def write_report(fd: int, stage: ReportStage, error: OSError | None) -> None:
    """Best-effort write of one failure record; the child exits right after."""

    code = error.errno if error is not None and error.errno is not None else 0
    with suppress(OSError):
        os.write(fd, ChildReport(stage=stage, errno=code).encode())


def drop_elevated_privileges() -> None:
    """Give up setuid/setgid elevation so the child runs as the real user."""

    real_gid = os.getgid()
    if os.getegid() != real_gid:
        if hasattr(os, "setresgid"):
            os.setresgid(real_gid, real_gid, real_gid)
        else:
            os.setregid(real_gid, real_gid)
    real_uid = os.getuid()
    if os.geteuid() != real_uid:
        if hasattr(os, "setresuid"):
            os.setresuid(real_uid, real_uid, real_uid)
        else:
            os.setreuid(real_uid, real_uid)


def reset_scheduling(options: ChildOptions) -> None:
    """Drop realtime scheduling inherited from the host and apply niceness."""

    if options.reset_realtime_priority and _REALTIME_POLICIES:
        with suppress(OSError):
            if os.sched_getscheduler(0) in _REALTIME_POLICIES:
                os.sched_setscheduler(0, os.SCHED_OTHER, os.sched_param(0))
    if options.niceness is not None:
        with suppress(OSError):
            os.setpriority(os.PRIO_PROCESS, 0, options.niceness)


def _max_fd() -> int:
    # RLIMIT_NOFILE can change after import.
    try:
        limit = os.sysconf("SC_OPEN_MAX")
    except (AttributeError, ValueError, OSError):
        return _FALLBACK_MAXFD
    return limit if limit > 0 else _FALLBACK_MAXFD


def close_inherited_fds(keep: Collection[int] = ()) -> None:
    """Close every descriptor above stderr except the ones in *keep*."""

    low = FIRST_INHERITABLE_FD
    for fd in sorted(fd for fd in keep if fd >= FIRST_INHERITABLE_FD):
        os.closerange(low, fd)
        low = fd + 1
    os.closerange(low, max(_max_fd(), low))


def prepare_child_process(options: ChildOptions, *, keep_fds: Collection[int] = ()) -> None:
    """Apply privilege, scheduling, signal, and descriptor hygiene in a child.

    Raises OSError only when privileges could not be dropped; every other
    adjustment is best effort.
    """

    if options.drop_privileges:
        drop_elevated_privileges()
    reset_scheduling(options)
    reset_child_signal_state()
    close_inherited_fds(keep_fds)
