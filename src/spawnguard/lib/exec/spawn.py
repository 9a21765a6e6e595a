"""Fork/wait primitives shared by every execution entry point."""

from __future__ import annotations

import os
from contextlib import suppress
from dataclasses import dataclass

import structlog

from spawnguard.lib.exec.child import (
    CHILD_FAILURE_STATUS,
    ChildOptions,
    ChildReport,
    prepare_child_process,
    write_report,
)
from spawnguard.lib.exec.signals import (
    FAILURE_EXIT,
    child_signal_guard,
    status_to_exit_result,
)

_REPORT_READ_SIZE = 64
# Exit status of the first child when the detached second fork fails.
DETACH_FORK_FAILURE_STATUS = 1

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ChildHandle:
    """Result of one spawn preparation.

    ``pid == 0`` means the current process is the one that must exec; its
    ``report_fd`` is the write end of the close-on-exec report pipe. A
    positive ``pid`` is the child the caller must wait for, with the read
    end. A negative ``pid`` means the fork itself failed.
    """

    pid: int
    report_fd: int | None = None

    @property
    def is_child(self) -> bool:
        return self.pid == 0

    @property
    def failed(self) -> bool:
        return self.pid < 0


def _close_quietly(fd: int) -> None:
    with suppress(OSError):
        os.close(fd)


def _enter_child(*, detach: bool, options: ChildOptions, report_fd: int) -> None:
    """Finish child-side setup or terminate the child; never logs."""

    try:
        prepare_child_process(options, keep_fds=(report_fd,))
    except OSError as exc:
        write_report(report_fd, "setup", exc)
        os._exit(CHILD_FAILURE_STATUS)

    if not detach:
        return

    try:
        grandchild = os.fork()
    except OSError as exc:
        write_report(report_fd, "fork", exc)
        os._exit(DETACH_FORK_FAILURE_STATUS)
    if grandchild > 0:
        # Exit right away so the original caller's wait returns; the
        # grandchild is reparented and keeps running.
        os._exit(0)


def prepare_spawn(*, detach: bool, options: ChildOptions | None = None) -> ChildHandle:
    """Fork the calling process with the child-signal guard held.

    The guard stays held on every return in the parent, including fork
    failure; ``wait_for_child`` is the one place that releases it.
    """

    resolved_options = options or ChildOptions()
    child_signal_guard().acquire()

    try:
        read_fd, write_fd = os.pipe()
    except OSError as exc:
        logger.warning("Could not create spawn report pipe.", error=str(exc))
        return ChildHandle(pid=FAILURE_EXIT)

    try:
        pid = os.fork()
    except OSError as exc:
        logger.warning("Fork failed.", error=str(exc), errno=exc.errno)
        _close_quietly(read_fd)
        _close_quietly(write_fd)
        return ChildHandle(pid=FAILURE_EXIT)

    if pid == 0:
        try:
            os.close(read_fd)
            _enter_child(detach=detach, options=resolved_options, report_fd=write_fd)
        except BaseException:
            os._exit(CHILD_FAILURE_STATUS)
        return ChildHandle(pid=0, report_fd=write_fd)

    os.close(write_fd)
    return ChildHandle(pid=pid, report_fd=read_fd)


def _read_report(fd: int) -> ChildReport | None:
    chunks: list[bytes] = []
    try:
        while True:
            try:
                chunk = os.read(fd, _REPORT_READ_SIZE)
            except InterruptedError:
                continue
            if not chunk:
                break
            chunks.append(chunk)
    finally:
        _close_quietly(fd)
    if not chunks:
        return None
    return ChildReport.decode(b"".join(chunks))


def _waitpid(pid: int) -> int | None:
    while True:
        try:
            _, status = os.waitpid(pid, 0)
        except InterruptedError:
            continue
        except ChildProcessError:
            logger.warning("Child was reaped elsewhere; exit status is lost.", pid=pid)
            return None
        return status


def _reap_if_exited(pid: int) -> None:
    with suppress(ChildProcessError, InterruptedError):
        os.waitpid(pid, os.WNOHANG)


def wait_for_child(handle: ChildHandle) -> int:
    """Block until the prepared child exits and return its exit result.

    Releases the child-signal guard exactly once, whatever happens.
    """

    try:
        if handle.pid <= 0:
            return FAILURE_EXIT

        try:
            report = _read_report(handle.report_fd) if handle.report_fd is not None else None
            status = _waitpid(handle.pid)
        except BaseException:
            _reap_if_exited(handle.pid)
            raise
        result = FAILURE_EXIT if status is None else status_to_exit_result(status)

        if report is None:
            return result
        if report.stage == "fork":
            logger.warning(
                "Detached spawn failed at second fork.",
                pid=handle.pid,
                errno=report.errno_name,
            )
            return result
        logger.warning(
            "Child failed before running the target program.",
            pid=handle.pid,
            stage=report.stage,
            errno=report.errno_name,
        )
        return FAILURE_EXIT
    finally:
        child_signal_guard().release()
