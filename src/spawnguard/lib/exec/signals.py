"""Process-global SIGCHLD handling for spawn/wait brackets."""

from __future__ import annotations

import os
import signal
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from threading import Lock, RLock
from types import FrameType
from typing import Final, cast

import structlog

FAILURE_EXIT: Final[int] = -1

# Python starts with these ignored, and SIG_IGN survives exec.
INHERITED_IGNORED_SIGNALS: Final[tuple[signal.Signals, ...]] = tuple(
    cast("signal.Signals", getattr(signal, name))
    for name in ("SIGPIPE", "SIGXFZ", "SIGXFSZ")
    if hasattr(signal, name)
)

logger = structlog.get_logger(__name__)


def status_to_exit_result(status: int) -> int:
    """Map a raw wait status to an exit code, or FAILURE_EXIT for abnormal ends."""

    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    return FAILURE_EXIT


def _on_sigchld(signum: int, frame: FrameType | None) -> None:
    _ = (signum, frame)


class ChildSignalGuard:
    """Reference-counted replacement of the SIGCHLD disposition.

    The first acquirer swaps in a no-op handler so that children stay
    reapable through waitpid() even when the host ignores SIGCHLD. The last
    releaser restores whatever disposition was there before.

    CPython only changes signal dispositions from the main thread. An acquire
    on another thread with nothing installed yet only counts. When the last
    release happens on another thread, the no-op handler stays installed
    (logged as a warning) and the next release on the main thread restores
    the previous disposition. A host that relies on SIG_IGN to auto-reap its
    own children should release on the main thread or spawn from it.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._depth = 0
        self._previous_handler: signal.Handlers | None = None
        self._handler_installed = False

    @property
    def depth(self) -> int:
        with self._lock:
            return self._depth

    @property
    def handler_installed(self) -> bool:
        with self._lock:
            return self._handler_installed

    def acquire(self) -> None:
        with self._lock:
            self._depth += 1
            self._ensure_handler_installed_locked()

    def release(self) -> None:
        with self._lock:
            if self._depth == 0:
                raise RuntimeError("Child signal guard released more times than acquired.")
            self._depth -= 1
            self._maybe_restore_handler_locked()

    @contextmanager
    def held(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def _ensure_handler_installed_locked(self) -> bool:
        if self._handler_installed:
            return True

        try:
            previous = cast("signal.Handlers", signal.getsignal(signal.SIGCHLD))
            signal.signal(signal.SIGCHLD, _on_sigchld)
        except ValueError:
            # Signal handlers can only be changed from the main thread.
            return False

        self._previous_handler = previous
        self._handler_installed = True
        return True

    def _maybe_restore_handler_locked(self) -> None:
        if not self._handler_installed or self._depth > 0:
            return

        previous = self._previous_handler
        try:
            signal.signal(signal.SIGCHLD, previous if previous is not None else signal.SIG_DFL)
        except ValueError:
            # Left installed; a later release from the main thread restores it.
            logger.warning(
                "Deferred SIGCHLD restore to the main thread; the no-op handler stays "
                "installed until a later main-thread release.",
                previous=repr(previous),
            )
            return

        self._handler_installed = False
        self._previous_handler = None


_GUARD_LOCK = Lock()
_GUARD: ChildSignalGuard | None = None


def child_signal_guard() -> ChildSignalGuard:
    """Return the process-global child signal guard singleton."""

    global _GUARD
    if _GUARD is None:
        with _GUARD_LOCK:
            if _GUARD is None:
                _GUARD = ChildSignalGuard()
    return _GUARD


def reset_child_signal_state() -> None:
    """Unblock every signal and undo inherited SIG_IGN dispositions.

    Runs in a freshly forked child right before exec. Caught handlers are
    reset by exec itself, so only the mask and ignored signals need work.
    """

    signal.pthread_sigmask(signal.SIG_SETMASK, ())
    for signum in INHERITED_IGNORED_SIGNALS:
        with suppress(ValueError, OSError):
            signal.signal(signum, signal.SIG_DFL)
    with suppress(ValueError, OSError):
        if signal.getsignal(signal.SIGCHLD) == signal.SIG_IGN:
            signal.signal(signal.SIGCHLD, signal.SIG_DFL)
