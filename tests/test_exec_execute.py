"""Entry-point tests for argument-vector and shell execution."""

from __future__ import annotations

import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

import spawnguard.lib.exec.spawn as spawn_module
from spawnguard.lib.exec import FAILURE_EXIT, execute_argv, execute_shell
from spawnguard.lib.exec.child import ChildOptions

if TYPE_CHECKING:
    from collections.abc import Iterator

METACHARACTER_ARGS = [
    "; touch {marker}",
    "| touch {marker}",
    "&& touch {marker}",
    "& touch {marker}",
    "`touch {marker}`",
    "$(touch {marker})",
    "'single' \"double\" \\backslash",
    "${HOME} $PATH *",
    "> {marker}",
]


def _python(code: str, *args: str) -> list[str]:
    return [sys.executable, "-c", code, *args]


def test_metacharacters_reach_program_unmodified(
    tmp_path: Path, echo_argv, read_captured
) -> None:
    marker = tmp_path / "injected"
    capture = tmp_path / "args.json"
    args = [item.replace("{marker}", str(marker)) for item in METACHARACTER_ARGS]

    result = execute_argv(False, sys.executable, echo_argv(capture, args))

    assert result == 0
    assert read_captured(capture)["args"] == args
    assert not marker.exists()


def test_whitespace_and_control_characters_round_trip(
    tmp_path: Path, echo_argv, read_captured
) -> None:
    capture = tmp_path / "args.json"
    args = [
        "",
        " ",
        "two words",
        "tab\there",
        "new\nline",
        "\x01\x07\x1b[31m",
        "trailing space ",
        "caller \"Mallory\" <1234>",
        "ünïcødé",
    ]

    result = execute_argv(False, sys.executable, echo_argv(capture, args))

    assert result == 0
    captured = read_captured(capture)["args"]
    assert len(captured) == len(args)
    assert captured == args


def test_program_runs_as_direct_child(tmp_path: Path, echo_argv, read_captured) -> None:
    capture = tmp_path / "args.json"

    assert execute_argv(False, sys.executable, echo_argv(capture, ["x"])) == 0
    # No interpreter sits between the host and the program.
    assert read_captured(capture)["ppid"] == os.getpid()


@pytest.mark.parametrize("code", [0, 1, 3, 42, 255])
def test_returns_program_exit_code(code: int) -> None:
    argv = _python("import sys; sys.exit(int(sys.argv[1]))", str(code))

    assert execute_argv(False, sys.executable, argv) == code


def test_program_name_only_argv() -> None:
    true_path = Path("/bin/true")
    if not true_path.exists():
        pytest.skip("/bin/true not available")

    assert execute_argv(False, str(true_path), [str(true_path)]) == 0


def test_program_is_resolved_on_path() -> None:
    assert execute_argv(False, "true", ["true"]) == 0
    assert execute_argv(False, "false", ["false"]) == 1


def test_nonexistent_program_returns_failure_sentinel() -> None:
    result = execute_argv(False, "/nonexistent/path", ["/nonexistent/path", "arg"])

    assert result == FAILURE_EXIT
    assert result < 0


def test_non_executable_program_returns_failure_sentinel(tmp_path: Path) -> None:
    script = tmp_path / "not-executable.sh"
    script.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    script.chmod(0o644)

    assert execute_argv(False, str(script), [str(script)]) == FAILURE_EXIT


def test_signaled_program_returns_failure_sentinel() -> None:
    argv = _python("import os, signal; os.kill(os.getpid(), signal.SIGKILL)")

    assert execute_argv(False, sys.executable, argv) == FAILURE_EXIT


def test_detach_returns_before_program_finishes(
    tmp_path: Path, echo_argv, wait_for_file
) -> None:
    capture = tmp_path / "args.json"
    runtime = 2.0

    started = time.monotonic()
    result = execute_argv(True, sys.executable, echo_argv(capture, ["--sleep", str(runtime)]))
    elapsed = time.monotonic() - started

    assert result == 0
    assert elapsed < runtime
    assert not capture.exists()
    # The detached program still runs to completion on its own.
    assert wait_for_file(capture, timeout=runtime + 10.0)


def test_detached_program_is_not_a_child_of_the_host(
    tmp_path: Path, echo_argv, read_captured, wait_for_file
) -> None:
    capture = tmp_path / "args.json"

    assert execute_argv(True, sys.executable, echo_argv(capture, ["--sleep", "0.2"])) == 0
    assert wait_for_file(capture)
    assert read_captured(capture)["ppid"] != os.getpid()


def test_detach_reports_exec_failure() -> None:
    assert execute_argv(True, "/nonexistent/path", ["/nonexistent/path"]) == FAILURE_EXIT


def test_concurrent_spawns_do_not_cross_talk(
    tmp_path: Path, echo_argv, read_captured
) -> None:
    count = 16
    results: dict[int, int] = {}
    errors: list[BaseException] = []
    barrier = threading.Barrier(count)

    def _worker(index: int) -> None:
        try:
            barrier.wait()
            capture = tmp_path / f"args-{index}.json"
            results[index] = execute_argv(
                False,
                sys.executable,
                echo_argv(capture, ["--exit", str(index), f"worker-{index}"]),
            )
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert not errors
    assert all(not thread.is_alive() for thread in threads)
    assert results == {index: index for index in range(count)}
    for index in range(count):
        captured = read_captured(tmp_path / f"args-{index}.json")
        assert captured["args"] == ["--exit", str(index), f"worker-{index}"]


def test_works_when_host_ignores_sigchld(tmp_path: Path, echo_argv, read_captured) -> None:
    capture = tmp_path / "args.json"
    previous = signal.signal(signal.SIGCHLD, signal.SIG_IGN)
    try:
        result = execute_argv(False, sys.executable, echo_argv(capture, ["--exit", "5"]))
        assert signal.getsignal(signal.SIGCHLD) == signal.SIG_IGN
    finally:
        signal.signal(signal.SIGCHLD, previous)

    assert result == 5
    assert read_captured(capture)["args"] == ["--exit", "5"]


@pytest.mark.skipif(not Path("/proc/self/fd").is_dir(), reason="needs /proc")
def test_child_does_not_inherit_host_descriptors(tmp_path: Path) -> None:
    read_fd, write_fd = os.pipe()
    leaked = os.dup2(write_fd, 100, inheritable=True)
    capture = tmp_path / "fds.txt"
    code = (
        "import os, sys; "
        "fds = sorted(int(fd) for fd in os.listdir('/proc/self/fd')); "
        "open(sys.argv[1], 'w').write(' '.join(map(str, fds)))"
    )
    try:
        result = execute_argv(False, sys.executable, _python(code, str(capture)))
    finally:
        for fd in (read_fd, write_fd, leaked):
            os.close(fd)

    assert result == 0
    open_fds = {int(fd) for fd in capture.read_text(encoding="utf-8").split()}
    assert leaked not in open_fds
    # stdio plus the descriptor listdir() itself held open.
    assert open_fds <= {0, 1, 2, 3}


@pytest.mark.skipif(not Path("/proc/self/status").is_file(), reason="needs /proc")
def test_child_does_not_inherit_ignored_sigpipe(tmp_path: Path) -> None:
    capture = tmp_path / "status.txt"
    # The host (Python) ignores SIGPIPE; the program must start with the default.
    assert signal.getsignal(signal.SIGPIPE) == signal.SIG_IGN

    result = execute_argv(
        False,
        "/bin/sh",
        ["/bin/sh", "-c", 'grep SigIgn /proc/self/status > "$1"', "sh", str(capture)],
    )

    assert result == 0
    ignored_mask = int(capture.read_text(encoding="utf-8").split()[1], 16)
    assert ignored_mask & (1 << (signal.SIGPIPE - 1)) == 0


def test_child_applies_configured_niceness(tmp_path: Path) -> None:
    capture = tmp_path / "nice.txt"
    code = "import os, sys; open(sys.argv[1], 'w').write(str(os.getpriority(os.PRIO_PROCESS, 0)))"
    # Lowering niceness needs privileges, so an already-nicer host stays where it is.
    expected = max(7, os.getpriority(os.PRIO_PROCESS, 0))

    result = execute_argv(
        False, sys.executable, _python(code, str(capture)), options=ChildOptions(niceness=7)
    )

    assert result == 0
    assert int(capture.read_text(encoding="utf-8")) == expected


@pytest.fixture
def realtime_host_thread() -> Iterator[None]:
    if not hasattr(os, "sched_setscheduler") or not hasattr(os, "SCHED_FIFO"):
        pytest.skip("needs sched_setscheduler")
    previous_policy = os.sched_getscheduler(0)
    previous_param = os.sched_getparam(0)
    try:
        os.sched_setscheduler(0, os.SCHED_FIFO, os.sched_param(1))
    except OSError as exc:
        pytest.skip(f"cannot switch to SCHED_FIFO: {exc}")
    try:
        yield
    finally:
        os.sched_setscheduler(0, previous_policy, previous_param)


@pytest.mark.usefixtures("realtime_host_thread")
@pytest.mark.parametrize(
    ("reset", "expected_policy"),
    [(True, "SCHED_OTHER"), (False, "SCHED_FIFO")],
)
def test_child_realtime_policy_reset(tmp_path: Path, reset: bool, expected_policy: str) -> None:
    capture = tmp_path / "policy.txt"
    code = "import os, sys; open(sys.argv[1], 'w').write(str(os.sched_getscheduler(0)))"

    result = execute_argv(
        False,
        sys.executable,
        _python(code, str(capture)),
        options=ChildOptions(reset_realtime_priority=reset),
    )

    assert result == 0
    assert int(capture.read_text(encoding="utf-8")) == getattr(os, expected_policy)


def test_shell_returns_exit_status() -> None:
    assert execute_shell("exit 7") == 7


def test_shell_interprets_command(tmp_path: Path) -> None:
    target = tmp_path / "out.txt"

    assert execute_shell(f"echo hello > '{target}' && exit 0") == 0
    assert target.read_text(encoding="utf-8") == "hello\n"


def test_shell_missing_interpreter_returns_failure_sentinel() -> None:
    assert execute_shell("exit 0", shell="/nonexistent/sh") == FAILURE_EXIT


@pytest.mark.parametrize(
    ("program", "argv", "message"),
    [
        ("", ["x"], "program is empty"),
        ("true", [], "argument vector is empty"),
        ("true", ["true", "a\0b"], "NUL byte"),
        ("tr\0ue", ["true"], "NUL byte"),
        ("/bin/sh", "sh", "not a string"),
        ("/bin/sh", b"sh", "not a string"),
    ],
)
def test_invalid_requests_raise_before_forking(
    monkeypatch: pytest.MonkeyPatch, program: str, argv: list[str] | str | bytes, message: str
) -> None:
    def _unexpected_fork() -> int:
        raise AssertionError("fork must not be reached")

    monkeypatch.setattr(spawn_module.os, "fork", _unexpected_fork)

    with pytest.raises(ValueError, match=message):
        execute_argv(False, program, argv)
