"""Shared pytest fixtures for spawn and CLI checks."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from spawnguard.lib.exec.signals import child_signal_guard

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

PACKAGE_ROOT = Path(__file__).resolve().parents[1]


@dataclass(frozen=True, slots=True)
class CliResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


@pytest.fixture
def package_root() -> Path:
    return PACKAGE_ROOT


@pytest.fixture
def echo_args_script(package_root: Path) -> Path:
    return package_root / "tests" / "echo_args.py"


@pytest.fixture
def echo_argv(echo_args_script: Path) -> Callable[[Path, list[str]], list[str]]:
    """Build an argv that makes tests/echo_args.py record *args* into *capture*."""

    def _build(capture: Path, args: list[str]) -> list[str]:
        return [sys.executable, str(echo_args_script), str(capture), *args]

    return _build


def _read_captured(capture: Path) -> dict[str, object]:
    return json.loads(capture.read_text(encoding="utf-8"))


def _wait_for_file(path: Path, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def read_captured() -> Callable[[Path], dict[str, object]]:
    return _read_captured


@pytest.fixture
def wait_for_file() -> Callable[..., bool]:
    return _wait_for_file


@pytest.fixture(autouse=True)
def _balanced_child_signal_guard() -> Iterator[None]:
    """Every spawn bracket must leave the guard and SIGCHLD as it found them."""

    before = signal.getsignal(signal.SIGCHLD)
    yield
    guard = child_signal_guard()
    assert guard.depth == 0
    assert guard.handler_installed is False
    assert signal.getsignal(signal.SIGCHLD) == before


@pytest.fixture
def cli_env(package_root: Path, tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH", "")
    root = str(package_root / "src")
    env["PYTHONPATH"] = root if not existing else f"{root}:{existing}"
    env["SPAWNGUARD_CONFIG"] = str(tmp_path / "missing-config.toml")
    return env


@pytest.fixture
def run_spawnguard(
    package_root: Path, cli_env: dict[str, str]
) -> Callable[..., CliResult]:
    def _run(
        args: list[str], timeout: float = 15.0, env: dict[str, str] | None = None
    ) -> CliResult:
        completed = subprocess.run(
            [sys.executable, "-m", "spawnguard", *args],
            cwd=package_root,
            env=env if env is not None else cli_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
        return CliResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    return _run
