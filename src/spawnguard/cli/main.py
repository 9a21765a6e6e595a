"""Cyclopts CLI entry point for spawnguard."""

from __future__ import annotations

import sys
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from cyclopts import App, Parameter

from spawnguard import __version__
from spawnguard.cli.output import OutputConfig, normalize_output_format
from spawnguard.cli.output import emit as emit_output
from spawnguard.lib.config.settings import SpawnConfig, load_config, resolve_config_path
from spawnguard.lib.exec.execute import execute_argv, execute_shell
from spawnguard.lib.exec.signals import FAILURE_EXIT
from spawnguard.lib.hooks import resolve_hook

if TYPE_CHECKING:
    from collections.abc import Sequence

_GLOBAL_FLAGS_HELP = (
    "Global flags go before the command: --json, --format FORMAT, --porcelain, "
    "--config PATH, -v/--verbose."
)


@dataclass(frozen=True, slots=True)
class GlobalOptions:
    """Top-level options that apply to all commands."""

    output: OutputConfig
    config_path: Path | None = None
    verbosity: int = 0


@dataclass(frozen=True, slots=True)
class SpawnOutput:
    """Outcome of one spawn request."""

    mode: str
    program: str
    argv: tuple[str, ...]
    detach: bool
    exit_code: int

    def format_text(self) -> str:
        status = "failed to run" if self.exit_code == FAILURE_EXIT else f"exit {self.exit_code}"
        suffix = " (detached)" if self.detach else ""
        return f"{self.program}: {status}{suffix}"


@dataclass(frozen=True, slots=True)
class ConfigShowOutput:
    path: Path
    exists: bool
    config: SpawnConfig


_GLOBAL_OPTIONS: ContextVar[GlobalOptions | None] = ContextVar("_GLOBAL_OPTIONS", default=None)


def get_global_options() -> GlobalOptions:
    """Return parsed global options for current command."""

    default = GlobalOptions(output=OutputConfig(format="text"))
    return _GLOBAL_OPTIONS.get() or default


def emit(payload: object) -> None:
    """Write command output using current output format settings."""

    emit_output(payload, get_global_options().output)


def _current_config() -> SpawnConfig:
    return load_config(get_global_options().config_path)


def process_exit_code(result: int) -> int:
    """Map a spawn result onto a shell-compatible process exit status."""

    if result < 0:
        return 1
    return min(result, 255)


def _finish(output: SpawnOutput) -> None:
    emit(output)
    if output.exit_code != 0:
        raise SystemExit(process_exit_code(output.exit_code))


def _extract_global_options(argv: Sequence[str]) -> tuple[list[str], GlobalOptions]:
    """Pull global flags that appear before the command name.

    Anything after the command belongs to the command (and, for ``exec``,
    to the spawned program), so extraction stops at the first positional.
    """

    json_mode = False
    porcelain_mode = False
    output_format: str | None = None
    config_path: Path | None = None
    verbosity = 0

    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--json":
            json_mode = True
        elif arg == "--porcelain":
            porcelain_mode = True
        elif arg in {"-v", "--verbose"}:
            verbosity += 1
        elif arg in {"--format", "--config"}:
            if i + 1 >= len(argv):
                raise SystemExit(f"{arg} requires a value")
            if arg == "--format":
                output_format = argv[i + 1]
            else:
                config_path = Path(argv[i + 1])
            i += 2
            continue
        elif arg.startswith("--format="):
            output_format = arg.partition("=")[2]
        elif arg.startswith("--config="):
            config_path = Path(arg.partition("=")[2])
        else:
            break
        i += 1

    resolved = normalize_output_format(
        requested=output_format,
        json_mode=json_mode,
        porcelain_mode=porcelain_mode,
    )
    options = GlobalOptions(
        output=OutputConfig(format=resolved),
        config_path=config_path,
        verbosity=verbosity,
    )
    return list(argv[i:]), options


app = App(
    name="spawnguard",
    help=f"Run external programs without shell interpretation. {_GLOBAL_FLAGS_HELP}",
    version=__version__,
    help_formatter="plain",
)
config_app = App(name="config", help="Configuration commands", help_formatter="plain")
app.command(config_app, name="config")


@app.command(name="exec")
def exec_program(
    program: str,
    *args: str,
    detach: Annotated[
        bool,
        Parameter(name="--detach", help="Return without waiting for the program to finish."),
    ] = False,
) -> None:
    """Run PROGRAM with ARGS as a literal argument vector (no shell).

    Put `--` before PROGRAM when any argument starts with a dash.
    """

    config = _current_config()
    argv = (program, *args)
    result = execute_argv(detach, program, argv, options=config.child.to_options())
    _finish(
        SpawnOutput(mode="argv", program=program, argv=argv, detach=detach, exit_code=result)
    )


@app.command(name="shell")
def shell_command(command: str) -> None:
    """Run COMMAND through the configured shell. Trusted input only."""

    config = _current_config()
    result = execute_shell(command, shell=config.shell, options=config.child.to_options())
    _finish(
        SpawnOutput(
            mode="shell",
            program=config.shell,
            argv=(config.shell, "-c", command),
            detach=False,
            exit_code=result,
        )
    )


def _parse_field_values(raw_fields: Sequence[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw in raw_fields:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --field {raw!r}: expected KEY=VALUE.")
        values[key.strip()] = value
    return values


@app.command(name="hook")
def fire_hook(
    name: str,
    target: str,
    field: Annotated[
        tuple[str, ...],
        Parameter(
            name="--field",
            help="Hook field as KEY=VALUE (repeatable).",
            negative_iterable=(),
        ),
    ] = (),
) -> None:
    """Fire configured hook NAME for TARGET."""

    hook = resolve_hook(_current_config(), name)
    values = _parse_field_values(field)
    argv = hook.build_argv(target, values)
    result = hook.fire(target, values)
    _finish(
        SpawnOutput(
            mode="hook",
            program=hook.config.program,
            argv=tuple(argv),
            detach=hook.config.detach,
            exit_code=result,
        )
    )


@config_app.command(name="show")
def config_show() -> None:
    """Show the resolved configuration."""

    explicit = get_global_options().config_path
    path = resolve_config_path(explicit)
    emit(ConfigShowOutput(path=path, exists=path.is_file(), config=load_config(explicit)))


def _operation_error_message(exc: Exception) -> str:
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point used by `spawnguard` and `python -m spawnguard`."""

    from spawnguard.lib.logging import configure_logging

    args = list(sys.argv[1:] if argv is None else argv)
    cleaned_args, options = _extract_global_options(args)

    # Configure logging early so structlog warnings go to stderr, not stdout.
    configure_logging(
        json_mode=options.output.format == "json",
        verbosity=options.verbosity,
    )

    token = _GLOBAL_OPTIONS.set(options)
    try:
        try:
            app(cleaned_args)
        except (KeyError, ValueError, FileNotFoundError, OSError) as exc:
            print(f"error: {_operation_error_message(exc)}", file=sys.stderr)
            raise SystemExit(1) from None
    finally:
        _GLOBAL_OPTIONS.reset(token)
