"""Operational config loader for spawn defaults and external program hooks."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import cast

from spawnguard.lib.exec.child import ChildOptions
from spawnguard.lib.exec.execute import DEFAULT_SHELL

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SPAWNGUARD_CONFIG"
DEFAULT_CONFIG_RELATIVE_PATH = Path(".spawnguard") / "config.toml"


@dataclass(frozen=True, slots=True)
class ChildConfig:
    """Adjustments applied to every child between fork and exec."""

    drop_privileges: bool = True
    reset_realtime_priority: bool = True
    niceness: int | None = None

    def to_options(self) -> ChildOptions:
        return ChildOptions(
            drop_privileges=self.drop_privileges,
            reset_realtime_priority=self.reset_realtime_priority,
            niceness=self.niceness,
        )


@dataclass(frozen=True, slots=True)
class HookConfig:
    """One external program and its positional-argument convention.

    The program always receives the target identity first, then one argument
    per entry of ``fields`` in declared order. Downstream consumers parse by
    position, so reordering ``fields`` is a breaking change for them.
    """

    program: str
    detach: bool = True
    fields: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SpawnConfig:
    """Resolved operational configuration for spawnguard."""

    shell: str = DEFAULT_SHELL
    child: ChildConfig = ChildConfig()
    hooks: dict[str, HookConfig] = field(default_factory=dict)


_CHILD_KEYS = frozenset({"drop_privileges", "reset_realtime_priority", "niceness"})
_HOOK_KEYS = frozenset({"program", "detach", "fields"})

_ENV_OVERRIDE_MAP: dict[str, str] = {
    "SPAWNGUARD_SHELL": "shell",
    "SPAWNGUARD_DROP_PRIVILEGES": "drop_privileges",
    "SPAWNGUARD_RESET_REALTIME_PRIORITY": "reset_realtime_priority",
    "SPAWNGUARD_NICENESS": "niceness",
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _type_error(source: str, expected: str, raw_value: object) -> ValueError:
    return ValueError(
        f"Invalid value for '{source}': expected {expected}, got "
        f"{type(raw_value).__name__} ({raw_value!r})."
    )


def _coerce_str(*, raw_value: object, source: str) -> str:
    if not isinstance(raw_value, str):
        raise _type_error(source, "str", raw_value)
    normalized = raw_value.strip()
    if not normalized:
        raise ValueError(f"Invalid value for '{source}': expected non-empty string.")
    if "\0" in normalized:
        raise ValueError(f"Invalid value for '{source}': NUL bytes are not allowed.")
    return normalized


def _coerce_bool(*, raw_value: object, source: str) -> bool:
    if not isinstance(raw_value, bool):
        raise _type_error(source, "bool", raw_value)
    return raw_value


def _coerce_niceness(*, raw_value: object, source: str) -> int:
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        raise _type_error(source, "int", raw_value)
    return raw_value


def _coerce_child_config(*, raw_value: object, source: str) -> ChildConfig:
    if not isinstance(raw_value, dict):
        raise ValueError(f"Invalid value for '{source}': expected table.")

    defaults = ChildConfig()
    drop_privileges = defaults.drop_privileges
    reset_realtime_priority = defaults.reset_realtime_priority
    niceness = defaults.niceness
    for key, value in cast("dict[str, object]", raw_value).items():
        if key not in _CHILD_KEYS:
            logger.warning("Ignoring unknown spawnguard config key '%s.%s'.", source, key)
            continue
        if key == "drop_privileges":
            drop_privileges = _coerce_bool(raw_value=value, source=f"{source}.{key}")
        elif key == "reset_realtime_priority":
            reset_realtime_priority = _coerce_bool(raw_value=value, source=f"{source}.{key}")
        else:
            niceness = _coerce_niceness(raw_value=value, source=f"{source}.{key}")

    return ChildConfig(
        drop_privileges=drop_privileges,
        reset_realtime_priority=reset_realtime_priority,
        niceness=niceness,
    )


def _coerce_hook_fields(*, raw_value: object, source: str) -> tuple[str, ...]:
    if not isinstance(raw_value, list):
        raise _type_error(source, "array[str]", raw_value)

    parsed: list[str] = []
    for item in cast("list[object]", raw_value):
        name = _coerce_str(raw_value=item, source=source)
        if name in parsed:
            raise ValueError(f"Invalid value for '{source}': duplicate field {name!r}.")
        parsed.append(name)
    return tuple(parsed)


def _coerce_hook_config(*, raw_value: object, source: str) -> HookConfig:
    if not isinstance(raw_value, dict):
        raise ValueError(f"Invalid value for '{source}': expected table.")

    payload = cast("dict[str, object]", raw_value)
    if "program" not in payload:
        raise ValueError(f"Invalid value for '{source}': missing required key 'program'.")

    program = _coerce_str(raw_value=payload["program"], source=f"{source}.program")
    detach = HookConfig(program=program).detach
    hook_fields: tuple[str, ...] = ()
    for key, value in payload.items():
        if key not in _HOOK_KEYS:
            logger.warning("Ignoring unknown spawnguard config key '%s.%s'.", source, key)
            continue
        if key == "detach":
            detach = _coerce_bool(raw_value=value, source=f"{source}.detach")
        elif key == "fields":
            hook_fields = _coerce_hook_fields(raw_value=value, source=f"{source}.fields")

    return HookConfig(program=program, detach=detach, fields=hook_fields)


def _coerce_hooks(*, raw_value: object, source: str) -> dict[str, HookConfig]:
    if not isinstance(raw_value, dict):
        raise ValueError(f"Invalid value for '{source}': expected table.")
    return {
        name: _coerce_hook_config(raw_value=value, source=f"{source}.{name}")
        for name, value in cast("dict[str, object]", raw_value).items()
    }


def _coerce_env_value(*, field_name: str, raw_value: str, env_name: str) -> object:
    normalized = raw_value.strip()
    if field_name in {"drop_privileges", "reset_realtime_priority"}:
        lowered = normalized.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(
            f"Invalid environment override '{env_name}': expected bool, got {raw_value!r}."
        )

    if field_name == "niceness":
        try:
            return int(normalized)
        except ValueError as error:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected int, got {raw_value!r}."
            ) from error

    if not normalized:
        raise ValueError(
            f"Invalid environment override '{env_name}': expected non-empty string."
        )
    return normalized


def _default_values() -> dict[str, object]:
    defaults = SpawnConfig()
    values = {item.name: getattr(defaults, item.name) for item in fields(SpawnConfig)}
    child = defaults.child
    values.update({item.name: getattr(child, item.name) for item in fields(ChildConfig)})
    values.pop("child")
    return values


def _apply_toml_payload(*, values: dict[str, object], payload: dict[str, object]) -> None:
    for key, raw_value in payload.items():
        if key == "shell":
            values["shell"] = _coerce_str(raw_value=raw_value, source="shell")
            continue
        if key == "child":
            child = _coerce_child_config(raw_value=raw_value, source="child")
            values.update(
                drop_privileges=child.drop_privileges,
                reset_realtime_priority=child.reset_realtime_priority,
                niceness=child.niceness,
            )
            continue
        if key == "hooks":
            values["hooks"] = _coerce_hooks(raw_value=raw_value, source="hooks")
            continue
        logger.warning("Ignoring unknown spawnguard config key '%s'.", key)


def _apply_env_overrides(values: dict[str, object]) -> None:
    for env_name, field_name in _ENV_OVERRIDE_MAP.items():
        raw_value = os.getenv(env_name)
        if raw_value is None:
            continue
        values[field_name] = _coerce_env_value(
            field_name=field_name,
            raw_value=raw_value,
            env_name=env_name,
        )


def _build_config(values: dict[str, object]) -> SpawnConfig:
    return SpawnConfig(
        shell=cast("str", values["shell"]),
        child=ChildConfig(
            drop_privileges=cast("bool", values["drop_privileges"]),
            reset_realtime_priority=cast("bool", values["reset_realtime_priority"]),
            niceness=cast("int | None", values["niceness"]),
        ),
        hooks=cast("dict[str, HookConfig]", values["hooks"]),
    )


def resolve_config_path(explicit: Path | None = None) -> Path:
    """Resolve the config file location.

    Precedence:
    1. Explicit function argument.
    2. `SPAWNGUARD_CONFIG` environment variable.
    3. `.spawnguard/config.toml` under the current working directory.
    """

    if explicit is not None:
        return explicit.expanduser().resolve()

    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser().resolve()

    return Path.cwd().resolve() / DEFAULT_CONFIG_RELATIVE_PATH


def load_config(path: Path | None = None) -> SpawnConfig:
    """Load the TOML config file, when present, and apply environment overrides."""

    values = _default_values()
    config_path = resolve_config_path(path)
    if config_path.is_file():
        payload_obj = tomllib.loads(config_path.read_text(encoding="utf-8"))
        _apply_toml_payload(values=values, payload=cast("dict[str, object]", payload_obj))
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    _apply_env_overrides(values)
    return _build_config(values)
