"""CLI output formatting utilities."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, is_dataclass
from pathlib import Path
from typing import Any, Literal, Protocol, cast, runtime_checkable

OutputFormat = Literal["text", "json", "porcelain"]


@runtime_checkable
class TextFormattable(Protocol):
    """Output dataclasses that provide a human-readable text format."""

    def format_text(self) -> str: ...


@dataclass(frozen=True, slots=True)
class OutputConfig:
    format: OutputFormat


def to_jsonable(value: Any) -> Any:
    """Convert supported values to JSON-serializable payloads."""

    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        typed_dict = cast("dict[object, object]", value)
        return {str(key): to_jsonable(item) for key, item in typed_dict.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in cast("list[object]", value)]
    return value


def normalize_output_format(
    *,
    requested: str | None,
    json_mode: bool,
    porcelain_mode: bool = False,
) -> OutputFormat:
    """Resolve final output format from flags; default is text."""

    if json_mode:
        return "json"
    if porcelain_mode:
        return "porcelain"
    if requested is None or requested == "":
        return "text"

    normalized = requested.strip().lower()
    if normalized in {"text", "json", "porcelain"}:
        return cast("OutputFormat", normalized)
    raise SystemExit("--format must be one of: text, json, porcelain")


def _porcelain_line(payload: dict[str, Any]) -> str:
    parts: list[str] = []
    for key in sorted(payload):
        value = payload[key]
        rendered = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
        parts.append(f"{key}={rendered}")
    return "\t".join(parts)


def emit(value: Any, config: OutputConfig) -> None:
    """Emit one payload according to the configured output mode."""

    if config.format == "json":
        print(json.dumps(to_jsonable(value), sort_keys=True), flush=True)
        return
    if config.format == "porcelain":
        payload = to_jsonable(value)
        if isinstance(payload, dict):
            print(_porcelain_line(cast("dict[str, Any]", payload)), flush=True)
        else:
            print(payload, flush=True)
        return
    if isinstance(value, TextFormattable):
        print(value.format_text(), flush=True)
    else:
        print(json.dumps(to_jsonable(value), sort_keys=True, indent=2), flush=True)
