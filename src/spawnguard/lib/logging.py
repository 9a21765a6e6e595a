"""Structlog configuration helpers."""

from __future__ import annotations

import logging as std_logging
import os
import sys
from typing import TextIO

import structlog
from structlog.typing import EventDict, WrappedLogger


def _level_from_verbosity(verbosity: int) -> int:
    if verbosity <= 0:
        return std_logging.WARNING
    if verbosity == 1:
        return std_logging.INFO
    return std_logging.DEBUG


def _add_pid(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    # Spawning forks the host, so every line carries the process that wrote it.
    event_dict.setdefault("host_pid", os.getpid())
    return event_dict


def configure_logging(
    json_mode: bool = False,
    verbosity: int = 0,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for CLI output or embedding in a host process."""

    level = _level_from_verbosity(verbosity)
    target = stream if stream is not None else sys.stderr
    # Child programs inherit stdout; keep diagnostics on stderr.
    handler = std_logging.StreamHandler(target)
    handler.setFormatter(std_logging.Formatter("%(message)s"))
    std_logging.basicConfig(level=level, handlers=[handler], force=True)

    renderer: structlog.typing.Processor = (
        structlog.processors.JSONRenderer() if json_mode else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_pid,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=True,
    )
