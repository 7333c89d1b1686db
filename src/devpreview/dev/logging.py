"""Centralized logging for devpreview (component loggers, log buffers, CLI formatting)."""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import TypeAlias

from rich.text import Text

from devpreview.models import LogEntry, LogType
from devpreview.utils import PrefixedLogHandler, console, format_timestamp

LogBuffer: TypeAlias = deque[LogEntry]

ROOT_LOGGER_NAME = "devpreview"


class DevLogComponent(str, Enum):
    """Where a log originated (used for logger naming and filtering)."""

    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    LOCK = "lock"
    PORTS = "ports"
    REAPER = "reaper"
    DETECTOR = "detector"
    PROCESS_CONTROL = "process_control"


_configured = False


def new_log_buffer(size: int) -> LogBuffer:
    """Create a capped log buffer; the oldest entries are evicted past `size`."""
    return deque(maxlen=size)


def configure_logging(*, verbose: bool = False) -> None:
    """Route all devpreview component loggers to a rich, prefixed console handler."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = PrefixedLogHandler(prefix=None, color="bright_blue", width=15)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """Get a logger for a component (do not call stdlib logging directly)."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not _configured and not root.handlers:
        # Avoid "No handlers could be found" warnings when used as a library.
        root.addHandler(logging.NullHandler())
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component.value}")


_TYPE_STYLES: dict[LogType, str] = {
    LogType.STDOUT: "green",
    LogType.STDERR: "red",
    LogType.SYSTEM: "bright_blue",
}


def print_log_entry(entry: LogEntry, *, raw_output: bool = False) -> None:
    """Print a single log entry with a `[stdout]`/`[stderr]`/`[system]` prefix."""
    if raw_output:
        print(entry.message)
        return

    ts = Text(format_timestamp(entry.timestamp), style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{entry.type.value}]", style=_TYPE_STYLES[entry.type])
    console.print(ts + sep + prefix + sep + Text(entry.message))
