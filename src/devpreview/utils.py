import logging
import shutil
import time
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from typing_extensions import override

# Configure console to handle encoding errors gracefully on Windows
console = Console(legacy_windows=False)


def format_elapsed_ms(start_time_perf: float) -> str:
    """Elapsed time since `start_time_perf` as "850ms" or "2s 40ms"."""
    elapsed_ms = int((time.perf_counter() - start_time_perf) * 1000)
    seconds, ms = divmod(elapsed_ms, 1000)
    return f"{seconds}s {ms}ms" if seconds else f"{ms}ms"


def format_timestamp(moment: datetime) -> str:
    """Local wall-clock time with milliseconds, as used in every console line."""
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def print_with_prefix(
    prefix: str,
    text: str,
    color: str,
    width: int = 10,
    timestamp: datetime | None = None,
):
    """Print each line of text as `timestamp | prefix | line`.

    Args:
        prefix: Component or stream name shown in the middle column
        text: The text to display (may span several lines)
        color: Rich color for the prefix column
        width: The width to pad the prefix to (default: 10)
        timestamp: When the text was produced (default: now)
    """
    stamp = format_timestamp(timestamp or datetime.now().astimezone())
    padded_prefix = escape(prefix).ljust(width)
    for line in text.split("\n"):
        console.print(f"{stamp} | [{color}]{padded_prefix}[/] | {escape(line)}")


_LEVEL_COLORS: tuple[tuple[int, str], ...] = (
    (logging.ERROR, "red"),
    (logging.WARNING, "yellow"),
)


class PrefixedLogHandler(logging.Handler):
    """Renders devpreview log records through `print_with_prefix`.

    Without a fixed prefix, the component part of `devpreview.<component>` is used.
    """

    def __init__(self, prefix: str | None, color: str, width: int = 10):
        super().__init__()
        self.prefix: str | None = prefix
        self.color: str = color
        self.width: int = width

    def _color_for(self, levelno: int) -> str:
        for threshold, color in _LEVEL_COLORS:
            if levelno >= threshold:
                return color
        return self.color

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_with_prefix(
                self.prefix or record.name.rsplit(".", 1)[-1],
                self.format(record),
                self._color_for(record.levelno),
                width=self.width,
                timestamp=datetime.fromtimestamp(record.created).astimezone(),
            )
        except Exception:
            self.handleError(record)


def resolve_executable(command: str) -> str:
    """Resolve a command to an absolute executable path when it is on PATH."""
    return shutil.which(command) or command


def ensure_dir(path: Path) -> None:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
