"""Coloured console logging shared by the whole package."""

from __future__ import annotations

import enum
from typing import Optional, TextIO


class Level(enum.Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


_FORMATS = {
    Level.INFO: "\x1b[97m[\x1b[93m*\x1b[97m] \x1b[90m{}\x1b[0m\n",
    Level.WARN: "\x1b[97m[\x1b[93m!\x1b[97m] \x1b[33m{}\x1b[0m\n",
    Level.ERROR: "\x1b[97m[\x1b[91m-\x1b[97m] \x1b[91m{}\x1b[0m\n",
    Level.SUCCESS: "\x1b[97m[\x1b[92m+\x1b[97m] \x1b[37m{}\x1b[0m\n",
}


class _Sink:
    """Holds the stream log output goes to."""

    def __init__(self) -> None:
        self.output: Optional[TextIO] = None


_sink = _Sink()


def init(output: Optional[TextIO]) -> None:
    """Send log output to ``output``; ``None`` silences logging."""
    if output is not None and not callable(getattr(output, "write", None)):
        raise TypeError("log output must have a write() method")
    _sink.output = output


def write(text: str) -> None:
    """Write raw text, flushing after a complete line."""
    output = _sink.output
    if output is None:
        return
    output.write(text)
    if text.endswith("\n"):
        output.flush()


def write_level(level: Level, text: str) -> None:
    """Write one decorated line for ``level``."""
    write(_FORMATS[level].format(text))


def info(message: str, *args) -> None:
    write_level(Level.INFO, message.format(*args))


def warn(message: str, *args) -> None:
    write_level(Level.WARN, message.format(*args))


def error(message: str, *args) -> None:
    write_level(Level.ERROR, message.format(*args))


def success(message: str, *args) -> None:
    write_level(Level.SUCCESS, message.format(*args))