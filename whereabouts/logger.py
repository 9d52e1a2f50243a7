"""Small levelled logger writing to stderr and optionally to a file."""

from __future__ import annotations

import enum
import sys
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Optional


class Level(enum.IntEnum):
    """Logging levels; lower values are more severe."""

    PANIC = 0
    ERROR = 1
    VERBOSE = 2
    DEBUG = 3
    MAX = 4
    UNKNOWN = 5

    def __str__(self) -> str:
        if self in (Level.PANIC, Level.ERROR, Level.VERBOSE, Level.DEBUG):
            return self.name.lower()
        return "unknown"


class LoggedError(Exception):
    """Error produced by :func:`errorf` after it has been logged."""


@dataclass
class _State:
    stderr: bool = True
    fp: Optional[IO[str]] = None
    level: Level = Level.DEBUG


_state = _State()


def _format(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


def printf(level: Level, fmt: str, *args) -> None:
    """Write a log line if ``level`` is enabled."""
    if level > _state.level:
        return
    timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
    line = f"{timestamp} [{level}] {_format(fmt, args)}\n"
    if _state.stderr:
        sys.stderr.write(line)
    if _state.fp is not None:
        _state.fp.write(line)
        _state.fp.flush()


def debugf(fmt: str, *args) -> None:
    printf(Level.DEBUG, fmt, *args)


def verbosef(fmt: str, *args) -> None:
    printf(Level.VERBOSE, fmt, *args)


def errorf(fmt: str, *args) -> LoggedError:
    """Log at error level and return an exception carrying the message."""
    printf(Level.ERROR, fmt, *args)
    return LoggedError(_format(fmt, args))


def panicf(fmt: str, *args) -> None:
    """Log at panic level followed by the current stack trace."""
    printf(Level.PANIC, fmt, *args)
    printf(Level.PANIC, "========= Stack trace output ========")
    printf(Level.PANIC, "%s", "".join(traceback.format_stack()).rstrip("\n"))
    printf(Level.PANIC, "========= Stack trace output end ========")


def get_logging_level() -> Level:
    return _state.level


def _parse_level(level_str: str) -> Level:
    try:
        level = Level[level_str.upper()]
    except KeyError:
        level = Level.UNKNOWN
    if level >= Level.MAX:
        sys.stderr.write(f"Whereabouts logging: cannot set logging level to {level_str}\n")
        return Level.UNKNOWN
    return level


def set_log_level(level_str: str) -> None:
    """Set the level by name; unknown names leave it unchanged."""
    level = _parse_level(level_str)
    if level < Level.MAX:
        _state.level = level


def set_log_stderr(enable: bool) -> None:
    _state.stderr = bool(enable)


def set_log_file(filename: str) -> None:
    """Append log lines to ``filename``; an empty name does nothing."""
    if not filename:
        return
    try:
        _state.fp = open(filename, "a", encoding="utf-8")
    except OSError:
        _state.fp = None
        sys.stderr.write(f"Whereabouts logging: cannot open {filename}")