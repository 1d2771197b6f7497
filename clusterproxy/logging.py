"""Levelled log lines in the proxy's format, written to stderr or syslog."""

from __future__ import annotations

import enum
import inspect
import os
import sys
import threading
import time

try:
    import syslog as _syslog
except ImportError:  # pragma: no cover - platforms without syslog
    _syslog = None

MAX_LOG_LEN = 1024


class LogLevel(enum.IntEnum):
    """Severity of a log message, lowest first."""

    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    CRIT = 4


def level_str(level) -> str:
    """Return the lower-case name of a level, or "invalid_level"."""
    try:
        return LogLevel(level).name.lower()
    except ValueError:
        return "invalid_level"


def format_timestamp(when: float) -> str:
    """Format a Unix time as local "YYYY-mm-dd HH:MM:SS,mmm"."""
    secs, usec = divmod(round(when * 1_000_000), 1_000_000)
    prefix = time.strftime("%Y-%m-%d %H:%M:%S,", time.localtime(secs))
    return f"{prefix}{usec // 1000:03d}"


def _syslog_priority(level: LogLevel) -> int:
    return {
        LogLevel.DEBUG: _syslog.LOG_DEBUG,
        LogLevel.INFO: _syslog.LOG_INFO,
        LogLevel.WARN: _syslog.LOG_WARNING,
        LogLevel.ERROR: _syslog.LOG_ERR,
        LogLevel.CRIT: _syslog.LOG_CRIT,
    }[level]


class Logger:
    """Writes messages at or above a threshold level, tagged with the proxy identity."""

    def __init__(self, cluster, bind, level=LogLevel.INFO, use_syslog=False):
        self.cluster = cluster
        self.bind = bind
        self.level = level
        self.use_syslog = use_syslog
        self.stream = None

    def _tag(self) -> str:
        return f"{self.cluster} {int(self.bind)} {os.getpid()} {threading.get_native_id()}"

    def format(self, level, message, file, line) -> str:
        """Build one stderr log line for a message."""
        name = LogLevel(level).name
        return (
            f"{format_timestamp(time.time())} {name} [{self._tag()}]: "
            f"{message} ({file}:{line})"
        )

    def log(self, level, fmt, *args):
        """Log a %-style message; return the text emitted, or None if filtered."""
        if level < self.level:
            return None
        message = (fmt % args if args else fmt)[: MAX_LOG_LEN - 1]

        if self.use_syslog:
            if _syslog is None:
                raise RuntimeError("syslog is not available on this platform")
            text = f"[{self._tag()}] {message}"
            _syslog.syslog(_syslog_priority(LogLevel(level)), text)
            return text

        frame = inspect.currentframe()
        caller = frame.f_back if frame is not None else None
        if caller is not None:
            file, line = os.path.basename(caller.f_code.co_filename), caller.f_lineno
        else:
            file, line = "?", 0
        del frame, caller

        text = self.format(level, message, file, line)
        stream = self.stream if self.stream is not None else sys.stderr
        stream.write(text + "\n")
        return text