import io
import os
import re
import syslog
import threading
import time
from unittest import mock

import pytest

from clusterproxy.logging import (
    MAX_LOG_LEN,
    Logger,
    LogLevel,
    format_timestamp,
    level_str,
)


@pytest.mark.parametrize(
    "level, expected",
    [
        (LogLevel.DEBUG, "debug"),
        (LogLevel.INFO, "info"),
        (LogLevel.WARN, "warn"),
        (LogLevel.ERROR, "error"),
        (LogLevel.CRIT, "crit"),
        (99, "invalid_level"),
    ],
)
def test_level_str(level, expected):
    assert level_str(level) == expected


def test_levels_are_ordered():
    names = [level_str(level) for level in sorted(LogLevel)]
    assert names == ["debug", "info", "warn", "error", "crit"]


def test_level_threshold_filters_lower_levels():
    logger = Logger("c1", 8000, LogLevel.WARN, False)
    logger.stream = io.StringIO()
    assert logger.log(LogLevel.INFO, "low") is None
    emitted = logger.log(LogLevel.ERROR, "high")
    assert " ERROR [" in emitted
    assert logger.stream.getvalue() == emitted + "\n"


def test_format_timestamp_milliseconds():
    base = time.mktime((2020, 1, 2, 3, 4, 5, 0, 0, -1))
    assert format_timestamp(base + 0.123) == "2020-01-02 03:04:05,123"


def test_format_timestamp_zero_padded():
    base = time.mktime((2020, 1, 2, 3, 4, 5, 0, 0, -1))
    assert format_timestamp(base + 0.007).endswith(",007")


def test_format_line_layout():
    logger = Logger("c1", 8000, LogLevel.DEBUG, False)
    line = logger.format(LogLevel.WARN, "hello", "mbuf.c", 42)
    tag = f"[c1 8000 {os.getpid()} {threading.get_native_id()}]"
    assert line.endswith(f" WARN {tag}: hello (mbuf.c:42)")
    assert re.match(r"^\d{4}-\d\d-\d\d \d\d:\d\d:\d\d,\d{3} ", line)


def test_log_below_level_is_dropped():
    logger = Logger("c1", 8000, LogLevel.ERROR, False)
    logger.stream = io.StringIO()
    assert logger.log(LogLevel.INFO, "ignored") is None
    assert logger.stream.getvalue() == ""


def test_log_writes_formatted_message(capsys):
    logger = Logger("c1", 8000, LogLevel.INFO, False)
    text = logger.log(LogLevel.INFO, "x=%d %s", 5, "y")
    err = capsys.readouterr().err
    assert err == text + "\n"
    assert ": x=5 y (test_logging.py:" in text
    assert " INFO [" in text


def test_log_truncates_long_message():
    logger = Logger("c1", 8000, LogLevel.DEBUG, False)
    logger.stream = io.StringIO()
    logger.log(LogLevel.DEBUG, "a" * 2000)
    written = logger.stream.getvalue()
    assert "a" * (MAX_LOG_LEN - 1) in written
    assert "a" * MAX_LOG_LEN not in written


def test_log_to_syslog():
    logger = Logger("c2", 9000, LogLevel.DEBUG, True)
    with mock.patch("syslog.syslog") as fake:
        text = logger.log(LogLevel.ERROR, "boom %s", "now")
    fake.assert_called_once_with(syslog.LOG_ERR, text)
    assert text == f"[c2 9000 {os.getpid()} {threading.get_native_id()}] boom now"