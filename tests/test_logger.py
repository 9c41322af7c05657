import logging

import pytest

from mcpsseproxy import logger as applog


def make_record(level=logging.INFO, msg="Starting proxy", fields=None):
    record = logging.LogRecord("mcpsseproxy", level, "/src/app.py", 42, msg, None, None)
    if fields is not None:
        record.fields = fields
    return record


def test_plain_format_contains_parts():
    fmt = applog.KeyValueFormatter()
    out = fmt.format(make_record(fields={"port": 8080, "cmd": "npx"}))
    assert " INFO " in out
    assert "<app.py:42>" in out
    assert "🔄 SSE-Proxy: Starting proxy" in out
    assert out.endswith("port=8080 cmd=npx")


def test_values_with_spaces_are_quoted():
    fmt = applog.KeyValueFormatter(report_caller=False)
    out = fmt.format(make_record(fields={"cmd": 'npx -y "x"', "empty": ""}))
    assert 'cmd="npx -y \\"x\\""' in out
    assert 'empty=""' in out
    assert "<app.py" not in out


def test_warning_label_is_warn():
    fmt = applog.KeyValueFormatter()
    out = fmt.format(make_record(level=logging.WARNING))
    assert " WARN " in out
    assert "WARNING" not in out


def test_colored_output_styles_level_and_keys():
    fmt = applog.KeyValueFormatter(use_color=True)
    out = fmt.format(make_record(level=logging.ERROR, fields={"err": "boom"}))
    assert "\x1b[1;48;5;196;38;5;15m ERROR \x1b[0m" in out
    assert "\x1b[1;38;5;196merr\x1b[0m" in out


def test_plain_output_has_no_escape_codes():
    fmt = applog.KeyValueFormatter(use_color=False)
    out = fmt.format(make_record(level=logging.ERROR, fields={"err": "boom"}))
    assert "\x1b[" not in out
    assert "err=boom" in out


def test_exception_is_appended():
    fmt = applog.KeyValueFormatter()
    try:
        raise ValueError("bad value")
    except ValueError:
        import sys

        record = logging.LogRecord(
            "mcpsseproxy", logging.ERROR, "/src/app.py", 1, "failed", None, sys.exc_info()
        )
    out = fmt.format(record)
    assert "ValueError: bad value" in out


@pytest.mark.parametrize(
    "name, expected",
    [
        ("DEBUG", logging.DEBUG),
        ("info", logging.INFO),
        ("Warn", logging.WARNING),
        ("error", logging.ERROR),
    ],
)
def test_parse_level_known(name, expected):
    assert applog.parse_level(name) == expected


@pytest.mark.parametrize("name", ["WARNING", "trace", ""])
def test_parse_level_unknown(name):
    assert applog.parse_level(name) is None


def test_get_logger_is_shared_and_defaults_to_info():
    first = applog.get_logger()
    assert first is applog.get_logger()
    assert first.name == "mcpsseproxy"
    assert first.propagate is False


def test_set_and_get_log_level():
    previous = applog.get_log_level()
    try:
        applog.set_log_level(logging.DEBUG)
        assert applog.get_log_level() == logging.DEBUG
        applog.set_log_level(logging.ERROR)
        assert applog.get_log_level() == logging.ERROR
    finally:
        applog.set_log_level(previous)