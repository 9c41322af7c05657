"""Application logger with key=value fields and styled level labels."""

from __future__ import annotations

import logging
import sys
from datetime import datetime

PREFIX = "🔄 SSE-Proxy"

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}

# (background, foreground, bold) for each level label.
_LEVEL_STYLES = {
    logging.DEBUG: ("242", "15", False),
    logging.INFO: ("39", "15", False),
    logging.WARNING: ("214", "0", False),
    logging.ERROR: ("196", "15", True),
}

# (key codes, value codes) for highlighted field names.
_FIELD_STYLES = {
    "err": ("1;38;5;196", "3;38;5;196"),
    "port": ("1;38;5;39", "4;38;5;39"),
    "cmd": ("1;38;5;213", "38;5;213"),
    "url": ("1;38;5;83", "4;38;5;83"),
}

_PARSED_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_RESET = "\x1b[0m"


def _style(text: str, codes: str) -> str:
    return f"\x1b[{codes}m{text}{_RESET}"


def _quote(value: object) -> str:
    text = str(value)
    if text == "" or any(ch in text for ch in ' ="\t\n\r'):
        escaped = (
            text.replace("\\", "\\\\")
            .replace('"', '\\"')
            .replace("\n", "\\n")
            .replace("\t", "\\t")
            .replace("\r", "\\r")
        )
        return f'"{escaped}"'
    return text


class KeyValueFormatter(logging.Formatter):
    """Formats records as ``time LEVEL <caller> prefix: message key=value ...``.

    Structured fields are read from the record's ``fields`` attribute,
    normally passed as ``extra={"fields": {...}}``.
    """

    def __init__(
        self,
        prefix: str = PREFIX,
        use_color: bool = False,
        report_caller: bool = True,
    ) -> None:
        super().__init__()
        self.prefix = prefix
        self.use_color = use_color
        self.report_caller = report_caller

    def _level(self, levelno: int) -> str:
        name = _LEVEL_NAMES.get(levelno, logging.getLevelName(levelno))
        style = _LEVEL_STYLES.get(levelno)
        if not self.use_color or style is None:
            return name
        background, foreground, bold = style
        codes = f"48;5;{background};38;5;{foreground}"
        if bold:
            codes = "1;" + codes
        return _style(f" {name} ", codes)

    def _field(self, key: str, value: object) -> str:
        rendered = _quote(value)
        styles = _FIELD_STYLES.get(key) if self.use_color else None
        if styles is None:
            return f"{key}={rendered}"
        key_codes, value_codes = styles
        return f"{_style(key, key_codes)}={_style(rendered, value_codes)}"

    def format(self, record: logging.LogRecord) -> str:
        timestamp = (
            datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")
        )
        parts = [timestamp, self._level(record.levelno)]
        if self.report_caller:
            parts.append(f"<{record.filename}:{record.lineno}>")
        if self.prefix:
            parts.append(f"{self.prefix}:")
        parts.append(record.getMessage())
        fields = getattr(record, "fields", None) or {}
        parts.extend(self._field(str(key), value) for key, value in fields.items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


_LOGGER_NAME = "mcpsseproxy"


def get_logger() -> logging.Logger:
    """Return the shared application logger, configuring it on first use."""
    logger = logging.getLogger(_LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(KeyValueFormatter(use_color=sys.stderr.isatty()))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def get_log_level() -> int:
    """Return the current level of the application logger."""
    return get_logger().level


def set_log_level(level: int) -> None:
    """Set the level of the application logger."""
    get_logger().setLevel(level)


def parse_level(name: str) -> int | None:
    """Map DEBUG, INFO, WARN or ERROR (any case) to a logging level; else None."""
    return _PARSED_LEVELS.get(name.strip().upper())