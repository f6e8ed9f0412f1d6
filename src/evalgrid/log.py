"""
Logging configuration.

Provides a single place to set up log levels and formatting, and
redacts provider API keys that end up in log records.
"""

from __future__ import annotations

import logging
import re

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Bearer tokens and the common vendor key prefixes
_KEY_RE = re.compile(r"(Bearer\s+|sk-[a-z]*-?)[A-Za-z0-9_\-]{8,}")


def redact(text: str) -> str:
    """Mask API keys and bearer tokens in text."""
    return _KEY_RE.sub(r"\1***", text)


class KeyRedactingFilter(logging.Filter):
    """Logging filter that redacts API keys from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {
                k: redact(v) if isinstance(v, str) else v for k, v in record.args.items()
            }
        return True


def configure_logging(level: str = "warning") -> None:
    """
    Configure basic logging with level, format and key redaction.

    Parameters:
        level: Log level name (e.g. "info", "debug").
    """
    lvl = logging.getLevelName(level.upper())
    if not isinstance(lvl, int):
        lvl = logging.WARNING
    logging.basicConfig(level=lvl, format=LOG_FORMAT)
    # Handler filters see records propagated from every module logger
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, KeyRedactingFilter) for f in handler.filters):
            handler.addFilter(KeyRedactingFilter())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "redact", "KeyRedactingFilter"]
