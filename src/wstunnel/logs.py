"""
Process-wide logging setup.

The CLI builds one LogConfig at startup and applies it once; every module
logs through ``logging.getLogger(__name__)``.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import TextIO

# Per-chunk forwarding detail, below DEBUG
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

LOG_FORMAT_DEFAULT = os.environ.get("WSTUNNEL_LOG_FORMAT", "text").lower()


class _JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


@dataclass(frozen=True)
class LogConfig:
    """Minimum severity, output format and sink for the whole process."""
    level: int = logging.INFO
    format: str = LOG_FORMAT_DEFAULT
    stream: TextIO = field(default_factory=lambda: sys.stderr)

    @classmethod
    def from_names(cls, level: str, format: str = LOG_FORMAT_DEFAULT) -> "LogConfig":
        try:
            return cls(level=LEVELS[level.lower()], format=format.lower())
        except KeyError:
            raise ValueError(f"Unknown log level: {level}") from None


def configure_logging(config: LogConfig) -> None:
    """Install a single root handler according to ``config``.

    ``text`` writes ``time [LEVEL] message`` lines and ``json`` writes one
    JSON object per line.
    """
    handler = logging.StreamHandler(config.stream)
    if config.format == "json":
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(config.level)
    root.addHandler(handler)

    # Keep aiohttp's internal logging at WARNING unless debugging
    if config.level > logging.DEBUG:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)
