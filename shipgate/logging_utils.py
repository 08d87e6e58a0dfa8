"""Logging setup for the shipgate CLI.

Two channels exist. The log file receives every record of the ``shipgate``
logger tree. Optionally, warnings and errors (gate blocks, container
fallbacks, skipped settings mirrors) are also written to stderr as JSON lines
so an operator or CI job sees them without opening the log file.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

_LOGGER_NAME = "shipgate"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonLogFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(
    *,
    log_file: Path,
    verbose: bool,
    console_level: int | None = None,
) -> logging.Logger:
    """Route the ``shipgate`` logger tree to a fresh log file.

    The file is truncated on every invocation so each operator command leaves
    an isolated log. With ``console_level`` set, records at or above that
    level are also emitted to stderr through :class:`JsonLogFormatter`.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False

    log_path = log_file.expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    logger.addHandler(file_handler)

    if console_level is not None:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(JsonLogFormatter())
        logger.addHandler(console_handler)
    return logger
