"""Module entrypoint for python -m shipgate."""

from __future__ import annotations

import logging

from shipgate.cli import app
from shipgate.logging_utils import JsonLogFormatter


def _configure_json_logging() -> None:
    """Send records from non-shipgate loggers to stderr as JSON lines."""
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    root.addHandler(handler)
    root.setLevel(logging.WARNING)


if __name__ == "__main__":
    _configure_json_logging()
    app()
