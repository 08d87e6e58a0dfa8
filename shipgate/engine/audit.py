"""Structured audit events for transitions, policy decisions, and task lifecycle."""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from shipgate.engine.security import redact_sensitive_text, sanitize

SHIPGATE_AUDIT_DIR_ENV = "SHIPGATE_AUDIT_DIR"

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class AuditSink(Protocol):
    """Receiver of structured engine events."""

    def log(
        self,
        *,
        level: str,
        kind: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Record one event."""


class AuditLogger:
    """Append-only daily JSONL audit log with redaction safeguards."""

    def __init__(self, project_root: Path, directory: Path | None = None) -> None:
        """Resolve the audit directory from override, env, or project root."""
        env_value = os.environ.get(SHIPGATE_AUDIT_DIR_ENV)
        if directory is not None:
            resolved = directory
        elif env_value:
            resolved = Path(env_value)
        else:
            resolved = project_root / ".shipgate" / "audit"
        self.directory = resolved.expanduser().resolve()

    @property
    def path(self) -> Path:
        """Return today's audit file."""
        return self.directory / f"{datetime.now(tz=UTC).strftime('%Y-%m-%d')}.jsonl"

    def log(
        self,
        *,
        level: str,
        kind: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append one redacted audit event record."""
        payload: dict[str, Any] = {
            "ts": datetime.now(tz=UTC).isoformat(),
            "level": level,
            "kind": kind,
            "message": redact_sensitive_text(message),
        }
        if data is not None:
            payload["data"] = sanitize(data)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s: %s", kind, payload["message"])
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=True, default=str))
            handle.write("\n")

    def read_events(self) -> list[dict[str, Any]]:
        """Return every event recorded today."""
        path = self.path
        if not path.is_file():
            return []
        events: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if stripped:
                events.append(json.loads(stripped))
        return events


class MemoryAuditSink:
    """In-process sink collecting events, for embedding and tests."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def log(
        self,
        *,
        level: str,
        kind: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.events.append({"level": level, "kind": kind, "message": message, "data": data or {}})

    def kinds(self) -> list[str]:
        """Return event kinds in emission order."""
        return [event["kind"] for event in self.events]
