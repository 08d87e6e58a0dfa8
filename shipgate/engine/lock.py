"""Requirements lock hash verification.

The lock artifact ``docs/prd.lock.json`` records a SHA-256 over the locked
requirement documents. A build only proceeds while the documents on disk
still hash to that value.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path

LOCK_FILE = Path("docs") / "prd.lock.json"
HASH_SCOPE: tuple[str, ...] = ("assumptions.md", "decisions.md", "prd.locked.md")

logger = logging.getLogger(__name__)


def canonicalize(text: str) -> str:
    """Normalize line endings, tabs, and trailing whitespace."""
    normalized = text.replace("\r\n", "\n").replace("\t", "  ")
    return "\n".join(line.rstrip() for line in normalized.split("\n")).strip()


def build_prd_hash(project_root: Path) -> str:
    """Hash the locked requirement documents under ``docs/``."""
    docs_dir = project_root / "docs"
    sections = []
    for file_name in sorted(HASH_SCOPE):
        path = docs_dir / file_name
        raw = path.read_text(encoding="utf-8") if path.is_file() else ""
        sections.append(f"{file_name}\n{canonicalize(raw)}")
    return hashlib.sha256("\n---\n".join(sections).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LockCheck:
    """Verdict of comparing the recorded and current requirement hashes."""

    valid: bool
    expected: str | None
    actual: str


def has_lock(project_root: Path) -> bool:
    """Return whether the lock artifact exists."""
    return (project_root / LOCK_FILE).is_file()


def validate_lock_hash(project_root: Path) -> LockCheck:
    """Compare ``prdHash`` in the lock artifact with the documents on disk."""
    actual = build_prd_hash(project_root)
    path = project_root / LOCK_FILE
    if not path.is_file():
        logger.warning("No requirements lock at %s", path)
        return LockCheck(valid=False, expected=None, actual=actual)
    payload = json.loads(path.read_text(encoding="utf-8"))
    expected = payload.get("prdHash") if isinstance(payload, dict) else None
    if not isinstance(expected, str) or not expected:
        raise ValueError(f"Lock file {path} is missing 'prdHash'.")
    return LockCheck(valid=expected == actual, expected=expected, actual=actual)

