"""Tests for the requirements lock hash check."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shipgate.engine.lock import build_prd_hash, canonicalize, has_lock, validate_lock_hash


def _write_docs(root: Path, prd: str = "# PRD\nShip it\n") -> None:
    docs = root / "docs"
    docs.mkdir(parents=True, exist_ok=True)
    (docs / "prd.locked.md").write_text(prd, encoding="utf-8")
    (docs / "decisions.md").write_text("# decisions\n", encoding="utf-8")
    (docs / "assumptions.md").write_text("# assumptions\n", encoding="utf-8")


def _lock(root: Path) -> str:
    prd_hash = build_prd_hash(root)
    (root / "docs" / "prd.lock.json").write_text(
        json.dumps({"version": "1.2", "prdHash": prd_hash}), encoding="utf-8"
    )
    return prd_hash


def test_canonicalize_normalizes_whitespace() -> None:
    assert canonicalize("a\r\n\tb   \n\n") == "a\n  b"


def test_hash_ignores_formatting_noise(tmp_path: Path) -> None:
    _write_docs(tmp_path, "# PRD\nShip it\n")
    first = build_prd_hash(tmp_path)
    _write_docs(tmp_path, "# PRD   \r\nShip it\r\n\r\n")
    assert build_prd_hash(tmp_path) == first


def test_valid_lock(tmp_path: Path) -> None:
    _write_docs(tmp_path)
    expected = _lock(tmp_path)
    check = validate_lock_hash(tmp_path)
    assert check.valid
    assert check.expected == expected == check.actual
    assert has_lock(tmp_path)


def test_drift_is_detected(tmp_path: Path) -> None:
    _write_docs(tmp_path)
    _lock(tmp_path)
    (tmp_path / "docs" / "prd.locked.md").write_text("# PRD\nScope creep\n", encoding="utf-8")
    check = validate_lock_hash(tmp_path)
    assert not check.valid
    assert check.expected != check.actual


def test_missing_lock_is_a_mismatch(tmp_path: Path) -> None:
    _write_docs(tmp_path)
    check = validate_lock_hash(tmp_path)
    assert not check.valid
    assert check.expected is None
    assert not has_lock(tmp_path)


def test_lock_without_hash_is_rejected(tmp_path: Path) -> None:
    _write_docs(tmp_path)
    (tmp_path / "docs" / "prd.lock.json").write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError, match="prdHash"):
        validate_lock_hash(tmp_path)
