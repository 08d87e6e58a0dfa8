"""Tests for policy pack inheritance, hashing, and persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shipgate.engine.policy import (
    BUILTIN_PACKS,
    DiffBudget,
    Permissions,
    PolicyCycleError,
    PolicyPack,
    PolicyResolutionError,
    RiskRules,
    UnknownPolicyPackError,
    apply_policy_pack,
    get_active_policy,
    hash_policy_pack,
    list_policy_packs,
    load_policy_packs,
    resolve_policy_pack,
)


def _pack(
    name: str,
    *,
    extends: str | None = None,
    deny: tuple[str, ...] = (),
    max_lines: int = 100,
    review: bool = False,
) -> PolicyPack:
    return PolicyPack(
        name=name,
        extends=extends,
        permissions=Permissions(deny=deny),
        diff_budget=DiffBudget(max_files=10, max_lines=max_lines),
        risk_rules=RiskRules(require_security_review_on_high_risk=review, max_high_risk_tasks=5),
    )


def test_strict_tightens_default_balanced() -> None:
    parent = resolve_policy_pack("default-balanced")
    strict = resolve_policy_pack("strict")
    assert strict.diff_budget.max_lines <= parent.diff_budget.max_lines
    assert strict.diff_budget.max_files <= parent.diff_budget.max_files
    assert set(parent.permissions.deny) <= set(strict.permissions.deny)
    assert set(parent.permissions.ask) <= set(strict.permissions.ask)
    assert strict.risk_rules.max_high_risk_tasks == 1
    assert strict.risk_rules.require_security_review_on_high_risk


def test_child_cannot_relax_parent() -> None:
    packs = {
        "base": _pack("base", deny=(".env",), max_lines=50, review=True),
        "loose": _pack("loose", extends="base", deny=("*.pem",), max_lines=5000, review=False),
    }
    resolved = resolve_policy_pack("loose", packs)
    assert resolved.diff_budget.max_lines == 50
    assert resolved.risk_rules.require_security_review_on_high_risk is True
    assert resolved.permissions.deny == (".env", "*.pem")


def test_union_deduplicates_patterns() -> None:
    packs = {
        "base": _pack("base", deny=(".env", "secrets/**")),
        "child": _pack("child", extends="base", deny=(".env",)),
    }
    assert resolve_policy_pack("child", packs).permissions.deny == (".env", "secrets/**")


def test_resolution_is_idempotent() -> None:
    assert resolve_policy_pack("strict") == resolve_policy_pack("strict")
    assert hash_policy_pack(resolve_policy_pack("strict")) == hash_policy_pack(
        resolve_policy_pack("strict")
    )


def test_cycle_is_reported() -> None:
    packs = {
        "a": _pack("a", extends="b"),
        "b": _pack("b", extends="c"),
        "c": _pack("c", extends="a"),
    }
    with pytest.raises(PolicyCycleError, match="cycle"):
        resolve_policy_pack("a", packs)


def test_self_extending_pack_is_a_cycle() -> None:
    with pytest.raises(PolicyCycleError):
        resolve_policy_pack("me", {"me": _pack("me", extends="me")})


def test_unknown_pack_and_unknown_parent() -> None:
    with pytest.raises(UnknownPolicyPackError, match="nope"):
        resolve_policy_pack("nope")
    with pytest.raises(UnknownPolicyPackError, match="ghost"):
        resolve_policy_pack("orphan", {"orphan": _pack("orphan", extends="ghost")})


def test_hash_changes_with_content() -> None:
    first = hash_policy_pack(resolve_policy_pack("default-balanced"))
    second = hash_policy_pack(resolve_policy_pack("strict"))
    assert len(first) == 64
    assert first != second


def test_list_returns_resolved_builtins() -> None:
    names = [pack.name for pack in list_policy_packs()]
    assert names == list(BUILTIN_PACKS)
    strict = next(pack for pack in list_policy_packs() if pack.name == "strict")
    assert ".env" in strict.permissions.deny


def test_yaml_custom_pack_joins_index(tmp_path: Path) -> None:
    directory = tmp_path / ".shipgate" / "policy-packs"
    directory.mkdir(parents=True)
    (directory / "team.yaml").write_text(
        "\n".join(
            [
                "name: team",
                "extends: strict",
                "description: Team overrides",
                "permissions:",
                "  deny: ['docker push *']",
                "diffBudget: {maxFiles: 100, maxLines: 150}",
                "riskRules: {requireSecurityReviewOnHighRisk: false, maxHighRiskTasks: 4}",
            ]
        ),
        encoding="utf-8",
    )
    packs = load_policy_packs(tmp_path)
    resolved = resolve_policy_pack("team", packs)
    assert resolved.diff_budget.max_files == 6
    assert resolved.diff_budget.max_lines == 150
    assert resolved.risk_rules.max_high_risk_tasks == 1
    assert "docker push *" in resolved.permissions.deny
    assert "secrets/**" in resolved.permissions.deny


def test_custom_pack_cannot_redefine_builtin(tmp_path: Path) -> None:
    directory = tmp_path / ".shipgate" / "policy-packs"
    directory.mkdir(parents=True)
    (directory / "strict.yaml").write_text(
        "name: strict\ndiffBudget: {maxFiles: 99, maxLines: 999}\n"
        "riskRules: {maxHighRiskTasks: 9}\n",
        encoding="utf-8",
    )
    with pytest.raises(PolicyResolutionError, match="built-in"):
        load_policy_packs(tmp_path)


def test_invalid_budget_is_rejected() -> None:
    with pytest.raises(ValueError, match="maxLines"):
        PolicyPack.from_dict(
            {
                "name": "bad",
                "diffBudget": {"maxFiles": 1, "maxLines": -3},
                "riskRules": {"maxHighRiskTasks": 1},
            }
        )


def test_apply_persists_snapshot_and_mirrors_settings(tmp_path: Path) -> None:
    settings_path = tmp_path / ".claude" / "settings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text(json.dumps({"model": "keep-me"}), encoding="utf-8")

    active = apply_policy_pack(tmp_path, "strict")

    loaded = get_active_policy(tmp_path)
    assert loaded is not None
    assert loaded.hash == active.hash
    assert loaded.pack.permissions.deny == active.pack.permissions.deny
    mirrored = json.loads(settings_path.read_text(encoding="utf-8"))
    assert mirrored["model"] == "keep-me"
    assert mirrored["permissions"]["defaultMode"] == "plan"
    assert mirrored["permissions"]["deny"] == list(active.pack.permissions.deny)


def test_apply_without_settings_file_skips_mirror(tmp_path: Path) -> None:
    apply_policy_pack(tmp_path, "default-balanced")
    assert not (tmp_path / ".claude" / "settings.json").exists()
    assert get_active_policy(tmp_path) is not None


def test_failed_apply_keeps_previous_policy(tmp_path: Path) -> None:
    first = apply_policy_pack(tmp_path, "default-balanced")
    with pytest.raises(UnknownPolicyPackError):
        apply_policy_pack(tmp_path, "missing")
    current = get_active_policy(tmp_path)
    assert current is not None
    assert current.hash == first.hash


def test_malformed_settings_file_is_left_alone(tmp_path: Path) -> None:
    settings_path = tmp_path / ".claude" / "settings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text("{not json", encoding="utf-8")

    active = apply_policy_pack(tmp_path, "strict")

    assert settings_path.read_text(encoding="utf-8") == "{not json"
    loaded = get_active_policy(tmp_path)
    assert loaded is not None
    assert loaded.hash == active.hash
    assert loaded.pack.name == "strict"


def test_unresolvable_pack_does_not_touch_settings_mirror(tmp_path: Path) -> None:
    settings_path = tmp_path / ".claude" / "settings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text(json.dumps({"model": "keep-me"}), encoding="utf-8")
    with pytest.raises(UnknownPolicyPackError):
        apply_policy_pack(tmp_path, "missing")
    assert json.loads(settings_path.read_text(encoding="utf-8")) == {"model": "keep-me"}
    assert get_active_policy(tmp_path) is None
