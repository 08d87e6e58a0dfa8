"""Policy packs: named, inheritable command-permission and risk rule bundles.

Packs form a single-parent tree through ``extends``. Resolution walks up the
chain and merges child over parent with tightening-only semantics: pattern
lists are unioned, budgets take the minimum, and the security-review flag is
OR-ed, so no descendant can relax a restriction set by an ancestor.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from shipgate.engine.config import require_non_negative_int
from shipgate.engine.fs import atomic_write_text

POLICY_FILE = Path(".shipgate") / "policy-pack.json"
CUSTOM_PACKS_DIR = Path(".shipgate") / "policy-packs"
SETTINGS_MIRROR_FILE = Path(".claude") / "settings.json"

logger = logging.getLogger(__name__)


class PolicyResolutionError(ValueError):
    """Raised when a policy pack cannot be resolved."""


class UnknownPolicyPackError(PolicyResolutionError):
    """Raised for a pack name with no definition."""


class PolicyCycleError(PolicyResolutionError):
    """Raised when an ``extends`` chain revisits a pack."""


@dataclass(frozen=True)
class Permissions:
    """Ordered glob-like command patterns."""

    deny: tuple[str, ...] = ()
    ask: tuple[str, ...] = ()
    allow: tuple[str, ...] = ()


@dataclass(frozen=True)
class DiffBudget:
    """Upper bounds on the change surface of one build."""

    max_files: int
    max_lines: int


@dataclass(frozen=True)
class RiskRules:
    """Risk limits applied to a task graph."""

    require_security_review_on_high_risk: bool
    max_high_risk_tasks: int


@dataclass(frozen=True)
class PolicyPack:
    """A named policy pack, resolved or as defined."""

    name: str
    diff_budget: DiffBudget
    risk_rules: RiskRules
    permissions: Permissions = field(default_factory=Permissions)
    version: str = "1.0.0"
    description: str = ""
    extends: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PolicyPack:
        """Parse a pack definition from JSON/YAML."""
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Policy pack requires a non-empty 'name'.")
        permissions = data.get("permissions") or {}
        budget = data.get("diffBudget") or {}
        rules = data.get("riskRules") or {}
        extends = data.get("extends")
        return cls(
            name=name.strip(),
            version=str(data.get("version", "1.0.0")),
            description=str(data.get("description", "")),
            extends=str(extends) if extends else None,
            permissions=Permissions(
                deny=_pattern_tuple(permissions.get("deny"), "permissions.deny"),
                ask=_pattern_tuple(permissions.get("ask"), "permissions.ask"),
                allow=_pattern_tuple(permissions.get("allow"), "permissions.allow"),
            ),
            diff_budget=DiffBudget(
                max_files=require_non_negative_int(
                    budget.get("maxFiles"), "diffBudget.maxFiles"
                ),
                max_lines=require_non_negative_int(
                    budget.get("maxLines"), "diffBudget.maxLines"
                ),
            ),
            risk_rules=RiskRules(
                require_security_review_on_high_risk=bool(
                    rules.get("requireSecurityReviewOnHighRisk", False)
                ),
                max_high_risk_tasks=require_non_negative_int(
                    rules.get("maxHighRiskTasks"), "riskRules.maxHighRiskTasks"
                ),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        payload: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "permissions": {
                "deny": list(self.permissions.deny),
                "ask": list(self.permissions.ask),
                "allow": list(self.permissions.allow),
            },
            "diffBudget": {
                "maxFiles": self.diff_budget.max_files,
                "maxLines": self.diff_budget.max_lines,
            },
            "riskRules": {
                "requireSecurityReviewOnHighRisk": (
                    self.risk_rules.require_security_review_on_high_risk
                ),
                "maxHighRiskTasks": self.risk_rules.max_high_risk_tasks,
            },
        }
        if self.extends is not None:
            payload["extends"] = self.extends
        return payload


def _pattern_tuple(value: Any, field_name: str) -> tuple[str, ...]:
    """Validate an optional list of pattern strings."""
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"Expected '{field_name}' to be a list of strings.")
    return tuple(item for item in value if item.strip())


BUILTIN_PACKS: dict[str, PolicyPack] = {
    "default-balanced": PolicyPack(
        name="default-balanced",
        description="Balanced policy pack for normal development",
        permissions=Permissions(
            deny=(".env", ".env.*", "secrets/**"),
            ask=("curl *", "wget *", "rm -rf *"),
            allow=("git status", "git diff", "pytest", "python -m pytest"),
        ),
        diff_budget=DiffBudget(max_files=12, max_lines=500),
        risk_rules=RiskRules(require_security_review_on_high_risk=True, max_high_risk_tasks=3),
    ),
    "strict": PolicyPack(
        name="strict",
        extends="default-balanced",
        description="Strict policy for enterprise-sensitive repos",
        permissions=Permissions(
            deny=("**/*.pem", "**/*.key", "**/id_rsa*"),
            ask=("git push *",),
            allow=("pytest -m contract", "pytest -m integration"),
        ),
        diff_budget=DiffBudget(max_files=6, max_lines=200),
        risk_rules=RiskRules(require_security_review_on_high_risk=True, max_high_risk_tasks=1),
    ),
}


def _merge_unique(base: tuple[str, ...], extra: tuple[str, ...]) -> tuple[str, ...]:
    """Union two pattern lists keeping first occurrence order."""
    return tuple(dict.fromkeys((*base, *extra)))


def _tighten(parent: PolicyPack, child: PolicyPack) -> PolicyPack:
    """Merge child over an already-resolved parent without relaxing it."""
    return PolicyPack(
        name=child.name,
        version=child.version,
        description=child.description,
        extends=child.extends,
        permissions=Permissions(
            deny=_merge_unique(parent.permissions.deny, child.permissions.deny),
            ask=_merge_unique(parent.permissions.ask, child.permissions.ask),
            allow=_merge_unique(parent.permissions.allow, child.permissions.allow),
        ),
        diff_budget=DiffBudget(
            max_files=min(parent.diff_budget.max_files, child.diff_budget.max_files),
            max_lines=min(parent.diff_budget.max_lines, child.diff_budget.max_lines),
        ),
        risk_rules=RiskRules(
            require_security_review_on_high_risk=(
                parent.risk_rules.require_security_review_on_high_risk
                or child.risk_rules.require_security_review_on_high_risk
            ),
            max_high_risk_tasks=min(
                parent.risk_rules.max_high_risk_tasks, child.risk_rules.max_high_risk_tasks
            ),
        ),
    )


def resolve_policy_pack(
    name: str,
    packs: Mapping[str, PolicyPack] | None = None,
    _visiting: frozenset[str] = frozenset(),
) -> PolicyPack:
    """Resolve a pack and its ancestors into one tightened pack."""
    index = BUILTIN_PACKS if packs is None else packs
    if name in _visiting:
        raise PolicyCycleError(f"Policy inheritance cycle detected: {name}")
    current = index.get(name)
    if current is None:
        raise UnknownPolicyPackError(f"Unknown policy pack: {name}")
    if current.extends is None:
        return PolicyPack(
            name=current.name,
            version=current.version,
            description=current.description,
            permissions=Permissions(
                deny=tuple(current.permissions.deny),
                ask=tuple(current.permissions.ask),
                allow=tuple(current.permissions.allow),
            ),
            diff_budget=current.diff_budget,
            risk_rules=current.risk_rules,
        )
    parent = resolve_policy_pack(current.extends, index, _visiting | {name})
    return _tighten(parent, current)


def load_policy_packs(project_root: Path | None = None) -> dict[str, PolicyPack]:
    """Return built-in packs plus any YAML packs defined under the project."""
    packs = dict(BUILTIN_PACKS)
    if project_root is None:
        return packs
    directory = project_root / CUSTOM_PACKS_DIR
    if not directory.is_dir():
        return packs
    for path in sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")]):
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise PolicyResolutionError(f"Invalid policy pack file {path.name}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PolicyResolutionError(f"Policy pack file {path.name} must contain a mapping.")
        pack = PolicyPack.from_dict(payload)
        if pack.name in BUILTIN_PACKS:
            raise PolicyResolutionError(f"Custom pack cannot redefine built-in pack: {pack.name}")
        packs[pack.name] = pack
    return packs


def list_policy_packs(project_root: Path | None = None) -> list[PolicyPack]:
    """Return every known pack fully resolved."""
    packs = load_policy_packs(project_root)
    return [resolve_policy_pack(name, packs) for name in packs]


def hash_policy_pack(pack: PolicyPack) -> str:
    """Return a stable SHA-256 content hash for a resolved pack."""
    canonical = json.dumps(pack.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ActivePolicy:
    """Resolved pack snapshot and its content hash."""

    pack: PolicyPack
    hash: str

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted representation."""
        return {"pack": self.pack.to_dict(), "hash": self.hash}


def get_active_policy(project_root: Path) -> ActivePolicy | None:
    """Load the persisted active policy snapshot, if one was applied."""
    path = project_root / POLICY_FILE
    if not path.is_file():
        return None
    payload = json.loads(path.read_text(encoding="utf-8"))
    pack = PolicyPack.from_dict(payload["pack"])
    return ActivePolicy(pack=pack, hash=str(payload.get("hash", "")))


def _mirrored_settings(project_root: Path, pack: PolicyPack) -> dict[str, Any] | None:
    """Return the settings payload with pack permissions, or None when not mirrored."""
    path = project_root / SETTINGS_MIRROR_FILE
    if not path.is_file():
        return None
    try:
        settings = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.warning("Skipping settings mirror: %s is not valid JSON (%s)", path, exc)
        return None
    if not isinstance(settings, dict):
        logger.warning("Skipping settings mirror: %s is not a JSON object", path)
        return None
    settings["permissions"] = {
        "defaultMode": "plan",
        "deny": list(pack.permissions.deny),
        "ask": list(pack.permissions.ask),
        "allow": list(pack.permissions.allow),
    }
    return settings


def apply_policy_pack(project_root: Path, name: str) -> ActivePolicy:
    """Resolve, hash, and persist a pack as the project's active policy.

    Everything is resolved and read before the first write, so a failure
    leaves the previously active snapshot in place.
    """
    pack = resolve_policy_pack(name, load_policy_packs(project_root))
    active = ActivePolicy(pack=pack, hash=hash_policy_pack(pack))
    settings = _mirrored_settings(project_root, pack)
    atomic_write_text(project_root / POLICY_FILE, json.dumps(active.to_dict(), indent=2) + "\n")
    if settings is not None:
        atomic_write_text(
            project_root / SETTINGS_MIRROR_FILE, json.dumps(settings, indent=2) + "\n"
        )
    logger.info(
        "Applied policy pack %s (hash=%s, mirrored=%s)",
        name,
        active.hash[:12],
        settings is not None,
    )
    return active
