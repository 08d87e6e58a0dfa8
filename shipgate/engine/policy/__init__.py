"""Policy pack exports."""

from shipgate.engine.policy.packs import (
    BUILTIN_PACKS,
    ActivePolicy,
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

__all__ = [
    "BUILTIN_PACKS",
    "ActivePolicy",
    "DiffBudget",
    "Permissions",
    "PolicyCycleError",
    "PolicyPack",
    "PolicyResolutionError",
    "RiskRules",
    "UnknownPolicyPackError",
    "apply_policy_pack",
    "get_active_policy",
    "hash_policy_pack",
    "list_policy_packs",
    "load_policy_packs",
    "resolve_policy_pack",
]
