"""Sandboxed command execution exports."""

from shipgate.engine.sandbox.executor import (
    ContainerLaunchError,
    ExecutionResult,
    PolicyEvaluation,
    SandboxExecutor,
    evaluate_policy,
    matches_pattern,
)
from shipgate.engine.sandbox.settings import SandboxSettings

__all__ = [
    "ContainerLaunchError",
    "ExecutionResult",
    "PolicyEvaluation",
    "SandboxExecutor",
    "SandboxSettings",
    "evaluate_policy",
    "matches_pattern",
]
