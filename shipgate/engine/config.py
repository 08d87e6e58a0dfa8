"""Runtime configuration and shared validation helpers."""

from __future__ import annotations

from dataclasses import dataclass

SANDBOX_PROVIDERS = frozenset({"docker", "podman", "none"})
SANDBOX_PROFILES = frozenset({"strict", "balanced", "off"})
RISK_LEVELS = frozenset({"low", "medium", "high"})
QUALITY_GATES = frozenset({"review", "tests", "security", "lint"})


def require_positive_int(value: int, field_name: str) -> int:
    """Validate a positive integer input and return it."""
    if value <= 0:
        raise ValueError(f"{field_name} must be greater than zero.")
    return value


def require_non_negative_int(value: int, field_name: str) -> int:
    """Validate a non-negative integer input and return it."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{field_name} must be a non-negative integer.")
    return value


def validate_choice(value: str, field_name: str, allowed: set[str] | frozenset[str]) -> str:
    """Validate that a string value is within a set of allowed options."""
    if not isinstance(value, str) or value not in allowed:
        options = ", ".join(sorted(allowed))
        raise ValueError(f"{field_name} must be one of: {options}.")
    return value


def validate_sandbox_provider(value: str) -> str:
    """Validate sandbox container provider option."""
    return validate_choice(value, "sandbox.provider", SANDBOX_PROVIDERS)


def validate_sandbox_profile(value: str) -> str:
    """Validate sandbox isolation profile option."""
    return validate_choice(value, "sandbox.profile", SANDBOX_PROFILES)


@dataclass(frozen=True)
class BuildConfig:
    """Runtime configuration for one build attempt.

    ``force_fail_task`` and ``force_review_failure`` are fault-injection
    switches for harness runs; they are never read from the environment.
    """

    command_timeout_seconds: int = 120
    execute_commands: bool = False
    force_fail_task: str | None = None
    force_review_failure: bool = False
    retry_budget: int = 2
    container_image: str = "python:3.12-slim"
    container_workdir: str = "/workspace"
    run_static_analysis: bool = False
    static_analysis_strict: bool | None = None

    def __post_init__(self) -> None:
        """Validate configuration values eagerly."""
        require_positive_int(self.command_timeout_seconds, "command_timeout_seconds")
        require_non_negative_int(self.retry_budget, "retry_budget")
        if not self.container_image.strip():
            raise ValueError("container_image cannot be blank.")
        if not self.container_workdir.startswith("/"):
            raise ValueError("container_workdir must be an absolute container path.")
        if self.force_fail_task is not None and not self.force_fail_task.strip():
            raise ValueError("force_fail_task cannot be blank when provided.")
