"""Policy-enforced command execution with optional container isolation."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess  # nosec B404
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from shipgate.engine.audit import AuditSink
from shipgate.engine.config import require_positive_int
from shipgate.engine.policy.packs import PolicyPack
from shipgate.engine.sandbox.settings import SandboxSettings

BLOCKED_EXIT_CODE = 126
CONTAINER_UNAVAILABLE_EXIT_CODE = 125
TIMEOUT_EXIT_CODE = 124
CONTAINER_CLEANUP_TIMEOUT_SECONDS = 30

logger = logging.getLogger(__name__)

ProcessRunner = Callable[..., subprocess.CompletedProcess[str]]


class ContainerLaunchError(RuntimeError):
    """Raised when the container tool itself cannot be started."""


@dataclass(frozen=True)
class ExecutionResult:
    """Uniform outcome of one command, whichever path produced it."""

    ok: bool
    blocked: bool
    reason: str | None
    mode: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    warnings: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable result (output omitted)."""
        return {
            "ok": self.ok,
            "blocked": self.blocked,
            "reason": self.reason,
            "mode": self.mode,
            "command": self.command,
            "exitCode": self.exit_code,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class PolicyEvaluation:
    """Outcome of matching one command against a pack's permissions."""

    blocked: bool = False
    requires_approval: bool = False
    reason: str | None = None
    pattern: str | None = None
    matched_rule: str | None = None


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``*`` glob into a full-string, case-insensitive regex."""
    escaped = ".*".join(re.escape(part) for part in pattern.strip().split("*"))
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def matches_pattern(command: str, pattern: str) -> bool:
    """Return whether command matches a policy pattern.

    Besides the strict glob match, a whitespace-normalized containment check
    with trailing wildcards removed lets prefix patterns like ``curl *`` and
    ``secrets/**`` catch commands that merely mention the guarded text.
    """
    if pattern_to_regex(pattern).match(command.strip()):
        return True
    needle = _normalize(pattern).rstrip("*").rstrip()
    return bool(needle) and needle in _normalize(command)


def evaluate_policy(command: str, policy: PolicyPack | None) -> PolicyEvaluation:
    """Apply deny then ask patterns; absent policy allows everything."""
    if policy is None:
        return PolicyEvaluation()
    for pattern in policy.permissions.deny:
        if matches_pattern(command, pattern):
            return PolicyEvaluation(
                blocked=True,
                reason=f"Denied by policy pattern: {pattern}",
                pattern=pattern,
                matched_rule="deny",
            )
    for pattern in policy.permissions.ask:
        if matches_pattern(command, pattern):
            return PolicyEvaluation(
                requires_approval=True,
                reason=f"Requires approval by policy pattern: {pattern}",
                pattern=pattern,
                matched_rule="ask",
            )
    return PolicyEvaluation()


class SandboxExecutor:
    """Decides block/allow for a command and runs it locally or in a container."""

    def __init__(
        self,
        project_root: Path,
        *,
        timeout_seconds: int = 120,
        container_image: str = "python:3.12-slim",
        container_workdir: str = "/workspace",
        runner: ProcessRunner | None = None,
        which: Callable[[str], str | None] = shutil.which,
        audit: AuditSink | None = None,
    ) -> None:
        """Initialize executor with per-command timeout in seconds."""
        self.project_root = project_root.expanduser().resolve()
        self.timeout_seconds = require_positive_int(timeout_seconds, "timeout_seconds")
        self.container_image = container_image
        self.container_workdir = container_workdir
        self._run = runner or subprocess.run
        self._which = which
        self.audit = audit

    def execute(
        self,
        command: str,
        sandbox: SandboxSettings,
        policy: PolicyPack | None,
        *,
        simulate: bool,
    ) -> ExecutionResult:
        """Evaluate policy for command and execute it per sandbox settings."""
        evaluation = evaluate_policy(command, policy)
        if evaluation.matched_rule is not None:
            self._audit_decision(command, evaluation, sandbox)

        if evaluation.blocked:
            return self._blocked(command, evaluation.reason)

        if evaluation.requires_approval and sandbox.profile == "strict":
            return self._blocked(command, evaluation.reason)

        approval_warnings: tuple[str, ...] = ()
        if evaluation.requires_approval:
            approval_warnings = (evaluation.reason or "Policy approval required",)

        if simulate:
            return ExecutionResult(
                ok=True,
                blocked=False,
                reason=None,
                mode="simulated",
                command=command,
                warnings=approval_warnings,
            )

        if sandbox.uses_container:
            result = self._execute_isolated(command, sandbox)
        else:
            result = self._execute_local(command)
        if approval_warnings:
            result = replace(result, warnings=(*approval_warnings, *result.warnings))
        return result

    def _execute_isolated(self, command: str, sandbox: SandboxSettings) -> ExecutionResult:
        """Run in a container, falling back to the host unless profile is strict."""
        try:
            container_result = self._execute_container(command, sandbox.provider)
        except ContainerLaunchError as exc:
            if sandbox.profile == "strict":
                return ExecutionResult(
                    ok=False,
                    blocked=False,
                    reason=f"Strict sandbox requires container execution: {exc}",
                    mode="container",
                    command=command,
                    stderr=str(exc),
                    exit_code=CONTAINER_UNAVAILABLE_EXIT_CODE,
                )
            logger.warning("Container unavailable for %r, running on host: %s", command, exc)
            fallback = self._execute_local(command)
            return replace(
                fallback,
                warnings=(
                    *fallback.warnings,
                    f"Container unavailable, fell back to local execution: {exc}",
                ),
            )

        if container_result.ok or sandbox.profile == "strict":
            return container_result

        logger.warning(
            "Container execution failed for %r (%s), running on host",
            command,
            container_result.reason,
        )
        fallback = self._execute_local(command)
        return replace(
            fallback,
            warnings=(
                *fallback.warnings,
                f"Container execution failed ({container_result.reason or 'unknown'}), "
                "fell back to local execution",
            ),
        )

    def _execute_container(self, command: str, provider: str) -> ExecutionResult:
        """Run the command in an ephemeral container with the project mounted."""
        tool = self._which(provider)
        if tool is None:
            raise ContainerLaunchError(f"{provider} binary not found")
        name = f"shipgate-{uuid.uuid4().hex}"
        argv = [
            tool,
            "run",
            "--rm",
            "-v",
            f"{self.project_root}:{self.container_workdir}",
            "-w",
            self.container_workdir,
            "--name",
            name,
            self.container_image,
            "sh",
            "-lc",
            command,
        ]
        try:
            result = self._spawn(argv, command=command, mode="container", label=provider)
        except OSError as exc:
            raise ContainerLaunchError(str(exc)) from exc
        if result.exit_code == TIMEOUT_EXIT_CODE:
            self._remove_container(tool, name)
        return result

    def _remove_container(self, tool: str, name: str) -> None:
        """Force-remove a container whose client was killed on timeout."""
        try:
            completed = self._run(  # noqa: S603  # nosec B603
                [tool, "rm", "-f", name],
                text=True,
                capture_output=True,
                timeout=CONTAINER_CLEANUP_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not remove timed-out container %s: %s", name, exc)
            return
        if completed.returncode != 0:
            logger.warning(
                "Could not remove timed-out container %s: %s", name, completed.stderr.strip()
            )

    def _execute_local(self, command: str) -> ExecutionResult:
        """Run the command through the host shell in the project root."""
        try:
            return self._spawn(["bash", "-lc", command], command=command, mode="local")
        except OSError as exc:
            return ExecutionResult(
                ok=False,
                blocked=False,
                reason=f"Failed to start command: {exc}",
                mode="local",
                command=command,
                stderr=str(exc),
                exit_code=127,
            )

    def _spawn(
        self,
        argv: list[str],
        *,
        command: str,
        mode: str,
        label: str = "Command",
    ) -> ExecutionResult:
        start = time.perf_counter()
        try:
            completed = self._run(  # noqa: S603  # nosec B603
                argv,
                cwd=str(self.project_root),
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return ExecutionResult(
                ok=False,
                blocked=False,
                reason=f"{label} timed out after {self.timeout_seconds}s",
                mode=mode,
                command=command,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                exit_code=TIMEOUT_EXIT_CODE,
                duration_seconds=time.perf_counter() - start,
            )
        duration = time.perf_counter() - start
        ok = completed.returncode == 0
        reason = None
        if not ok:
            prefix = "Command" if mode == "local" else f"{label} execution"
            reason = f"{prefix} failed with exit code {completed.returncode}"
        return ExecutionResult(
            ok=ok,
            blocked=False,
            reason=reason,
            mode=mode,
            command=command,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
            duration_seconds=duration,
        )

    def _blocked(self, command: str, reason: str | None) -> ExecutionResult:
        logger.warning("Blocked command %r: %s", command, reason)
        return ExecutionResult(
            ok=False,
            blocked=True,
            reason=reason,
            mode="simulated",
            command=command,
            exit_code=BLOCKED_EXIT_CODE,
        )

    def _audit_decision(
        self,
        command: str,
        evaluation: PolicyEvaluation,
        sandbox: SandboxSettings,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            level="warn",
            kind="policy.decision",
            message=evaluation.reason or "Policy pattern matched",
            data={
                "command": command,
                "rule": evaluation.matched_rule,
                "pattern": evaluation.pattern,
                "profile": sandbox.profile,
            },
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
