"""Static-analysis gate: external tool verdicts summarized as blockers and warnings."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess  # nosec B404
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TOOLS: tuple[tuple[str, str], ...] = (
    ("lint", "ruff check ."),
    ("semgrep", "semgrep scan --config auto ."),
    ("gitleaks", "gitleaks detect --no-banner --source ."),
)


@dataclass(frozen=True)
class StaticToolResult:
    """Report for one analysis tool."""

    tool: str
    status: str
    details: str
    exit_code: int

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable report."""
        return {
            "tool": self.tool,
            "status": self.status,
            "details": self.details,
            "exitCode": self.exit_code,
        }


@dataclass(frozen=True)
class StaticAnalysisSummary:
    """Aggregated analysis verdict; only blockers and warnings drive the gate."""

    reports: list[StaticToolResult] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable summary."""
        return {
            "reports": [report.to_dict() for report in self.reports],
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
        }


class StaticAnalysisRunner(Protocol):
    """Anything that can analyze a project root."""

    def __call__(self, project_root: Path, *, strict: bool) -> StaticAnalysisSummary:
        """Return the analysis verdict for project_root."""


def skipped_static_analysis(project_root: Path, *, strict: bool) -> StaticAnalysisSummary:
    """Verdict used when tool execution is disabled."""
    del project_root, strict
    return StaticAnalysisSummary(
        reports=[
            StaticToolResult(
                tool="static-analysis",
                status="skipped",
                details="Static analysis disabled in build configuration",
                exit_code=0,
            )
        ]
    )


class ToolStaticAnalysis:
    """Runs lint and security scanners, treating failures per strict mode."""

    def __init__(
        self,
        tools: tuple[tuple[str, str], ...] = DEFAULT_TOOLS,
        *,
        timeout_seconds: int = 180,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.tools = tools
        self.timeout_seconds = timeout_seconds
        self._which = which

    def __call__(self, project_root: Path, *, strict: bool) -> StaticAnalysisSummary:
        reports: list[StaticToolResult] = []
        blockers: list[str] = []
        warnings: list[str] = []
        for tool, command in self.tools:
            argv = shlex.split(command)
            if self._which(argv[0]) is None:
                reports.append(
                    StaticToolResult(
                        tool=tool,
                        status="unavailable",
                        details=f"{argv[0]} binary not found",
                        exit_code=127,
                    )
                )
                warnings.append(f"{tool} unavailable")
                continue
            report = self._run_tool(tool, argv, project_root)
            reports.append(report)
            if report.status == "failed":
                finding = f"{tool} failed: {report.details}"
                (blockers if strict else warnings).append(finding)
        logger.info(
            "Static analysis finished: %d reports, %d blockers", len(reports), len(blockers)
        )
        return StaticAnalysisSummary(reports=reports, blockers=blockers, warnings=warnings)

    def _run_tool(self, tool: str, argv: list[str], project_root: Path) -> StaticToolResult:
        try:
            completed = subprocess.run(  # noqa: S603  # nosec B603
                argv,
                cwd=str(project_root),
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return StaticToolResult(
                tool=tool,
                status="failed",
                details=f"timed out after {self.timeout_seconds}s",
                exit_code=124,
            )
        if completed.returncode == 0:
            return StaticToolResult(tool=tool, status="passed", details="ok", exit_code=0)
        details = (completed.stderr or completed.stdout or f"{argv[0]} failed").strip()
        return StaticToolResult(
            tool=tool,
            status="failed",
            details=details,
            exit_code=completed.returncode,
        )
