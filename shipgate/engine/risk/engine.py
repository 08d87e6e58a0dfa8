"""Task-graph risk scoring gate."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from shipgate.engine.models import Task

BASE_SCORE = 100
MISSING_TESTS_PENALTY = 20
HIGH_RISK_WITHOUT_SECURITY_PENALTY = 25
HIGH_RISK_WITHOUT_CONTROLS_PENALTY = 10
BROAD_BLAST_RADIUS_PENALTY = 5


@dataclass(frozen=True)
class RiskAssessment:
    """Score plus blocking and informational findings for one build attempt."""

    score: int
    blockers: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        """Return whether any blocker must prevent execution."""
        return bool(self.blockers)

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable assessment."""
        return {
            "score": self.score,
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
        }


def assess_risk(tasks: Iterable[Task]) -> RiskAssessment:
    """Score a flattened task list, starting from 100 and subtracting penalties."""
    blockers: list[str] = []
    warnings: list[str] = []
    penalty = 0

    for task in tasks:
        if not task.tests:
            blockers.append(f"{task.task_id}: missing tests")
            penalty += MISSING_TESTS_PENALTY

        if task.risk == "high" and "security" not in task.quality_gates:
            blockers.append(f"{task.task_id}: high-risk task missing security quality gate")
            penalty += HIGH_RISK_WITHOUT_SECURITY_PENALTY

        if task.risk == "high" and not task.risk_controls:
            warnings.append(f"{task.task_id}: high-risk task missing explicit risk controls")
            penalty += HIGH_RISK_WITHOUT_CONTROLS_PENALTY

        if "root" in task.blast_radius.lower():
            warnings.append(f"{task.task_id}: broad blast radius")
            penalty += BROAD_BLAST_RADIUS_PENALTY

    return RiskAssessment(score=max(0, BASE_SCORE - penalty), blockers=blockers, warnings=warnings)
