"""Tests for task-graph risk scoring."""

from __future__ import annotations

from shipgate.engine.models import Task
from shipgate.engine.risk import assess_risk


def test_clean_graph_scores_full_marks() -> None:
    assessment = assess_risk([Task(task_id="t1", tests=("pytest",), blast_radius="api")])
    assert assessment.score == 100
    assert assessment.blockers == []
    assert assessment.warnings == []
    assert not assessment.blocked


def test_missing_tests_is_a_blocker() -> None:
    assessment = assess_risk([Task(task_id="t1")])
    assert assessment.blockers == ["t1: missing tests"]
    assert assessment.score == 80


def test_high_risk_without_security_gate() -> None:
    assessment = assess_risk(
        [Task(task_id="h1", tests=("pytest",), risk="high", risk_controls=("review",))]
    )
    assert assessment.blockers == ["h1: high-risk task missing security quality gate"]
    assert assessment.score <= 75


def test_high_risk_without_controls_only_warns() -> None:
    assessment = assess_risk(
        [
            Task(
                task_id="h2",
                tests=("pytest",),
                risk="high",
                quality_gates=("review", "tests", "security"),
            )
        ]
    )
    assert assessment.blockers == []
    assert assessment.warnings == ["h2: high-risk task missing explicit risk controls"]
    assert assessment.score == 90


def test_root_blast_radius_is_case_insensitive() -> None:
    assessment = assess_risk([Task(task_id="r", tests=("pytest",), blast_radius="Repo ROOT")])
    assert assessment.warnings == ["r: broad blast radius"]
    assert assessment.score == 95


def test_score_is_floored_at_zero() -> None:
    tasks = [Task(task_id=f"t{index}", risk="high", blast_radius="root") for index in range(3)]
    assessment = assess_risk(tasks)
    assert assessment.score == 0
    assert len(assessment.blockers) == 6
    assert assessment.to_dict()["score"] == 0
