"""End-to-end tests for the build pipeline controller."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from shipgate.engine.audit import MemoryAuditSink
from shipgate.engine.build import BuildController, evaluate_review_gate
from shipgate.engine.config import BuildConfig
from shipgate.engine.lock import LockCheck
from shipgate.engine.models import Task
from shipgate.engine.risk import StaticAnalysisSummary
from shipgate.engine.state import StateTransitionError, WorkflowState
from shipgate.engine.state.store import ProjectState, StateStore

S = WorkflowState

GOOD_TASKS = [
    Task(task_id="t1", tests=("pytest -q",), acceptance_criteria=("works",)),
    Task(
        task_id="t2",
        tests=("pytest -q tests/api",),
        acceptance_criteria=("api works",),
        depends_on=("t1",),
    ),
]


def _valid_lock(root: Path) -> LockCheck:
    return LockCheck(valid=True, expected="abc", actual="abc")


def _seed_state(root: Path, state: WorkflowState) -> None:
    StateStore(root).save(replace(ProjectState.default(), state=state))


def _controller(
    root: Path,
    *,
    tasks: list[Task] | None = None,
    config: BuildConfig | None = None,
    audit: MemoryAuditSink | None = None,
    start: WorkflowState = S.HARDENED,
    select_model: bool = True,
    **kwargs: object,
) -> BuildController:
    _seed_state(root, start)
    graph = GOOD_TASKS if tasks is None else tasks
    kwargs.setdefault("lock_checker", _valid_lock)
    controller = BuildController(
        root,
        config=config,
        audit=audit or MemoryAuditSink(),
        task_graph_provider=lambda project_root: graph,
        **kwargs,  # type: ignore[arg-type]
    )
    if select_model:
        controller.set_model_selection("anthropic", "model-x")
    return controller


def _transitions(audit: MemoryAuditSink) -> list[str]:
    return [event["message"] for event in audit.events if event["kind"] == "state.transition"]


def test_scenario_a_happy_path_ships(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    controller = _controller(tmp_path, audit=audit)

    outcome = controller.build()

    assert outcome.ok
    assert outcome.status == "shipped"
    assert outcome.completed_task_ids == ["t1", "t2"]
    assert _transitions(audit) == [
        "HARDENED -> PLANNING",
        "PLANNING -> IMPLEMENTING",
        "IMPLEMENTING -> REVIEWING",
        "REVIEWING -> TESTING",
        "TESTING -> SHIPPED",
    ]
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.state is S.SHIPPED
    assert persisted.session.checkpoint_id == "shipped"
    assert persisted.session.retry_budget == 2
    assert "build.shipped" in audit.kinds()


def test_scenario_b_forced_failure_retries_once_then_fails(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    controller = _controller(tmp_path, audit=audit, config=BuildConfig(force_fail_task="t1"))

    outcome = controller.build()

    assert outcome.status == "failed"
    assert outcome.failed_task_id == "t1"
    assert outcome.state is S.FAILED
    transitions = _transitions(audit)
    assert transitions[-4:] == [
        "REVIEWING -> TESTING",
        "TESTING -> DEBUGGING",
        "DEBUGGING -> TESTING",
        "TESTING -> FAILED",
    ]
    assert transitions.count("TESTING -> DEBUGGING") == 1
    assert audit.kinds().count("build.retest") == 1
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.session.retry_budget == 1
    assert persisted.session.checkpoint_id == "t1"
    assert persisted.session.last_failure_reason == "Testing failed on t1"


def test_scenario_c_hash_mismatch_routes_to_change_request(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    controller = _controller(
        tmp_path,
        audit=audit,
        lock_checker=lambda root: LockCheck(valid=False, expected="old", actual="new"),
    )

    outcome = controller.build()

    assert outcome.status == "change_request"
    assert outcome.state is S.CHANGE_REQUEST
    assert _transitions(audit) == ["HARDENED -> CHANGE_REQUEST"]
    assert not any(kind.startswith("build.task") for kind in audit.kinds())
    assert "expected=old actual=new" in outcome.message


def test_missing_lock_file_is_a_mismatch(tmp_path: Path) -> None:
    controller = _controller(tmp_path, lock_checker=None)
    assert controller.build().state is S.CHANGE_REQUEST


def test_missing_model_selection_blocks_without_state_change(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    controller = _controller(tmp_path, audit=audit, select_model=False)

    outcome = controller.build()

    assert outcome.status == "blocked"
    assert outcome.gate == "model-selection"
    assert outcome.state is S.HARDENED
    assert _transitions(audit) == []
    assert audit.kinds() == ["build.model_missing"]


def test_risk_gate_returns_to_planning(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    tasks = [Task(task_id="untested", acceptance_criteria=("x",))]
    controller = _controller(tmp_path, tasks=tasks, audit=audit)

    outcome = controller.build()

    assert outcome.status == "blocked"
    assert outcome.gate == "risk-gate"
    assert outcome.state is S.PLANNING
    assert outcome.message == "Risk gate blocked build. untested: missing tests"
    assert not any(kind.startswith("build.task") for kind in audit.kinds())
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.session.checkpoint_id == "risk-gate"
    assert persisted.session.last_failure_reason == "untested: missing tests"


def test_risk_gate_when_already_planning_keeps_state(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    controller = _controller(
        tmp_path, tasks=[Task(task_id="untested")], audit=audit, start=S.PLANNING
    )
    assert controller.build().state is S.PLANNING
    assert _transitions(audit) == []


def test_static_analysis_blocker_returns_to_planning(tmp_path: Path) -> None:
    def failing_analysis(project_root: Path, *, strict: bool) -> StaticAnalysisSummary:
        return StaticAnalysisSummary(blockers=["gitleaks failed: leak"])

    controller = _controller(tmp_path, static_analysis=failing_analysis)

    outcome = controller.build()

    assert outcome.gate == "static-analysis"
    assert outcome.state is S.PLANNING
    assert outcome.static_analysis is not None
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.session.checkpoint_id == "static-analysis"


def test_strict_policy_makes_static_analysis_strict(tmp_path: Path) -> None:
    seen: list[bool] = []

    def recording_analysis(project_root: Path, *, strict: bool) -> StaticAnalysisSummary:
        seen.append(strict)
        return StaticAnalysisSummary()

    controller = _controller(tmp_path, static_analysis=recording_analysis)
    controller.apply_policy("strict")
    controller.build()
    assert seen == [True]


def test_review_gate_missing_criteria_returns_to_planning(tmp_path: Path) -> None:
    audit = MemoryAuditSink()
    tasks = [Task(task_id="vague", tests=("pytest",))]
    controller = _controller(tmp_path, tasks=tasks, audit=audit)

    outcome = controller.build()

    assert outcome.gate == "review"
    assert outcome.state is S.PLANNING
    assert _transitions(audit)[-1] == "REVIEWING -> PLANNING"
    assert "no acceptance criteria" in outcome.message


def test_forced_review_failure_returns_to_implementing(tmp_path: Path) -> None:
    controller = _controller(tmp_path, config=BuildConfig(force_review_failure=True))
    outcome = controller.build()
    assert outcome.gate == "review"
    assert outcome.state is S.IMPLEMENTING


def test_review_gate_checks_tests_before_criteria() -> None:
    verdict = evaluate_review_gate(
        [Task(task_id="a", tests=("pytest",)), Task(task_id="b", acceptance_criteria=("x",))]
    )
    assert not verdict.ok
    assert verdict.reason == "Task b has no test command"
    assert verdict.fallback is S.PLANNING


def test_rejected_transition_writes_nothing(tmp_path: Path) -> None:
    controller = _controller(tmp_path, start=S.IDLE)
    with pytest.raises(StateTransitionError):
        controller.build()
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.state is S.IDLE


def test_rebuild_after_failure_can_ship(tmp_path: Path) -> None:
    _controller(tmp_path, start=S.FAILED, select_model=False)
    controller = BuildController(
        tmp_path,
        audit=MemoryAuditSink(),
        task_graph_provider=lambda root: GOOD_TASKS,
        lock_checker=_valid_lock,
    )
    controller.set_model_selection("openai", "gpt")
    assert controller.build().status == "shipped"


def test_pause_and_resume_restore_phase(tmp_path: Path) -> None:
    controller = _controller(tmp_path, start=S.REVIEWING, select_model=False)

    assert controller.pause() == "Paused from REVIEWING."
    assert controller.state.state is S.PAUSED
    assert controller.state.session.last_active_state is S.REVIEWING
    assert controller.state.session.paused_at is not None
    assert controller.pause() == "Already paused."

    assert controller.resume() == "Resumed to REVIEWING."
    assert controller.state.state is S.REVIEWING
    assert controller.state.session.paused_at is None
    assert controller.resume() == "Resume is only available from PAUSED state."


def test_resume_explicit_and_default_targets(tmp_path: Path) -> None:
    controller = _controller(tmp_path, start=S.PAUSED, select_model=False)
    assert controller.resume() == "Resumed to LOCKED."
    controller.pause()
    (tmp_path / ".claude").mkdir()
    (tmp_path / ".claude" / "settings.json").write_text("{}", encoding="utf-8")
    assert controller.resume("planning") == "Resumed to PLANNING."


def test_resume_into_other_phase_applies_entry_guards(tmp_path: Path) -> None:
    controller = _controller(tmp_path, start=S.IDLE, select_model=False)
    controller.pause()

    with pytest.raises(StateTransitionError, match="bootstrap"):
        controller.resume("BOOTSTRAPPED")
    with pytest.raises(StateTransitionError, match="HARDENED"):
        controller.resume("TESTING")
    assert StateStore(tmp_path).load().state is S.PAUSED  # type: ignore[union-attr]

    assert controller.resume() == "Resumed to IDLE."


def test_resume_from_hardened_phase_into_build_flow(tmp_path: Path) -> None:
    controller = _controller(tmp_path, start=S.REVIEWING, select_model=False)
    controller.pause()
    assert controller.resume("testing") == "Resumed to TESTING."


def test_resume_unknown_state_raises(tmp_path: Path) -> None:
    controller = _controller(tmp_path, start=S.PAUSED, select_model=False)
    with pytest.raises(ValueError, match="Unknown workflow state"):
        controller.resume("LAUNCHED")
    assert StateStore(tmp_path).load().state is S.PAUSED  # type: ignore[union-attr]


def test_sandbox_settings_persist(tmp_path: Path) -> None:
    controller = _controller(tmp_path, select_model=False)
    controller.set_sandbox(enabled=True, provider="podman", profile="strict")
    assert controller.sandbox_status() == "enabled=True provider=podman profile=strict"
    with pytest.raises(ValueError):
        controller.set_sandbox(enabled=True, provider="lxc", profile="strict")


def test_apply_policy_updates_project_record(tmp_path: Path) -> None:
    controller = _controller(tmp_path, select_model=False)
    active = controller.apply_policy("strict")
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.policy.active_pack == "strict"
    assert persisted.policy.hash == active.hash
    assert persisted.policy.last_applied_at is not None
    policy = controller.active_policy()
    assert policy is not None
    assert policy.name == "strict"


def test_model_selection_round_trip(tmp_path: Path) -> None:
    controller = _controller(tmp_path, select_model=False)
    assert not controller.has_model_selection()
    controller.set_model_selection("anthropic", "model-x")
    assert controller.has_model_selection()
    with pytest.raises(ValueError):
        controller.set_model_selection("", "model-x")


def test_apply_policy_with_malformed_settings_keeps_state_consistent(tmp_path: Path) -> None:
    controller = _controller(tmp_path, select_model=False)
    settings_path = tmp_path / ".claude" / "settings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text("{not json", encoding="utf-8")

    controller.apply_policy("strict")

    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.policy.active_pack == "strict"
    policy = controller.active_policy()
    assert policy is not None
    assert policy.name == "strict"


def test_build_telemetry_counts_ship_and_failure(tmp_path: Path) -> None:
    controller = _controller(tmp_path)
    controller.build()
    shipped = StateStore(tmp_path).load()
    assert shipped is not None
    assert shipped.telemetry.builds == 1
    assert shipped.telemetry.build_failures == 0
    assert shipped.telemetry.last_slo_snapshot_at is not None

    failing = BuildController(
        tmp_path,
        config=BuildConfig(force_fail_task="t2"),
        audit=MemoryAuditSink(),
        task_graph_provider=lambda root: GOOD_TASKS,
        lock_checker=_valid_lock,
    )
    assert failing.build().status == "failed"
    failed = StateStore(tmp_path).load()
    assert failed is not None
    assert failed.telemetry.builds == 2
    assert failed.telemetry.build_failures == 1
    assert failed.telemetry.last_build_ms >= 0


def test_gate_block_is_recorded_as_failed_build(tmp_path: Path) -> None:
    controller = _controller(tmp_path, tasks=[Task(task_id="untested")])
    controller.build()
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.telemetry.builds == 1
    assert persisted.telemetry.build_failures == 1


def test_model_block_leaves_telemetry_untouched(tmp_path: Path) -> None:
    controller = _controller(tmp_path, select_model=False)
    controller.build()
    persisted = StateStore(tmp_path).load()
    assert persisted is not None
    assert persisted.telemetry.builds == 0
