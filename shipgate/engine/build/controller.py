"""Build pipeline controller: gates, state transitions, and the debug retry loop.

One ``build()`` call drives a single attempt through the workflow:

    model selection -> lock hash -> risk gate -> static analysis
    -> PLANNING -> IMPLEMENTING -> REVIEWING -> review gate
    -> TESTING -> (DEBUGGING -> TESTING) -> SHIPPED | FAILED

Every state change goes through ``can_transition`` before anything is
persisted, and the whole attempt runs under the project's exclusive lock.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from shipgate.engine.audit import AuditLogger, AuditSink
from shipgate.engine.build.orchestrator import BuildSummary, TaskOrchestrator, order_tasks
from shipgate.engine.config import (
    BuildConfig,
    validate_sandbox_profile,
    validate_sandbox_provider,
)
from shipgate.engine.fs import atomic_write_text
from shipgate.engine.lock import LockCheck, has_lock, validate_lock_hash
from shipgate.engine.models import Task, load_task_graph
from shipgate.engine.policy.packs import (
    SETTINGS_MIRROR_FILE,
    ActivePolicy,
    PolicyPack,
    apply_policy_pack,
    get_active_policy,
    load_policy_packs,
    resolve_policy_pack,
)
from shipgate.engine.risk.engine import RiskAssessment, assess_risk
from shipgate.engine.risk.static_analysis import (
    StaticAnalysisRunner,
    StaticAnalysisSummary,
    ToolStaticAnalysis,
    skipped_static_analysis,
)
from shipgate.engine.sandbox.executor import SandboxExecutor
from shipgate.engine.sandbox.settings import SandboxSettings
from shipgate.engine.state.machine import (
    HARDENED_STATES,
    StateTransitionError,
    TransitionContext,
    WorkflowState,
    assert_transition,
    check_entry_guards,
)
from shipgate.engine.state.store import (
    PolicyRecord,
    ProjectState,
    StateStore,
    utc_now_iso,
)

MODEL_SELECTION_FILE = Path(".shipgate") / "model-selection.json"
TASK_GRAPH_CANDIDATES: tuple[Path, ...] = (
    Path("docs") / "task-graph.json",
    Path("docs") / "task-graph.yaml",
    Path("docs") / "task-graph.yml",
)

logger = logging.getLogger(__name__)

TaskGraphProvider = Callable[[Path], Sequence[Task]]
LockChecker = Callable[[Path], LockCheck]


def default_task_graph_provider(project_root: Path) -> list[Task]:
    """Load the flattened task graph from the project's ``docs/`` directory."""
    for candidate in TASK_GRAPH_CANDIDATES:
        path = project_root / candidate
        if path.is_file():
            return load_task_graph(path).flatten()
    raise ValueError(
        f"No task graph found under {project_root / 'docs'} "
        "(expected task-graph.json or task-graph.yaml)."
    )


def file_task_graph_provider(path: Path) -> TaskGraphProvider:
    """Return a provider that always reads the given task-graph file."""

    def provide(project_root: Path) -> list[Task]:
        del project_root
        return load_task_graph(path).flatten()

    return provide


@dataclass(frozen=True)
class ReviewVerdict:
    """Review gate result; ``fallback`` is the state to return to on failure."""

    ok: bool
    fallback: WorkflowState | None = None
    reason: str | None = None


def evaluate_review_gate(tasks: Sequence[Task], *, force_failure: bool = False) -> ReviewVerdict:
    """Check that every task carries tests and acceptance criteria."""
    if force_failure:
        return ReviewVerdict(
            ok=False,
            fallback=WorkflowState.IMPLEMENTING,
            reason="Forced review failure",
        )
    for task in tasks:
        if not task.tests:
            return ReviewVerdict(
                ok=False,
                fallback=WorkflowState.PLANNING,
                reason=f"Task {task.task_id} has no test command",
            )
    for task in tasks:
        if not task.acceptance_criteria:
            return ReviewVerdict(
                ok=False,
                fallback=WorkflowState.PLANNING,
                reason=f"Task {task.task_id} has no acceptance criteria",
            )
    return ReviewVerdict(ok=True)


@dataclass(frozen=True)
class BuildOutcome:
    """What one build attempt produced.

    ``status`` is one of ``blocked``, ``change_request``, ``failed`` or
    ``shipped``. Blocked outcomes name the ``gate`` that stopped them.
    """

    status: str
    message: str
    state: WorkflowState
    completed_task_ids: list[str] = field(default_factory=list)
    failed_task_id: str | None = None
    gate: str | None = None
    risk: RiskAssessment | None = None
    static_analysis: StaticAnalysisSummary | None = None

    @property
    def ok(self) -> bool:
        """Return whether the attempt shipped."""
        return self.status == "shipped"

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable outcome."""
        return {
            "status": self.status,
            "message": self.message,
            "state": self.state.value,
            "completedTaskIds": list(self.completed_task_ids),
            "failedTaskId": self.failed_task_id,
            "gate": self.gate,
            "risk": self.risk.to_dict() if self.risk is not None else None,
            "staticAnalysis": (
                self.static_analysis.to_dict() if self.static_analysis is not None else None
            ),
        }


class BuildController:
    """Owns a project's workflow state and drives build attempts."""

    def __init__(
        self,
        project_root: Path,
        *,
        config: BuildConfig | None = None,
        audit: AuditSink | None = None,
        task_graph_provider: TaskGraphProvider | None = None,
        lock_checker: LockChecker | None = None,
        static_analysis: StaticAnalysisRunner | None = None,
        executor: SandboxExecutor | None = None,
    ) -> None:
        self.project_root = project_root.expanduser().resolve()
        self.config = config or BuildConfig()
        self.store = StateStore(self.project_root)
        self.audit: AuditSink = audit or AuditLogger(self.project_root)
        self.task_graph_provider = task_graph_provider or default_task_graph_provider
        self.lock_checker = lock_checker or validate_lock_hash
        if static_analysis is not None:
            self.static_analysis = static_analysis
        elif self.config.run_static_analysis:
            self.static_analysis = ToolStaticAnalysis(
                timeout_seconds=self.config.command_timeout_seconds
            )
        else:
            self.static_analysis = skipped_static_analysis
        self.executor = executor or SandboxExecutor(
            self.project_root,
            timeout_seconds=self.config.command_timeout_seconds,
            container_image=self.config.container_image,
            container_workdir=self.config.container_workdir,
            audit=self.audit,
        )
        self.state: ProjectState = self.store.ensure()

    def transition_context(self) -> TransitionContext:
        """Recompute lock and hardening flags from disk and the current state."""
        hardened_marker = (self.project_root / SETTINGS_MIRROR_FILE).is_file()
        return TransitionContext(
            has_lock=has_lock(self.project_root),
            is_hardened=hardened_marker or self.state.state in HARDENED_STATES,
        )

    def _transition(
        self,
        next_state: WorkflowState,
        *,
        has_lock: bool | None = None,
        is_hardened: bool | None = None,
        hash_mismatch: bool | None = None,
    ) -> ProjectState:
        current = self.state.state
        context = self.transition_context().merged(
            has_lock=has_lock, is_hardened=is_hardened, hash_mismatch=hash_mismatch
        )
        assert_transition(current, next_state, context)
        self.state = replace(self.state, state=next_state)
        self.store.save(self.state)
        logger.info("Workflow transition %s -> %s", current.value, next_state.value)
        self.audit.log(
            level="info",
            kind="state.transition",
            message=f"{current.value} -> {next_state.value}",
            data={"context": context.to_dict()},
        )
        return self.state

    def _transition_if_needed(self, next_state: WorkflowState, **overrides: bool) -> ProjectState:
        if self.state.state is next_state:
            return self.state
        return self._transition(next_state, **overrides)

    def transition(self, next_state: WorkflowState | str, **overrides: bool) -> ProjectState:
        """Validate and persist one state change; rejected changes write nothing."""
        target = WorkflowState.parse(next_state)
        with self.store.locked():
            self.state = self.store.ensure()
            return self._transition(target, **overrides)

    def transition_if_needed(
        self, next_state: WorkflowState | str, **overrides: bool
    ) -> ProjectState:
        """Transition unless already in ``next_state``."""
        target = WorkflowState.parse(next_state)
        with self.store.locked():
            self.state = self.store.ensure()
            return self._transition_if_needed(target, **overrides)

    def _save_session(self, **changes: Any) -> None:
        self.state = self.state.with_session(**changes)
        self.store.save(self.state)

    def pause(self) -> str:
        """Record the active phase and move to PAUSED."""
        with self.store.locked():
            self.state = self.store.ensure()
            if self.state.state is WorkflowState.PAUSED:
                return "Already paused."
            previous = self.state.state
            self.state = self.state.with_session(
                paused_at=utc_now_iso(),
                last_active_state=previous,
                checkpoint_id=f"paused-{int(time.time() * 1000)}",
            )
            self._transition(WorkflowState.PAUSED)
            return f"Paused from {previous.value}."

    def resume(self, state: str | None = None) -> str:
        """Leave PAUSED for ``state``, the remembered phase, or LOCKED."""
        with self.store.locked():
            self.state = self.store.ensure()
            if self.state.state is not WorkflowState.PAUSED:
                return "Resume is only available from PAUSED state."
            remembered = self.state.session.last_active_state
            if state is not None:
                target = WorkflowState.parse(state)
            elif remembered is not None:
                target = remembered
            else:
                target = WorkflowState.LOCKED
            if target is not remembered:
                hardened_marker = (self.project_root / SETTINGS_MIRROR_FILE).is_file()
                guard = check_entry_guards(
                    target,
                    TransitionContext(
                        has_lock=has_lock(self.project_root),
                        is_hardened=hardened_marker or remembered in HARDENED_STATES,
                    ),
                )
                if not guard.allowed:
                    raise StateTransitionError(guard.reason or "Transition rejected.")
            self.state = self.state.with_session(paused_at=None)
            self._transition(target)
            return f"Resumed to {target.value}."

    def set_sandbox(self, *, enabled: bool, provider: str, profile: str) -> SandboxSettings:
        """Persist new sandbox settings for later build attempts."""
        settings = SandboxSettings(
            enabled=enabled,
            provider=validate_sandbox_provider(provider),
            profile=validate_sandbox_profile(profile),
        )
        with self.store.locked():
            self.state = replace(self.store.ensure(), sandbox=settings)
            self.store.save(self.state)
        self.audit.log(
            level="info",
            kind="sandbox.update",
            message="Sandbox settings updated",
            data=settings.to_dict(),
        )
        return settings

    def sandbox_status(self) -> str:
        """Render the persisted sandbox settings."""
        self.state = self.store.ensure()
        return self.state.sandbox.status()

    def apply_policy(self, name: str) -> ActivePolicy:
        """Resolve, persist, and record a policy pack as active."""
        with self.store.locked():
            active = apply_policy_pack(self.project_root, name)
            self.state = replace(
                self.store.ensure(),
                policy=PolicyRecord(
                    active_pack=active.pack.name,
                    hash=active.hash,
                    last_applied_at=utc_now_iso(),
                ),
            )
            self.store.save(self.state)
        self.audit.log(
            level="info",
            kind="policy.apply",
            message=f"Applied policy pack {active.pack.name}",
            data={"pack": active.pack.name, "hash": active.hash},
        )
        return active

    def active_policy(self) -> PolicyPack | None:
        """Return the persisted pack snapshot, else the pack named in state."""
        snapshot = get_active_policy(self.project_root)
        if snapshot is not None:
            return snapshot.pack
        packs = load_policy_packs(self.project_root)
        if self.state.policy.active_pack not in packs:
            logger.warning("Active policy pack %s is not defined", self.state.policy.active_pack)
            return None
        return resolve_policy_pack(self.state.policy.active_pack, packs)

    def set_model_selection(self, provider: str, model_id: str) -> dict[str, str]:
        """Record the explicit execution target required before building."""
        if not provider.strip() or not model_id.strip():
            raise ValueError("Model selection requires a provider and a model id.")
        selection = {
            "provider": provider.strip(),
            "modelId": model_id.strip(),
            "selectedAt": utc_now_iso(),
        }
        atomic_write_text(
            self.project_root / MODEL_SELECTION_FILE, json.dumps(selection, indent=2) + "\n"
        )
        self.audit.log(
            level="info",
            kind="model.select",
            message=f"Model selected: {selection['provider']}/{selection['modelId']}",
            data=selection,
        )
        return selection

    def has_model_selection(self) -> bool:
        """Return whether an explicit execution target was recorded."""
        path = self.project_root / MODEL_SELECTION_FILE
        if not path.is_file():
            return False
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed model selection at %s", path)
            return False
        if not isinstance(payload, dict):
            return False
        provider = payload.get("provider")
        model_id = payload.get("modelId")
        return isinstance(provider, str) and bool(provider) and isinstance(model_id, str) and bool(
            model_id
        )

    def build(self) -> BuildOutcome:
        """Run one build attempt under the project lock."""
        with self.store.locked():
            self.state = self.store.ensure()
            return self._build(time.perf_counter())

    def _record_build(self, started: float, *, succeeded: bool) -> None:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self.state = self.state.with_build_telemetry(elapsed_ms, succeeded=succeeded)
        self.store.save(self.state)

    def _build(self, started: float) -> BuildOutcome:
        if not self.has_model_selection():
            self.audit.log(
                level="warn",
                kind="build.model_missing",
                message="Build blocked: model selection missing",
            )
            return BuildOutcome(
                status="blocked",
                message="Build requires explicit model selection. Run `shipgate model set`.",
                state=self.state.state,
                gate="model-selection",
            )

        check = self.lock_checker(self.project_root)
        if not check.valid:
            self._transition(WorkflowState.CHANGE_REQUEST, hash_mismatch=True)
            self.audit.log(
                level="warn",
                kind="build.hash_mismatch",
                message="Lock hash mismatch",
                data={"expected": check.expected, "actual": check.actual},
            )
            return BuildOutcome(
                status="change_request",
                message=f"Hash mismatch detected. expected={check.expected} actual={check.actual}",
                state=self.state.state,
                gate="lock-hash",
            )

        tasks = list(self.task_graph_provider(self.project_root))
        policy = self.active_policy()

        risk = assess_risk(tasks)
        self.audit.log(
            level="warn" if risk.blocked else "info",
            kind="build.risk_assessment",
            message="Task graph risk assessed",
            data=risk.to_dict(),
        )
        if risk.blocked:
            return self._gate_block("risk-gate", risk.blockers[0], started, risk=risk)

        strict = self.config.static_analysis_strict
        if strict is None:
            strict = policy is not None and policy.name == "strict"
        analysis = self.static_analysis(self.project_root, strict=strict)
        self.audit.log(
            level="warn" if analysis.blockers else "info",
            kind="build.static_analysis",
            message="Static analysis completed",
            data=analysis.to_dict(),
        )
        if analysis.blockers:
            return self._gate_block(
                "static-analysis",
                analysis.blockers[0],
                started,
                risk=risk,
                static_analysis=analysis,
            )

        self._transition_if_needed(WorkflowState.PLANNING)
        self._transition(WorkflowState.IMPLEMENTING)
        self._transition(WorkflowState.REVIEWING)

        review = evaluate_review_gate(tasks, force_failure=self.config.force_review_failure)
        if not review.ok and review.fallback is not None:
            self.audit.log(
                level="warn",
                kind="build.review_failed",
                message="Review gate failed",
                data={"reason": review.reason, "fallback": review.fallback.value},
            )
            self._transition(review.fallback, is_hardened=True)
            return BuildOutcome(
                status="blocked",
                message=f"Review failed: {review.reason}. Returned to {review.fallback.value}.",
                state=self.state.state,
                gate="review",
                risk=risk,
                static_analysis=analysis,
            )

        self._transition(WorkflowState.TESTING)
        ordered = order_tasks(tasks)
        self._save_session(
            current_task_id=ordered[0].task_id if ordered else None,
            checkpoint_id="testing",
        )

        summary = self._run_tasks(tasks, policy)
        if not summary.succeeded:
            self.audit.log(
                level="warn",
                kind="build.testing_failed",
                message="Testing failed, entering debugging",
                data={"failedTask": summary.failed_task_id},
            )
            self._save_session(
                last_failure_reason=f"Testing failed on {summary.failed_task_id}",
                checkpoint_id=summary.failed_task_id or "debugging",
                retry_budget=max(0, self.state.session.retry_budget - 1),
            )
            self._transition(WorkflowState.DEBUGGING, is_hardened=True)
            self.audit.log(
                level="info",
                kind="build.retest",
                message="Retrying tests after debugging",
                data={"failedTask": summary.failed_task_id},
            )
            self._transition(WorkflowState.TESTING, is_hardened=True)
            summary = self._run_tasks(tasks, policy)

        if not summary.succeeded:
            self._transition(WorkflowState.FAILED)
            self._record_build(started, succeeded=False)
            self.audit.log(
                level="error",
                kind="build.failed",
                message="Build failed after debugging retry",
                data={"failedTask": summary.failed_task_id},
            )
            return BuildOutcome(
                status="failed",
                message=f"Build failed at task {summary.failed_task_id} after debugging retry",
                state=self.state.state,
                completed_task_ids=summary.completed_task_ids,
                failed_task_id=summary.failed_task_id,
                risk=risk,
                static_analysis=analysis,
            )

        self.state = self.state.with_session(
            current_task_id=None,
            checkpoint_id="shipped",
            last_failure_reason=None,
            retry_budget=self.config.retry_budget,
        )
        self.state = self.state.with_build_telemetry(
            int((time.perf_counter() - started) * 1000), succeeded=True
        )
        self._transition(WorkflowState.SHIPPED)
        self.audit.log(
            level="info",
            kind="build.shipped",
            message="Build lifecycle completed",
            data={
                "completedTasks": summary.completed_task_ids,
                "riskScore": risk.score,
                "staticAnalysis": [
                    f"{report.tool}:{report.status}" for report in analysis.reports
                ],
            },
        )
        return BuildOutcome(
            status="shipped",
            message=f"Build succeeded. Completed tasks: {', '.join(summary.completed_task_ids)}",
            state=self.state.state,
            completed_task_ids=summary.completed_task_ids,
            risk=risk,
            static_analysis=analysis,
        )

    def _run_tasks(self, tasks: Sequence[Task], policy: PolicyPack | None) -> BuildSummary:
        orchestrator = TaskOrchestrator(
            self.executor,
            audit=self.audit,
            force_fail_task=self.config.force_fail_task,
        )
        return orchestrator.run(
            tasks,
            policy,
            self.state.sandbox,
            simulate=not self.config.execute_commands,
        )

    def _gate_block(
        self,
        gate: str,
        reason: str,
        started: float,
        *,
        risk: RiskAssessment,
        static_analysis: StaticAnalysisSummary | None = None,
    ) -> BuildOutcome:
        self._save_session(last_failure_reason=reason, checkpoint_id=gate)
        self._transition_if_needed(WorkflowState.PLANNING)
        self._record_build(started, succeeded=False)
        logger.warning("Build blocked by %s: %s", gate, reason)
        label = "Risk gate" if gate == "risk-gate" else "Static analysis"
        return BuildOutcome(
            status="blocked",
            message=f"{label} blocked build. {reason}",
            state=self.state.state,
            gate=gate,
            risk=risk,
            static_analysis=static_analysis,
        )
