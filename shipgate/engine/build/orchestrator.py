"""Sequential task-graph execution with quality-gate prechecks and retries."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from shipgate.engine.audit import AuditSink
from shipgate.engine.models import Task
from shipgate.engine.policy.packs import PolicyPack
from shipgate.engine.sandbox.executor import SandboxExecutor
from shipgate.engine.sandbox.settings import SandboxSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildSummary:
    """Outcome of one orchestrator run."""

    succeeded: bool
    completed_task_ids: list[str] = field(default_factory=list)
    failed_task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable summary."""
        return {
            "succeeded": self.succeeded,
            "completedTaskIds": list(self.completed_task_ids),
            "failedTaskId": self.failed_task_id,
        }


def order_tasks(tasks: Sequence[Task]) -> list[Task]:
    """Return tasks in a stable dependency order.

    Each pass appends every unscheduled task whose dependencies are scheduled
    or unknown. A pass without progress means a cycle: the remaining tasks
    are appended in their original order.
    """
    known_ids = {task.task_id for task in tasks}
    scheduled_ids: set[str] = set()
    pending = list(range(len(tasks)))
    ordered: list[Task] = []

    while pending:
        still_pending: list[int] = []
        for index in pending:
            task = tasks[index]
            ready = all(
                dep in scheduled_ids or dep not in known_ids for dep in task.depends_on
            )
            if ready:
                ordered.append(task)
                scheduled_ids.add(task.task_id)
            else:
                still_pending.append(index)
        if len(still_pending) == len(pending):
            logger.warning(
                "Dependency cycle among tasks %s; keeping declaration order",
                [tasks[index].task_id for index in still_pending],
            )
            ordered.extend(tasks[index] for index in still_pending)
            break
        pending = still_pending
    return ordered


class TaskOrchestrator:
    """Runs an ordered task list through the sandbox executor."""

    def __init__(
        self,
        executor: SandboxExecutor,
        *,
        audit: AuditSink | None = None,
        force_fail_task: str | None = None,
    ) -> None:
        self.executor = executor
        self.audit = audit
        self.force_fail_task = force_fail_task

    def run(
        self,
        tasks: Sequence[Task],
        policy: PolicyPack | None,
        sandbox: SandboxSettings,
        *,
        simulate: bool,
    ) -> BuildSummary:
        """Run tasks in dependency order, halting on the first failed task."""
        completed: list[str] = []
        for task in order_tasks(tasks):
            if not self._run_task(task, policy, sandbox, simulate=simulate):
                return BuildSummary(
                    succeeded=False,
                    completed_task_ids=completed,
                    failed_task_id=task.task_id,
                )
            completed.append(task.task_id)
        return BuildSummary(succeeded=True, completed_task_ids=completed)

    def _run_task(
        self,
        task: Task,
        policy: PolicyPack | None,
        sandbox: SandboxSettings,
        *,
        simulate: bool,
    ) -> bool:
        self._emit(
            "info",
            "build.task.start",
            "Executing task lifecycle",
            {
                "task": task.task_id,
                "retries": task.retries,
                "dependsOn": list(task.depends_on),
                "qualityGates": list(task.quality_gates),
                "riskControls": list(task.risk_controls),
            },
        )

        if "tests" in task.quality_gates and not task.tests:
            self._emit(
                "error",
                "build.task.failed",
                "Task missing required tests quality gate",
                {"task": task.task_id},
            )
            return False

        if "security" in task.quality_gates and not task.risk_controls:
            self._emit(
                "error",
                "build.task.failed",
                "Task missing security risk controls",
                {"task": task.task_id},
            )
            return False

        for attempt in range(task.retries + 1):
            if self.force_fail_task == task.task_id:
                self._emit(
                    "warn",
                    "build.task.retry",
                    "Forced task failure",
                    {"task": task.task_id, "attempt": attempt},
                )
                continue

            if self._run_commands(task, policy, sandbox, simulate=simulate, attempt=attempt):
                self._emit(
                    "info",
                    "build.task.complete",
                    "Task completed",
                    {"task": task.task_id, "blastRadius": task.blast_radius, "attempt": attempt},
                )
                return True

            if attempt < task.retries:
                self._emit(
                    "warn",
                    "build.task.retry",
                    "Retrying task after failed attempt",
                    {"task": task.task_id, "attempt": attempt},
                )

        self._emit(
            "error",
            "build.task.failed",
            "Task retries exhausted",
            {"task": task.task_id},
        )
        return False

    def _run_commands(
        self,
        task: Task,
        policy: PolicyPack | None,
        sandbox: SandboxSettings,
        *,
        simulate: bool,
        attempt: int,
    ) -> bool:
        """Run every test command of one attempt; the first failure aborts it."""
        for command in task.tests:
            execution = self.executor.execute(command, sandbox, policy, simulate=simulate)
            self._emit(
                "info",
                "build.task.command",
                "Task command processed",
                {
                    "task": task.task_id,
                    "command": command,
                    "mode": execution.mode,
                    "blocked": execution.blocked,
                    "exitCode": execution.exit_code,
                    "warnings": list(execution.warnings),
                    "attempt": attempt,
                },
            )
            if execution.blocked or not execution.ok:
                self._emit(
                    "error",
                    "build.task.failed",
                    "Task command failed",
                    {
                        "task": task.task_id,
                        "command": command,
                        "reason": execution.reason,
                        "stderr": execution.stderr[-2000:],
                        "attempt": attempt,
                    },
                )
                return False
        return True

    def _emit(self, level: str, kind: str, message: str, data: dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log(level=level, kind=kind, message=message, data=data)
        else:
            logger.log(
                logging.WARNING if level != "info" else logging.INFO,
                "%s: %s %s",
                kind,
                message,
                data.get("task"),
            )


def run_task_graph(
    tasks: Sequence[Task],
    executor: SandboxExecutor,
    policy: PolicyPack | None,
    sandbox: SandboxSettings,
    *,
    simulate: bool,
    force_fail_task: str | None = None,
    audit: AuditSink | None = None,
) -> BuildSummary:
    """Order and run a task list; convenience wrapper over TaskOrchestrator."""
    orchestrator = TaskOrchestrator(executor, audit=audit, force_fail_task=force_fail_task)
    return orchestrator.run(tasks, policy, sandbox, simulate=simulate)
