"""Build orchestration and pipeline control exports."""

from shipgate.engine.build.controller import (
    BuildController,
    BuildOutcome,
    ReviewVerdict,
    default_task_graph_provider,
    evaluate_review_gate,
    file_task_graph_provider,
)
from shipgate.engine.build.orchestrator import (
    BuildSummary,
    TaskOrchestrator,
    order_tasks,
    run_task_graph,
)

__all__ = [
    "BuildController",
    "BuildOutcome",
    "BuildSummary",
    "ReviewVerdict",
    "TaskOrchestrator",
    "default_task_graph_provider",
    "evaluate_review_gate",
    "file_task_graph_provider",
    "order_tasks",
    "run_task_graph",
]
