"""Operator command-line interface for the shipgate build engine."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from shipgate import __version__
from shipgate.engine.build.controller import BuildController, file_task_graph_provider
from shipgate.engine.config import BuildConfig, require_positive_int
from shipgate.engine.models import load_task_graph
from shipgate.engine.policy.packs import PolicyResolutionError, list_policy_packs
from shipgate.engine.risk.engine import assess_risk
from shipgate.engine.state.machine import StateTransitionError
from shipgate.logging_utils import configure_logging

app = typer.Typer(add_completion=False, no_args_is_help=True)
state_app = typer.Typer(no_args_is_help=True)
sandbox_app = typer.Typer(no_args_is_help=True)
policy_app = typer.Typer(no_args_is_help=True)
model_app = typer.Typer(no_args_is_help=True)
console = Console()

app.add_typer(state_app, name="state", help="Inspect persisted workflow state.")
app.add_typer(sandbox_app, name="sandbox", help="Configure command isolation.")
app.add_typer(policy_app, name="policy", help="List and apply policy packs.")
app.add_typer(model_app, name="model", help="Record the explicit execution target.")

ProjectDirOption = Annotated[
    Path,
    typer.Option("--project-dir", help="Project root holding .shipgate/ and docs/."),
]


def _version_callback(value: bool) -> None:
    """Print package version and exit when requested."""
    if value:
        console.print(__version__)
        raise typer.Exit()


def _cli_error(code: str, message: str, hint: str | None = None) -> typer.BadParameter:
    """Create a standardized CLI error with error code and optional remediation hint."""
    if hint is None:
        return typer.BadParameter(f"[{code}] {message}")
    return typer.BadParameter(f"[{code}] {message} Hint: {hint}")


def _controller(
    project_dir: Path, config: BuildConfig | None = None, **kwargs: Any
) -> BuildController:
    """Create a controller, mapping invalid persisted state to a CLI error."""
    try:
        return BuildController(project_dir, config=config, **kwargs)
    except ValueError as exc:
        raise _cli_error("SHIPGATE-STATE-INVALID", str(exc)) from exc


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show shipgate version and exit.",
            is_eager=True,
            callback=_version_callback,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug logging."),
    ] = False,
    log_file: Annotated[
        Path,
        typer.Option("--log-file", help="Write logs to this file (default: ./shipgate.log)."),
    ] = Path("shipgate.log"),
    console_warnings: Annotated[
        bool,
        typer.Option(
            "--console-warnings/--no-console-warnings",
            help="Also print warnings and errors to stderr as JSON lines.",
        ),
    ] = True,
) -> None:
    """Gated build workflow engine: state machine, policy packs, sandboxed execution."""
    configure_logging(
        log_file=log_file,
        verbose=verbose,
        console_level=logging.WARNING if console_warnings else None,
    )


@state_app.command("show")
def state_show(project_dir: ProjectDirOption = Path(".")) -> None:
    """Show the persisted workflow state."""
    current = _controller(project_dir).state
    table = Table(title="Project State")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("project_id", current.project_id)
    table.add_row("state", current.state.value)
    table.add_row("sandbox", current.sandbox.status())
    table.add_row("policy", f"{current.policy.active_pack} {current.policy.hash[:12]}".strip())
    last_active = current.session.last_active_state
    table.add_row("last_active_state", last_active.value if last_active else "-")
    table.add_row("checkpoint", current.session.checkpoint_id or "-")
    table.add_row("last_failure", current.session.last_failure_reason or "-")
    table.add_row("retry_budget", str(current.session.retry_budget))
    telemetry = current.telemetry
    table.add_row(
        "builds",
        f"{telemetry.builds} ({telemetry.build_failures} failed, last {telemetry.last_build_ms}ms)",
    )
    console.print(table)


@app.command()
def pause(project_dir: ProjectDirOption = Path(".")) -> None:
    """Pause the workflow, remembering the active phase."""
    try:
        message = _controller(project_dir).pause()
    except StateTransitionError as exc:
        raise _cli_error("SHIPGATE-TRANSITION", str(exc)) from exc
    console.print(message)


@app.command()
def resume(
    state: Annotated[
        str | None,
        typer.Argument(help="Workflow state to resume into (default: the paused phase)."),
    ] = None,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Resume a paused workflow."""
    try:
        message = _controller(project_dir).resume(state)
    except StateTransitionError as exc:
        raise _cli_error("SHIPGATE-TRANSITION", str(exc)) from exc
    except ValueError as exc:
        raise _cli_error(
            "SHIPGATE-STATE-UNKNOWN",
            str(exc),
            "Use a workflow state name such as PLANNING or LOCKED.",
        ) from exc
    console.print(message)


@sandbox_app.command("set")
def sandbox_set(
    enabled: Annotated[
        bool,
        typer.Option("--enabled/--disabled", help="Turn container isolation on or off."),
    ] = True,
    provider: Annotated[
        str,
        typer.Option(help="Container tool: docker, podman, or none."),
    ] = "docker",
    profile: Annotated[
        str,
        typer.Option(help="Isolation profile: strict, balanced, or off."),
    ] = "balanced",
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Persist sandbox settings for later builds."""
    try:
        settings = _controller(project_dir).set_sandbox(
            enabled=enabled, provider=provider, profile=profile
        )
    except ValueError as exc:
        raise _cli_error("SHIPGATE-SANDBOX-INVALID", str(exc)) from exc
    console.print(f"Sandbox updated: {settings.status()}")


@sandbox_app.command("status")
def sandbox_status(project_dir: ProjectDirOption = Path(".")) -> None:
    """Show the persisted sandbox settings."""
    console.print(_controller(project_dir).sandbox_status())


@policy_app.command("list")
def policy_list(project_dir: ProjectDirOption = Path(".")) -> None:
    """List built-in and project policy packs, fully resolved."""
    try:
        packs = list_policy_packs(project_dir.expanduser().resolve())
    except (PolicyResolutionError, ValueError) as exc:
        raise _cli_error("SHIPGATE-POLICY-INVALID", str(exc)) from exc
    table = Table(title="Policy Packs")
    table.add_column("Name")
    table.add_column("Extends")
    table.add_column("Diff budget")
    table.add_column("Max high-risk")
    table.add_column("Description")
    for pack in packs:
        table.add_row(
            pack.name,
            pack.extends or "-",
            f"{pack.diff_budget.max_files} files / {pack.diff_budget.max_lines} lines",
            str(pack.risk_rules.max_high_risk_tasks),
            pack.description,
        )
    console.print(table)


@policy_app.command("apply")
def policy_apply(
    name: Annotated[str, typer.Argument(help="Policy pack name.")],
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Resolve and persist a policy pack as the active policy."""
    try:
        active = _controller(project_dir).apply_policy(name)
    except (PolicyResolutionError, ValueError) as exc:
        raise _cli_error(
            "SHIPGATE-POLICY-UNKNOWN",
            str(exc),
            "Use `shipgate policy list` to see available packs.",
        ) from exc
    console.print(f"Applied policy pack {active.pack.name} (hash={active.hash[:12]})")


@model_app.command("set")
def model_set(
    provider: Annotated[str, typer.Argument(help="Model provider name.")],
    model_id: Annotated[str, typer.Argument(help="Model identifier.")],
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Record the explicit model selection required before building."""
    try:
        selection = _controller(project_dir).set_model_selection(provider, model_id)
    except ValueError as exc:
        raise _cli_error("SHIPGATE-MODEL-INVALID", str(exc)) from exc
    console.print(f"Model selected: {selection['provider']}/{selection['modelId']}")


@app.command()
def risk(
    task_graph: Annotated[Path, typer.Argument(help="Task graph JSON or YAML file.")],
) -> None:
    """Score a task graph with the risk engine without running anything."""
    try:
        assessment = assess_risk(load_task_graph(task_graph).flatten())
    except (OSError, ValueError) as exc:
        raise _cli_error("SHIPGATE-TASK-GRAPH", str(exc)) from exc
    table = Table(title=f"Risk Assessment (score={assessment.score})")
    table.add_column("Severity")
    table.add_column("Finding")
    for blocker in assessment.blockers:
        table.add_row("blocker", blocker)
    for warning in assessment.warnings:
        table.add_row("warning", warning)
    console.print(table)
    if assessment.blocked:
        raise typer.Exit(code=1)


@app.command()
def build(
    execute: Annotated[
        bool,
        typer.Option("--execute", help="Run task commands instead of simulating them."),
    ] = False,
    task_graph: Annotated[
        Path | None,
        typer.Option(help="Task graph file (default: docs/task-graph.json or .yaml)."),
    ] = None,
    static_analysis: Annotated[
        bool,
        typer.Option("--static-analysis", help="Run lint and security scanners before building."),
    ] = False,
    timeout_seconds: Annotated[
        int,
        typer.Option(help="Per-command timeout in seconds."),
    ] = 120,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Run one gated build attempt."""
    try:
        config = BuildConfig(
            command_timeout_seconds=require_positive_int(timeout_seconds, "timeout_seconds"),
            execute_commands=execute,
            run_static_analysis=static_analysis,
        )
    except ValueError as exc:
        raise _cli_error("SHIPGATE-CONFIG-INVALID", str(exc)) from exc
    provider = file_task_graph_provider(task_graph) if task_graph is not None else None
    controller = _controller(project_dir, config, task_graph_provider=provider)
    try:
        outcome = controller.build()
    except StateTransitionError as exc:
        raise _cli_error(
            "SHIPGATE-TRANSITION",
            str(exc),
            "Check `shipgate state show`; builds start from HARDENED or later phases.",
        ) from exc
    except (PolicyResolutionError, OSError, ValueError) as exc:
        raise _cli_error("SHIPGATE-BUILD-INVALID", str(exc)) from exc

    table = Table(title="Build Outcome")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("status", outcome.status)
    table.add_row("state", outcome.state.value)
    table.add_row("gate", outcome.gate or "-")
    table.add_row("completed", ", ".join(outcome.completed_task_ids) or "-")
    table.add_row("failed_task", outcome.failed_task_id or "-")
    if outcome.risk is not None:
        table.add_row("risk_score", str(outcome.risk.score))
    console.print(table)
    console.print(outcome.message)
    if not outcome.ok:
        raise typer.Exit(code=1)
