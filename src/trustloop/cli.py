"""CLI entry point for trustloop."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from trustloop import __version__
from trustloop.config import Settings, get_settings
from trustloop.errors import RecordNotFoundError, TrustLoopError
from trustloop.log import configure_logging
from trustloop.models import (
    AgentRecord,
    AutonomyLevel,
    ConfidenceResult,
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    GateAction,
    GateResponse,
    PlanForConfidence,
    ToolUse,
    TrustScore,
    WorkflowRun,
    WorkflowTemplate,
    new_id,
)
from trustloop.services import Services, build_services
from trustloop.storage import SqliteStore
from trustloop.trust.overrides import (
    clear_autonomy_override,
    collect_overrides,
    pause_agent,
    resume_agent,
    set_autonomy_override,
)
from trustloop.trust.patterns import describe_top_patterns, generate_pattern_key

console = Console()

T = TypeVar("T")

HEALTH_COLORS = {"healthy": "green", "degraded": "yellow", "failing": "red"}
LEVEL_COLORS = {"high": "green", "medium": "yellow", "low": "red"}
RUN_COLORS = {"running": "cyan", "completed": "green", "failed": "red", "cancelled": "dim"}

account_option = click.option(
    "--account", "account_id", default="default", show_default=True, help="Account id"
)


def _run(ctx: click.Context, action: Callable[[Services], Awaitable[T]]) -> T:
    """Open the SQLite store, run one async action against it, close it."""
    settings: Settings = ctx.obj

    async def runner() -> T:
        settings.data_dir.expanduser().mkdir(parents=True, exist_ok=True)
        async with SqliteStore(settings.db_path) as store:
            return await action(build_services(store, settings))

    try:
        return asyncio.run(runner())
    except TrustLoopError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc


def _load_json(value: str) -> Any:
    """Parse inline JSON, or read it from a file when given an existing path."""
    path = Path(value)
    text = path.read_text() if path.is_file() else value
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}") from exc


def _parse_tool(spec: str) -> ToolUse:
    name, _, result = spec.partition(":")
    if result and result not in ("ok", "fail"):
        raise click.BadParameter(f"tool result must be 'ok' or 'fail', got {result!r}")
    return ToolUse(name=name, success=None if not result else result == "ok")


@click.group()
@click.version_option(version=__version__, prog_name="trustloop")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the trustloop database",
)
@click.option("--log-level", default=None, help="Logging level (default from settings)")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, log_level: str | None) -> None:
    """trustloop: agent trust scoring, autonomy annealing and workflow runs."""
    settings = get_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir})
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the data directory and database."""

    async def action(services: Services) -> None:
        return None

    _run(ctx, action)
    settings: Settings = ctx.obj
    console.print(f"[green]trustloop initialized at {settings.data_dir}[/green]")
    console.print(f"  Database: {settings.db_path}")


# ═══════════════════════════════════════════════════════════════════════════
# Agents & trust
# ═══════════════════════════════════════════════════════════════════════════


@main.command("add-agent")
@click.argument("name")
@account_option
@click.option("--id", "agent_id", default=None, help="Agent id (generated if omitted)")
@click.option("--type", "agent_type", default="general", show_default=True)
@click.option("--max-failures", default=5, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def add_agent(
    ctx: click.Context, name: str, account_id: str, agent_id: str | None, agent_type: str,
    max_failures: int,
) -> None:
    """Register an agent."""
    agent = AgentRecord(
        id=agent_id or new_id(),
        account_id=account_id,
        name=name,
        agent_type=agent_type,
        max_consecutive_failures=max_failures,
    )
    created = _run(ctx, lambda s: s.store.create_agent(agent))
    console.print(f"[green]Agent {created.name} registered:[/green] {created.id}")


@main.command()
@account_option
@click.pass_context
def agents(ctx: click.Context, account_id: str) -> None:
    """List agents with their health and autonomy."""
    rows = _run(ctx, lambda s: s.store.list_agents(account_id))
    if not rows:
        console.print("[dim]No agents registered.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Health")
    table.add_column("Autonomy", style="green")
    table.add_column("Streak")
    table.add_column("Paused")

    for agent in rows:
        color = HEALTH_COLORS.get(agent.health_status, "dim")
        autonomy = str(agent.autonomy_level)
        if agent.autonomy_override:
            autonomy += " (pinned)"
        streak = (
            f"-{agent.consecutive_failures}"
            if agent.consecutive_failures
            else f"+{agent.consecutive_successes}"
        )
        table.add_row(
            agent.id,
            agent.name,
            agent.agent_type,
            f"[{color}]{agent.health_status}[/{color}]",
            autonomy,
            streak,
            "yes" if agent.paused_at else "",
        )
    console.print(table)


@main.command()
@click.argument("agent_id")
@account_option
@click.pass_context
def trust(ctx: click.Context, agent_id: str, account_id: str) -> None:
    """Show an agent's trust score."""
    score = _run(ctx, lambda s: s.trust.compute_trust_score(agent_id, account_id))
    _print_trust(score)


@main.command()
@click.argument("agent_id")
@click.argument("level", required=False, type=click.Choice([a.value for a in AutonomyLevel]))
@click.option("--clear", is_flag=True, help="Remove the override")
@click.option("--by", "changed_by", default="cli", show_default=True)
@click.pass_context
def override(
    ctx: click.Context, agent_id: str, level: str | None, clear: bool, changed_by: str
) -> None:
    """Pin an agent's autonomy level, or clear the pin."""
    if clear:
        _run(ctx, lambda s: clear_autonomy_override(s.store, agent_id))
        console.print(f"[green]Override cleared for {agent_id}[/green]")
        return
    if level is None:
        raise click.UsageError("give a LEVEL or --clear")
    _run(ctx, lambda s: set_autonomy_override(s.store, agent_id, level, changed_by))
    console.print(f"[green]{agent_id} pinned to {level}[/green]")


@main.command()
@click.argument("agent_id")
@click.option("--reason", default=None)
@click.pass_context
def pause(ctx: click.Context, agent_id: str, reason: str | None) -> None:
    """Soft-pause an agent."""
    _run(ctx, lambda s: pause_agent(s.store, agent_id, reason))
    console.print(f"[yellow]{agent_id} paused[/yellow]")


@main.command()
@click.argument("agent_id")
@click.pass_context
def resume(ctx: click.Context, agent_id: str) -> None:
    """Resume a paused agent."""
    _run(ctx, lambda s: resume_agent(s.store, agent_id))
    console.print(f"[green]{agent_id} resumed[/green]")


@main.command("record-outcome")
@click.argument("agent_id")
@click.option("--success/--failure", default=True, help="Execution outcome")
@click.option("--tool", "tools", multiple=True, help="Tool used, as NAME or NAME:ok / NAME:fail")
@click.option("--task-id", default="", help="Task the execution belongs to")
@click.option("--duration-ms", default=0, type=click.IntRange(min=0))
@click.option("--input-tokens", default=0, type=click.IntRange(min=0))
@click.option("--output-tokens", default=0, type=click.IntRange(min=0))
@click.option("--pattern-key", default=None)
@click.pass_context
def record_outcome(
    ctx: click.Context,
    agent_id: str,
    success: bool,
    tools: tuple[str, ...],
    task_id: str,
    duration_ms: int,
    input_tokens: int,
    output_tokens: int,
    pattern_key: str | None,
) -> None:
    """Record an execution and run the annealing loop on it."""
    tool_uses = [_parse_tool(t) for t in tools]

    async def action(services: Services) -> AgentRecord:
        agent = await services.store.get_agent(agent_id)
        if agent is None:
            raise RecordNotFoundError("agent", agent_id)
        status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
        execution = await services.store.record_execution(
            ExecutionRecord(
                agent_id=agent_id,
                status=status,
                account_id=agent.account_id,
                task_id=task_id,
                tools_used=tool_uses,
            )
        )
        await services.annealing.process_execution_outcome(
            ExecutionOutcome(
                execution_id=execution.id,
                task_id=task_id,
                agent_id=agent_id,
                account_id=agent.account_id,
                success=success,
                tools_used=tool_uses,
                duration_ms=duration_ms,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                pattern_key=pattern_key,
            )
        )
        updated = await services.store.get_agent(agent_id)
        return updated or agent

    agent = _run(ctx, action)
    color = HEALTH_COLORS.get(agent.health_status, "dim")
    console.print(
        f"Recorded {'success' if success else 'failure'} for {agent_id}: "
        f"[{color}]{agent.health_status}[/{color}] | autonomy {agent.autonomy_level} | "
        f"failures {agent.consecutive_failures} | successes {agent.consecutive_successes}"
    )


@main.command()
@account_option
@click.pass_context
def patterns(ctx: click.Context, account_id: str) -> None:
    """Show learned plan patterns."""

    async def action(services: Services) -> tuple[list[Any], str]:
        rows = await services.store.list_patterns(account_id)
        return rows, await describe_top_patterns(services.store, account_id)

    rows, summary = _run(ctx, action)
    if not rows:
        console.print("[dim]No plan patterns learned yet.[/dim]")
        return

    table = Table(title="Plan Patterns")
    table.add_column("Pattern", style="cyan")
    table.add_column("Runs")
    table.add_column("Success", style="bold")
    table.add_column("Avg ms")
    table.add_column("Avg ¢")
    for p in sorted(rows, key=lambda p: p.success_rate, reverse=True):
        table.add_row(
            p.pattern_key,
            str(p.total_executions),
            f"{p.success_rate:.0%}",
            str(p.avg_duration_ms),
            str(p.avg_cost_cents),
        )
    console.print(table)
    if summary:
        console.print(f"\n{summary}")


@main.command()
@click.argument("plan")
@account_option
@click.pass_context
def confidence(ctx: click.Context, plan: str, account_id: str) -> None:
    """Score a plan given as JSON (inline or a file path)."""
    try:
        candidate = PlanForConfidence.from_dict(_load_json(plan))
    except (AttributeError, TypeError, ValueError) as exc:
        raise click.BadParameter(f"invalid plan: {exc}", param_hint="PLAN") from exc
    if not candidate.steps:
        raise click.BadParameter("plan has no steps", param_hint="PLAN")
    if not candidate.pattern_key:
        candidate.pattern_key = generate_pattern_key(candidate.steps)

    async def action(services: Services) -> ConfidenceResult:
        overrides = await collect_overrides(services.store, [s.agent_id for s in candidate.steps])
        return await services.trust.compute_confidence(candidate, account_id, overrides)

    _print_confidence(_run(ctx, action))


# ═══════════════════════════════════════════════════════════════════════════
# Workflows
# ═══════════════════════════════════════════════════════════════════════════


@main.group()
def template() -> None:
    """Manage workflow templates."""


@template.command("add")
@click.argument("definition")
@account_option
@click.pass_context
def template_add(ctx: click.Context, definition: str, account_id: str) -> None:
    """Save a template from JSON (inline or a file path)."""
    data = _load_json(definition)
    data.setdefault("account_id", account_id)
    try:
        tmpl = WorkflowTemplate.from_dict(data)
    except (AttributeError, TypeError, ValueError) as exc:
        raise click.BadParameter(f"invalid template: {exc}", param_hint="DEFINITION") from exc
    saved = _run(ctx, lambda s: s.store.save_template(tmpl))
    console.print(f"[green]Template {saved.name} saved:[/green] {saved.id} ({len(saved.steps)} steps)")


@template.command("list")
@account_option
@click.pass_context
def template_list(ctx: click.Context, account_id: str) -> None:
    """List workflow templates."""
    rows = _run(ctx, lambda s: s.store.list_templates(account_id))
    if not rows:
        console.print("[dim]No workflow templates.[/dim]")
        return
    table = Table(title="Workflow Templates")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Steps")
    for t in rows:
        table.add_row(t.id, t.name, " -> ".join(f"{s.title} ({s.type})" for s in t.steps))
    console.print(table)


@main.group()
def workflow() -> None:
    """Start and drive workflow runs."""


@workflow.command("start")
@click.argument("template_id")
@account_option
@click.option("--user", "user_id", default="cli", show_default=True)
@click.pass_context
def workflow_start(ctx: click.Context, template_id: str, account_id: str, user_id: str) -> None:
    """Start a run from a template."""
    run = _run(ctx, lambda s: s.workflows.start_workflow_run(template_id, account_id, user_id))
    if run is None:
        console.print(f"[red]Could not start a run from template {template_id}[/red]")
        raise SystemExit(1)
    _print_run(run)


@workflow.command("show")
@click.argument("run_id")
@click.pass_context
def workflow_show(ctx: click.Context, run_id: str) -> None:
    """Show a run and its step results."""
    _print_run(_run(ctx, lambda s: _require_run(s, run_id)))


@workflow.command("advance")
@click.argument("run_id")
@click.argument("step_id")
@click.option("--output", default=None, help="Step output as JSON")
@click.pass_context
def workflow_advance(ctx: click.Context, run_id: str, step_id: str, output: str | None) -> None:
    """Mark a step completed and advance the run."""
    step_output = _load_json(output) if output else None

    async def action(services: Services) -> WorkflowRun:
        await _require_run(services, run_id)
        await services.workflows.advance_workflow(run_id, step_id, step_output)
        return await _require_run(services, run_id)

    _print_run(_run(ctx, action))


@workflow.command("gate")
@click.argument("run_id")
@click.argument("step_id")
@click.option(
    "--action",
    "gate_action",
    type=click.Choice([a.value for a in GateAction]),
    default=GateAction.APPROVE.value,
    show_default=True,
)
@click.option("--by", "responded_by", default="cli", show_default=True)
@click.option("--option", "options", multiple=True, help="Selected option (repeatable)")
@click.option("--input-text", default=None)
@click.pass_context
def workflow_gate(
    ctx: click.Context,
    run_id: str,
    step_id: str,
    gate_action: str,
    responded_by: str,
    options: tuple[str, ...],
    input_text: str | None,
) -> None:
    """Answer a human gate."""
    response = GateResponse(
        action=GateAction(gate_action),
        responded_by=responded_by,
        selected_options=list(options) or None,
        input_text=input_text,
    )

    async def action(services: Services) -> WorkflowRun:
        run = await _require_run(services, run_id)
        task_id = run.step_results.get(step_id, {}).get("task_id")
        if not task_id:
            raise RecordNotFoundError("gate task for step", step_id)
        await services.workflows.handle_gate_response(run_id, step_id, task_id, response)
        return await _require_run(services, run_id)

    _print_run(_run(ctx, action))


@workflow.command("fail")
@click.argument("run_id")
@click.argument("step_id")
@click.argument("error")
@click.pass_context
def workflow_fail(ctx: click.Context, run_id: str, step_id: str, error: str) -> None:
    """Fail a step, and with it the run."""

    async def action(services: Services) -> WorkflowRun:
        await _require_run(services, run_id)
        await services.workflows.handle_step_failure(run_id, step_id, error)
        return await _require_run(services, run_id)

    _print_run(_run(ctx, action))


@workflow.command("cancel")
@click.argument("run_id")
@click.pass_context
def workflow_cancel(ctx: click.Context, run_id: str) -> None:
    """Cancel a running run."""

    async def action(services: Services) -> WorkflowRun:
        await _require_run(services, run_id)
        await services.workflows.cancel_run(run_id)
        return await _require_run(services, run_id)

    _print_run(_run(ctx, action))


async def _require_run(services: Services, run_id: str) -> WorkflowRun:
    run = await services.store.get_run(run_id)
    if run is None:
        raise RecordNotFoundError("workflow run", run_id)
    return run


# ═══════════════════════════════════════════════════════════════════════════
# Output
# ═══════════════════════════════════════════════════════════════════════════


def _print_trust(score: TrustScore) -> None:
    color = HEALTH_COLORS.get(score.health_status, "dim")
    console.print(f"[bold]Agent:[/bold] {score.agent_id}")
    console.print(f"[bold]Trust:[/bold] {score.overall_score:.3f}")
    console.print(
        f"[bold]Success:[/bold] {score.success_rate:.0%} all-time | "
        f"{score.recent_success_rate:.0%} recent | {score.total_executions} executions"
    )
    console.print(
        f"[bold]Streaks:[/bold] {score.consecutive_failures} failures | "
        f"{score.consecutive_successes} successes"
    )
    console.print(f"[bold]Health:[/bold] [{color}]{score.health_status}[/{color}]")
    console.print(f"[bold]Recommended autonomy:[/bold] {score.recommended_autonomy}")
    if score.tool_familiarity:
        tools = ", ".join(f"{k} {v:.0%}" for k, v in sorted(score.tool_familiarity.items()))
        console.print(f"[bold]Tools:[/bold] {tools}")


def _print_confidence(result: ConfidenceResult) -> None:
    color = LEVEL_COLORS.get(result.level, "dim")
    console.print(f"[bold]Score:[/bold] {result.score:.3f}")
    console.print(f"[bold]Level:[/bold] [{color}]{result.level}[/{color}]")
    console.print(f"[bold]Mode:[/bold] {result.execution_mode}")
    f = result.factors
    console.print(
        f"[bold]Factors:[/bold] trust {f.agent_trust:.2f} | complexity {f.plan_complexity:.2f} | "
        f"tools {f.tool_familiarity:.2f} | pattern {f.pattern_match:.2f} | cost {f.cost_risk:.2f}"
    )
    console.print(f"[bold]Reasoning:[/bold] {result.reasoning}")


def _print_run(run: WorkflowRun) -> None:
    color = RUN_COLORS.get(run.status, "dim")
    console.print(f"[bold]Run:[/bold] {run.id}")
    console.print(f"[bold]Status:[/bold] [{color}]{run.status}[/{color}]")
    console.print(
        f"[bold]Step:[/bold] {min(run.current_step_index + 1, len(run.steps_snapshot))}"
        f"/{len(run.steps_snapshot)}"
    )

    table = Table(title="Steps")
    table.add_column("#")
    table.add_column("Step", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Task / Document")
    for index, step in enumerate(run.steps_snapshot):
        result = run.step_results.get(step.id, {})
        table.add_row(
            str(index + 1),
            step.title,
            str(step.type),
            str(result.get("status", "pending")),
            str(result.get("task_id") or result.get("document_id") or ""),
        )
    console.print(table)
