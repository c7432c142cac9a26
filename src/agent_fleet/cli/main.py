"""Main CLI for agent fleet."""

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..cache.store import FileContextStore
from ..core.config import FleetConfig, load_config, load_workflow
from ..core.context import OrchestrationContext
from ..core.execution_log import ChainOfThoughtEntry, ExecutionLog
from ..core.runtime import Runtime, build_runtime
from ..core.scheduler import DependencyScheduler
from ..core.task import TaskStatus
from ..errors import CycleDetected, FleetError, UnknownDependency
from ..integrations.tracker import describe
from ..utils.rich_logging import setup_rich_logging


console = Console()

STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.READY: "cyan",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.BLOCKED: "magenta",
    TaskStatus.CANCELLED: "dim red",
}


@click.group()
@click.option("--workspace", "-w", default=".", help="Workspace directory")
@click.option("--config", "-c", "config_path", default=None, help="Config file (default: <workspace>/config/fleet.yaml)")
@click.pass_context
def cli(ctx, workspace, config_path):
    """Agent Fleet - dependency-aware orchestration of persona-bound agents."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = Path(workspace)
    ctx.obj["config_path"] = Path(config_path) if config_path else Path(workspace) / "config" / "fleet.yaml"


def _config(ctx) -> FleetConfig:
    if "config" not in ctx.obj:
        config = load_config(ctx.obj["config_path"])
        # The cached instance is shared; never mutate it
        config = config.model_copy(update={"workspace": ctx.obj["workspace"]})
        setup_rich_logging(
            config.workspace,
            log_level=config.logging.level,
            use_colors=config.logging.use_colors,
            use_file=config.logging.use_file,
            use_json=config.logging.use_json,
            log_dir=config.logs_path,
        )
        ctx.obj["config"] = config
    return ctx.obj["config"]


def _runtime(ctx, with_sync: bool = False) -> Runtime:
    return build_runtime(_config(ctx), with_sync=with_sync)


def _scratch_scheduler() -> DependencyScheduler:
    """In-memory scheduler for checking a workflow without persisting it."""
    return DependencyScheduler(OrchestrationContext())


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/]")
    raise SystemExit(1)


@cli.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(workflow):
    """Check a workflow file for unknown dependencies and cycles."""
    try:
        definition = load_workflow(workflow)
        _scratch_scheduler().register_tasks(definition.to_tasks())
    except UnknownDependency as e:
        _fail(f"unknown dependency: {e}")
    except CycleDetected as e:
        _fail(f"dependency cycle: {' -> '.join(e.cycle)}")
    except (FleetError, ValueError) as e:
        _fail(str(e))
    console.print(
        f"[green]✓ Workflow '{definition.id}' is valid[/] "
        f"({len(definition.tasks)} tasks, {len(definition.sprints)} sprints)"
    )


@cli.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan(workflow):
    """Show the execution layers of a workflow."""
    try:
        definition = load_workflow(workflow)
        scheduler = _scratch_scheduler()
        scheduler.register_tasks(definition.to_tasks())
    except (FleetError, ValueError) as e:
        _fail(str(e))

    table = Table(title=f"Execution plan: {definition.id}")
    table.add_column("Layer", justify="right")
    table.add_column("Task")
    table.add_column("Persona")
    table.add_column("Priority")
    table.add_column("Depends on")
    for number, layer in enumerate(scheduler.execution_order(), start=1):
        for task_id in layer:
            task = scheduler.ctx.tasks[task_id]
            table.add_row(
                str(number),
                f"{task.id}: {task.title}",
                task.persona.value,
                task.priority.value,
                ", ".join(task.depends_on) or "-",
            )
    console.print(table)


@cli.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def submit(ctx, workflow):
    """Register a workflow's tasks in the workspace."""
    runtime = _runtime(ctx)
    try:
        registered = runtime.load_workflow(load_workflow(workflow))
    except (FleetError, ValueError) as e:
        _fail(str(e))
    ready = [t.id for t in registered if t.status == TaskStatus.READY]
    console.print(f"[green]✓ Registered {len(registered)} task(s)[/] ({len(ready)} ready)")


@cli.command()
@click.pass_context
def status(ctx):
    """Show persisted tasks and fleet health."""
    runtime = _runtime(ctx)
    console.print("[bold]Agent Fleet Status[/]")

    table = Table()
    table.add_column("Task")
    table.add_column("Workflow")
    table.add_column("Persona")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Agent")
    table.add_column("Issue")
    table.add_column("Blockers")
    tasks = sorted(runtime.ctx.tasks.values(), key=lambda t: t.sequence)
    for task in tasks:
        if task.archived:
            continue
        state = TaskStatus(task.status)
        style = STATUS_STYLES[state]
        table.add_row(
            task.id,
            task.workflow_id,
            task.persona.value,
            task.priority.value,
            f"[{style}]{state.value}[/]",
            task.assigned_agent or "-",
            task.issue_ref or "-",
            "; ".join(task.blockers) or "-",
        )
    console.print(table)

    health = runtime.health.snapshot()
    health_table = Table(title="Health")
    health_table.add_column("Metric")
    health_table.add_column("Value", justify="right")
    health_table.add_row("Queue usage", f"{health.queue_usage:.0f}%")
    health_table.add_row("Ready backlog", str(health.ready_backlog))
    health_table.add_row("Agents (busy / total)", f"{health.busy_agents} / {health.total_agents}")
    health_table.add_row("Active workflows", str(health.active_workflows))
    health_table.add_row("Completed today", str(health.completed_today))
    console.print(health_table)


@cli.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def sprints(ctx, workflow):
    """Report progress of a workflow's sprints."""
    runtime = _runtime(ctx)
    definition = load_workflow(workflow)
    table = Table(title=f"Sprints: {definition.id}")
    table.add_column("Sprint")
    table.add_column("Dates")
    table.add_column("Tasks", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Progress", justify="right")
    for sprint in definition.to_sprints():
        report = sprint.report(runtime.ctx.tasks.values())
        table.add_row(
            f"{sprint.id}: {sprint.name}",
            f"{sprint.start_date} .. {sprint.end_date}",
            str(report["tasks"]),
            str(report["by_status"][TaskStatus.COMPLETED.value]),
            f"{report['completion']:.0%}",
        )
    console.print(table)


@cli.command()
@click.pass_context
def sync(ctx):
    """Reconcile persisted tasks with the configured issue tracker."""
    runtime = _runtime(ctx, with_sync=True)
    synchronizer = runtime.synchronizer
    console.print(f"[bold]Reconciling with {describe(synchronizer.tracker)}...[/]")

    async def _reconcile():
        counts = await synchronizer.reconcile()
        await synchronizer.drain()
        return counts

    counts = asyncio.run(_reconcile())
    console.print(
        f"checked {counts['checked']}, updated {counts['updated']}, "
        f"created {counts['created']}, failed {counts['failed']}"
    )
    if synchronizer.degraded:
        console.print("[yellow]Issue tracker unreachable; sync is degraded[/]")
        raise SystemExit(2)
    console.print("[green]✓ In sync[/]")


@cli.command()
@click.argument("task_id")
@click.pass_context
def requeue(ctx, task_id):
    """Re-queue a blocked, failed or cancelled task and its dependents."""
    runtime = _runtime(ctx)
    try:
        requeued = runtime.scheduler.requeue(task_id)
    except FleetError as e:
        _fail(str(e))
    console.print(f"[green]✓ Re-queued {', '.join(requeued)}[/]")


@cli.command()
@click.argument("task_id")
@click.option("--reason", "-r", default=None, help="Recorded on the task")
@click.pass_context
def cancel(ctx, task_id, reason):
    """Cancel a pending or ready task (dependents become blocked)."""
    runtime = _runtime(ctx)
    try:
        immediate = runtime.scheduler.cancel(task_id, reason)
    except FleetError as e:
        _fail(str(e))
    if immediate:
        console.print(f"[green]✓ Cancelled {task_id}[/]")
    else:
        console.print(f"[yellow]Cancellation of {task_id} requested; the running agent will stop[/]")


@cli.command()
@click.argument("task_id")
@click.pass_context
def archive(ctx, task_id):
    """Archive a finished task."""
    runtime = _runtime(ctx)
    try:
        runtime.scheduler.archive(task_id)
    except FleetError as e:
        _fail(str(e))
    console.print(f"[green]✓ Archived {task_id}[/]")


@cli.command()
@click.argument("task_id")
@click.option("--thoughts/--no-thoughts", default=True, help="Include agent reasoning")
@click.pass_context
def logs(ctx, task_id, thoughts):
    """Print a task's execution log."""
    execution_log = ExecutionLog(_config(ctx).logs_path)
    entries = execution_log.timeline(task_id) if thoughts else execution_log.entries(task_id)
    shown = 0
    for entry in entries:
        stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        if isinstance(entry, ChainOfThoughtEntry):
            console.print(f"[dim]{stamp} thinking:[/] {entry.content}")
        else:
            source = f" ({entry.source})" if entry.source else ""
            console.print(f"[dim]{stamp}[/] {entry.level.value.upper():5s}{source} {entry.message}")
        shown += 1
    if not shown:
        console.print(f"[dim]No log entries for {task_id}[/]")


@cli.group()
def cache():
    """Context cache maintenance."""


@cache.command("clear")
@click.pass_context
def cache_clear(ctx):
    """Remove every recorded outcome."""
    config = _config(ctx)
    removed = FileContextStore(config.cache_path).clear()
    console.print(f"[green]✓ Removed {removed} cached outcome(s)[/]")


if __name__ == "__main__":
    cli()
