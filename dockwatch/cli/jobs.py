"""dockwatch jobs command - Inspect, configure and run batch jobs."""

import asyncio
from datetime import timedelta
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from dockwatch.batch.handler import JobHandler
from dockwatch.cli.error_handler import handle_errors
from dockwatch.cli.output import format_duration, format_status, format_time, print_json
from dockwatch.cli.users import resolve_user
from dockwatch.exceptions import UnknownJobTypeError, ValidationError

app = typer.Typer(help="Inspect, configure and run batch jobs.")
console = Console()


def _discover_handlers() -> Dict[str, JobHandler]:
    from dockwatch.batch.registry import HandlerRegistry
    from dockwatch.config import get_config

    registry = HandlerRegistry(disabled_job_types=get_config().scheduler.disabled_job_types)
    return registry.discover_all()


@app.command("list")
@handle_errors
def list_jobs() -> None:
    """List the job types provided by installed handlers.

    Example:
        dockwatch jobs list
    """
    handlers = _discover_handlers()
    if not handlers:
        console.print("[dim]No job handlers installed.[/dim]")
        return

    table = Table(title="Job Types")
    table.add_column("Job Type", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Default", style="green")
    table.add_column("Triggers Intents")

    for job_type, handler in sorted(handlers.items()):
        default = handler.get_default_config()
        default_str = (
            f"every {default.interval_minutes}m" if default.enabled
            else f"disabled ({default.interval_minutes}m)"
        )
        table.add_row(job_type, handler.display_name, default_str, "yes" if handler.triggers_intents else "no")

    console.print(table)


@app.command("status")
@handle_errors
def job_status(
    user: str = typer.Argument(..., help="User id or username."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show schedule, last run and next due time of a user's jobs.

    Example:
        dockwatch jobs status alice
    """
    from dockwatch.cli import open_repositories
    from dockwatch.config import get_config

    handlers = _discover_handlers()
    default_interval = get_config().scheduler.default_interval_minutes

    with open_repositories("load job status") as repos:
        target = resolve_user(repos, user)
        configs = {c.job_type: c for c in repos.batch_configs.get_for_user(target.id)}
        rows = []
        for job_type in sorted(set(handlers) | set(configs)):
            stored = configs.get(job_type)
            if stored is not None:
                enabled, interval = stored.enabled, stored.interval_minutes
            elif job_type in handlers:
                default = handlers[job_type].get_default_config()
                enabled, interval = default.enabled, default.interval_minutes
            else:
                enabled, interval = False, default_interval

            last = repos.batch_runs.get_latest_completed(target.id, job_type)
            running = repos.batch_runs.get_running(target.id, job_type)
            last_at = last.completed_at if last else None
            rows.append({
                "job_type": job_type,
                "installed": job_type in handlers,
                "enabled": enabled,
                "interval_minutes": interval,
                "configured": stored is not None,
                "last_completed_at": last_at,
                "next_due_at": (last_at + timedelta(minutes=interval)) if (enabled and last_at) else None,
                "running_run_id": running.id if running else None,
            })

    if json_output:
        print_json(rows)
        return

    table = Table(title=f"Jobs for {target.username}")
    table.add_column("Job Type", style="cyan")
    table.add_column("Enabled")
    table.add_column("Interval")
    table.add_column("Last Completed")
    table.add_column("Next Due")
    table.add_column("Running")

    for row in rows:
        job_label = row["job_type"] if row["installed"] else f"{row['job_type']} [dim](not installed)[/dim]"
        enabled = "[green]yes[/green]" if row["enabled"] else "[yellow]no[/yellow]"
        if not row["configured"]:
            enabled += " [dim](default)[/dim]"
        if not row["enabled"]:
            next_due = "-"
        elif row["next_due_at"] is None:
            next_due = "now"
        else:
            next_due = format_time(row["next_due_at"])
        table.add_row(
            job_label,
            enabled,
            f"{row['interval_minutes']}m",
            format_time(row["last_completed_at"]),
            next_due,
            f"run {row['running_run_id']}" if row["running_run_id"] else "",
        )

    console.print(table)


@app.command("configure")
@handle_errors
def configure_job(
    user: str = typer.Argument(..., help="User id or username."),
    job_type: str = typer.Argument(..., help="Job type to configure."),
    enable: Optional[bool] = typer.Option(
        None,
        "--enable/--disable",
        help="Enable or disable scheduled runs.",
    ),
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Minutes between runs (1-1440).",
    ),
) -> None:
    """Set a user's schedule for a job type.

    Example:
        dockwatch jobs configure alice registry-scan --enable --interval 30
        dockwatch jobs configure 1 registry-scan --disable
    """
    from dockwatch.cli import open_repositories
    from dockwatch.config import get_config

    handlers = _discover_handlers()
    handler = handlers.get(job_type)
    if handler is None:
        console.print(f"[yellow]Warning:[/yellow] no installed handler for job type '{job_type}'")

    with open_repositories("configure job") as repos:
        target = resolve_user(repos, user)
        current = repos.batch_configs.get(target.id, job_type)
        if current is not None:
            enabled, interval_minutes = current.enabled, current.interval_minutes
        elif handler is not None:
            default = handler.get_default_config()
            enabled, interval_minutes = default.enabled, default.interval_minutes
        else:
            enabled, interval_minutes = False, get_config().scheduler.default_interval_minutes

        if enable is not None:
            enabled = enable
        if interval is not None:
            interval_minutes = interval

        if handler is not None:
            valid, error = handler.validate_config(
                {"enabled": enabled, "interval_minutes": interval_minutes}
            )
            if not valid:
                raise ValidationError(error or "Invalid job configuration")

        stored = repos.batch_configs.upsert(target.id, job_type, enabled, interval_minutes)

    state = "enabled" if stored.enabled else "disabled"
    console.print(
        f"[green]✓[/green] {job_type} for {target.username}: {state}, "
        f"every {stored.interval_minutes} minute(s)"
    )


@app.command("run")
@handle_errors
def run_job(
    user: str = typer.Argument(..., help="User id or username."),
    job_type: str = typer.Argument(..., help="Job type to run."),
    no_intents: bool = typer.Option(
        False,
        "--no-intents",
        help="Do not dispatch immediate intents when updates are found.",
    ),
) -> None:
    """Run a job now, outside its schedule.

    Fails with exit code 5 if the job is already running for the user.
    Runs left behind by a crashed process are only cleared by the engine.

    Example:
        dockwatch jobs run alice registry-scan
    """
    from dockwatch.batch.manager import BatchManager
    from dockwatch.cli import open_repositories
    from dockwatch.config import get_config
    from dockwatch.intents.evaluator import IntentEvaluator
    from dockwatch.intents.executor import RecordingIntentExecutor

    handlers = _discover_handlers()
    if job_type not in handlers:
        raise UnknownJobTypeError(job_type)

    with open_repositories("load user") as repos:
        target = resolve_user(repos, user)

    config = get_config().scheduler
    # A second process never fails the engine's runs as stale
    manager = BatchManager(config=config, stale_takeover=False)
    manager.register_handler(handlers[job_type])

    console.print(f"[bold]Running {handlers[job_type].display_name}[/bold] for {target.username}")

    async def execute():
        outcome = await manager.execute_job(target.id, job_type, is_manual=True)
        dispatched = []
        if not no_intents and handlers[job_type].triggers_intents:
            evaluator = IntentEvaluator(RecordingIntentExecutor(), config=config)
            dispatched = await evaluator.evaluate_immediate_intents(target.id, outcome.result)
            await evaluator.wait_for_idle()
        return outcome, dispatched

    outcome, dispatched = asyncio.run(execute())

    result = outcome.result
    marker = "[yellow]~[/yellow]" if result.partial else "[green]✓[/green]"
    console.print(f"{marker} Run {outcome.run_id} completed in {format_duration(outcome.duration_ms)}")
    console.print(f"  Items checked: {result.items_checked}")
    console.print(f"  Items updated: {result.items_updated}")
    if result.partial and result.message:
        console.print(f"  [yellow]Partial:[/yellow] {result.message}")
    if dispatched:
        console.print(f"  Immediate intents dispatched: {', '.join(str(i) for i in dispatched)}")


@app.command("history")
@handle_errors
def job_history(
    user: Optional[str] = typer.Argument(
        None,
        help="User id or username (all users if not specified).",
    ),
    job_type: Optional[str] = typer.Option(
        None,
        "--job-type",
        "-j",
        help="Only show runs of this job type.",
    ),
    limit: int = typer.Option(
        10,
        "--limit",
        "-l",
        help="Number of runs to show.",
        min=1,
    ),
    show_logs: bool = typer.Option(
        False,
        "--logs",
        help="Print the log transcript of each run.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show batch run history, newest first.

    Example:
        dockwatch jobs history
        dockwatch jobs history alice --job-type registry-scan --limit 20
    """
    from dockwatch.cli import open_repositories

    with open_repositories("load run history") as repos:
        user_id = resolve_user(repos, user).id if user else None
        runs = repos.batch_runs.get_history(user_id=user_id, job_type=job_type, limit=limit)

    if json_output:
        print_json([
            {**r.to_dict(), "logs": r.logs} if show_logs else r.to_dict()
            for r in runs
        ])
        return

    table = Table(title="Run History")
    table.add_column("Run", style="cyan")
    table.add_column("User")
    table.add_column("Job Type", style="magenta")
    table.add_column("Started", style="green")
    table.add_column("Duration")
    table.add_column("Status", style="bold")
    table.add_column("Checked")
    table.add_column("Updated")
    table.add_column("Note")

    for r in runs:
        table.add_row(
            str(r.id),
            str(r.user_id),
            r.job_type + (" [dim](manual)[/dim]" if r.is_manual else ""),
            format_time(r.started_at),
            format_duration(r.duration_ms),
            format_status(r.status),
            str(r.items_checked),
            str(r.items_updated),
            r.error_message or "",
        )

    console.print(table)

    if show_logs:
        for r in runs:
            if r.logs:
                console.print(f"\n[bold]Run {r.id} log[/bold]")
                console.print(r.logs, markup=False, highlight=False)
