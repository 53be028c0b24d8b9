"""dockwatch intents command - Manage auto-upgrade intents."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from dockwatch.cli.error_handler import handle_errors
from dockwatch.cli.output import format_duration, format_status, format_time, print_json
from dockwatch.cli.users import resolve_user
from dockwatch.database.models import SCHEDULE_IMMEDIATE, SCHEDULE_SCHEDULED
from dockwatch.exceptions import NotFoundError, ValidationError

app = typer.Typer(help="Manage auto-upgrade intents.")
console = Console()


def _schedule_label(intent) -> str:
    if intent.schedule_type == SCHEDULE_IMMEDIATE:
        return "[magenta]on update[/magenta]"
    return intent.schedule_cron or "[red]missing cron[/red]"


@app.command("list")
@handle_errors
def list_intents(
    user: Optional[str] = typer.Argument(
        None,
        help="User id or username (all users if not specified).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List intents.

    Example:
        dockwatch intents list
        dockwatch intents list alice
    """
    from dockwatch.cli import open_repositories

    with open_repositories("load intents") as repos:
        user_id = resolve_user(repos, user).id if user else None
        intents = repos.intents.get_all(user_id)

    if json_output:
        print_json([i.to_dict() for i in intents])
        return

    table = Table(title="Intents")
    table.add_column("ID", style="cyan")
    table.add_column("User")
    table.add_column("Name", style="magenta")
    table.add_column("Schedule", style="green")
    table.add_column("Status", style="bold")
    table.add_column("Dry Run")
    table.add_column("Last Evaluated")

    for intent in intents:
        table.add_row(
            str(intent.id),
            str(intent.user_id),
            intent.name,
            _schedule_label(intent),
            "[green]enabled[/green]" if intent.enabled else "[yellow]disabled[/yellow]",
            "yes" if intent.dry_run else "",
            format_time(intent.last_evaluated_at),
        )

    console.print(table)


@app.command("create")
@handle_errors
def create_intent(
    user: str = typer.Argument(..., help="User id or username."),
    name: str = typer.Argument(..., help="Intent name."),
    cron: Optional[str] = typer.Option(
        None,
        "--cron",
        "-s",
        help="Cron schedule expression in UTC (e.g., '0 3 * * *' for 03:00 daily).",
    ),
    immediate: bool = typer.Option(
        False,
        "--immediate",
        help="Run whenever an update scan finds new updates.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Record matching containers without upgrading them.",
    ),
    disabled: bool = typer.Option(
        False,
        "--disabled",
        help="Create the intent disabled.",
    ),
) -> None:
    """Create an intent.

    A scheduled intent first fires on the first cron boundary after it
    is created.

    Example:
        dockwatch intents create alice nightly --cron "0 3 * * *"
        dockwatch intents create alice eager --immediate --dry-run
    """
    from dockwatch.cli import open_repositories
    from dockwatch.intents.schedule import validate_cron

    if immediate and cron:
        raise ValidationError("--cron and --immediate are mutually exclusive")
    if not immediate and not cron:
        raise ValidationError("Provide --cron EXPRESSION or --immediate")

    if cron:
        validation = validate_cron(cron)
        if not validation.valid:
            raise ValidationError(f"Invalid cron expression: {validation.error}")

    with open_repositories("create intent") as repos:
        target = resolve_user(repos, user)
        intent = repos.intents.create(
            target.id,
            name,
            schedule_type=SCHEDULE_IMMEDIATE if immediate else SCHEDULE_SCHEDULED,
            schedule_cron=cron,
            dry_run=dry_run,
            enabled=not disabled,
        )

    console.print(f"[green]✓[/green] Intent created: {intent.id} ({intent.name})")
    if cron:
        console.print(f"  Schedule: {cron}")
        console.print(f"  Next run: {format_time(validation.next_run)} UTC")
    else:
        console.print("  Schedule: whenever a scan finds updates")


def _set_enabled(intent_id: int, enabled: bool) -> None:
    from dockwatch.cli import open_repositories

    with open_repositories("update intent") as repos:
        intent = repos.intents.set_enabled(intent_id, enabled)
    if intent is None:
        raise NotFoundError(f"Intent not found: {intent_id}")
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]✓[/green] Intent {intent.id} ({intent.name}) {state}")


@app.command("enable")
@handle_errors
def enable_intent(
    intent_id: int = typer.Argument(..., help="ID of the intent to enable."),
) -> None:
    """Enable an intent.

    Example:
        dockwatch intents enable 3
    """
    _set_enabled(intent_id, True)


@app.command("disable")
@handle_errors
def disable_intent(
    intent_id: int = typer.Argument(..., help="ID of the intent to disable."),
) -> None:
    """Disable an intent.

    Example:
        dockwatch intents disable 3
    """
    _set_enabled(intent_id, False)


@app.command("check")
@handle_errors
def check_intents(
    user: Optional[str] = typer.Argument(
        None,
        help="User id or username (all users if not specified).",
    ),
) -> None:
    """Show whether each enabled intent is due right now, without running it.

    Example:
        dockwatch intents check
    """
    from dockwatch.cli import open_repositories
    from dockwatch.clock import utcnow
    from dockwatch.intents.schedule import is_intent_due

    now = utcnow()
    with open_repositories("load intents") as repos:
        user_ids = [resolve_user(repos, user).id] if user else repos.users.get_all_ids()
        intents = [i for uid in user_ids for i in repos.intents.get_enabled(uid)]

    table = Table(title=f"Intent Due Check ({now:%Y-%m-%d %H:%M:%S} UTC)")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Schedule", style="green")
    table.add_column("Due", style="bold")
    table.add_column("Next Run")
    table.add_column("Reason")

    for intent in intents:
        due = is_intent_due(intent, now)
        table.add_row(
            str(intent.id),
            intent.name,
            _schedule_label(intent),
            "[green]yes[/green]" if due.is_due else "no",
            format_time(due.next_run) if due.next_run else "-",
            due.reason,
        )

    console.print(table)


@app.command("run")
@handle_errors
def run_intent(
    intent_id: int = typer.Argument(..., help="ID of the intent to run."),
) -> None:
    """Execute an intent now, outside its schedule.

    Does not consume the intent's next cron boundary.

    Example:
        dockwatch intents run 3
    """
    from dockwatch.config import get_config
    from dockwatch.database.connection import create_tables
    from dockwatch.intents.evaluator import IntentEvaluator
    from dockwatch.intents.executor import RecordingIntentExecutor

    create_tables()
    evaluator = IntentEvaluator(RecordingIntentExecutor(), config=get_config().scheduler)

    async def execute():
        return await evaluator.trigger_intent(intent_id)

    result = asyncio.run(execute())
    if result is None:
        console.print(f"[red]✗[/red] Intent {intent_id} execution failed (see logs)")
        raise typer.Exit(code=1)

    console.print(
        f"{'[green]✓[/green]' if result.status == 'completed' else '[yellow]~[/yellow]'} "
        f"Execution {result.execution_id}: {format_status(result.status)} "
        f"in {format_duration(result.duration_ms)}"
    )
    console.print(
        f"  Matched {result.containers_matched}, upgraded {result.containers_upgraded}, "
        f"failed {result.containers_failed}, skipped {result.containers_skipped}"
    )


@app.command("history")
@handle_errors
def intent_history(
    intent_id: Optional[int] = typer.Argument(
        None,
        help="Intent ID (all intents if not specified).",
    ),
    limit: int = typer.Option(10, "--limit", "-l", help="Number of executions to show.", min=1),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show intent execution history, newest first.

    Example:
        dockwatch intents history 3 --limit 20
    """
    from dockwatch.cli import open_repositories

    with open_repositories("load intent history") as repos:
        executions = repos.intent_executions.get_history(intent_id, limit=limit)

    if json_output:
        print_json([e.to_dict() for e in executions])
        return

    table = Table(title="Intent Executions")
    table.add_column("ID", style="cyan")
    table.add_column("Intent")
    table.add_column("Trigger", style="magenta")
    table.add_column("Started", style="green")
    table.add_column("Duration")
    table.add_column("Status", style="bold")
    table.add_column("Matched")
    table.add_column("Upgraded")
    table.add_column("Failed")
    table.add_column("Skipped")

    for e in executions:
        table.add_row(
            str(e.id),
            str(e.intent_id),
            e.trigger_type,
            format_time(e.started_at),
            format_duration(e.duration_ms),
            format_status(e.status),
            str(e.containers_matched),
            str(e.containers_upgraded),
            str(e.containers_failed),
            str(e.containers_skipped),
        )
    console.print(table)
