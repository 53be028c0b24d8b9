"""dockwatch run command - Start the engine."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from dockwatch.cli.error_handler import handle_errors

app = typer.Typer(help="Start the dockwatch engine (batch scheduler and intent evaluator).")
console = Console()


def _apply_logging_config(level: str, log_file: Optional[Path]) -> None:
    """Apply the configured engine log level and file.

    Global --debug and --quiet flags take precedence over the configured level.
    """
    from dockwatch.main import is_debug, is_quiet, is_verbose

    engine_logger = logging.getLogger("dockwatch")
    if not (is_debug() or is_quiet() or is_verbose()):
        engine_logger.setLevel(level.upper())

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        engine_logger.addHandler(file_handler)


@app.callback(invoke_without_command=True)
@handle_errors
def run(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    no_discover: bool = typer.Option(
        False,
        "--no-discover",
        help="Do not load job handlers from installed packages.",
    ),
) -> None:
    """Start the engine and run until SIGTERM or SIGINT.

    The engine:
    - Fails runs and intent executions left running by a previous process
    - Runs every enabled batch job when its interval has elapsed
    - Dispatches scheduled intents on their cron boundaries
    - Dispatches immediate intents when a scan finds updates

    Example:
        dockwatch run
        dockwatch run --config ./config.toml
    """
    if ctx.invoked_subcommand is not None:
        return

    from dockwatch.config import ensure_directories, load_config, set_config
    from dockwatch.daemon.pid import PIDFile
    from dockwatch.daemon.service import run_daemon

    config = load_config(config_file)
    set_config(config)
    ensure_directories(config)
    _apply_logging_config(config.logging.level, config.logging.file)

    pid_file = PIDFile(config.data_dir / "dockwatch.pid")
    pid_file.acquire()

    console.print("[bold green]Starting dockwatch engine...[/bold green]")
    console.print(f"  Database: {config.database_url}")
    console.print(
        f"  Job checks every {config.scheduler.check_interval}s, "
        f"intent checks every {config.scheduler.intent_check_interval}s"
    )

    try:
        asyncio.run(run_daemon(config, {"discover": not no_discover}))
    finally:
        pid_file.release()

    console.print("[dim]dockwatch engine stopped[/dim]")


@app.command()
@handle_errors
def status(
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Check whether the engine is running and list in-flight runs.

    Example:
        dockwatch run status
    """
    from dockwatch.config import load_config, set_config
    from dockwatch.daemon.pid import PIDFile
    from dockwatch.database.connection import create_tables, get_db_session
    from dockwatch.database.repositories import repository_scope

    config = load_config(config_file)
    set_config(config)
    pid_file = PIDFile(config.data_dir / "dockwatch.pid")

    if pid_file.is_running():
        console.print(f"[green]● Engine is running[/green] (PID: {pid_file.read()})")
    else:
        console.print("[yellow]○ Engine is not running[/yellow]")

    console.print(f"  Data directory: {config.data_dir}")
    console.print(f"  Database: {config.database_url}")

    create_tables(config)
    with repository_scope(get_db_session, "load running runs") as repos:
        running = repos.batch_runs.get_all_running()

    if running:
        console.print(f"  Running jobs: {len(running)}")
        for run_row in running:
            console.print(
                f"    [cyan]{run_row.job_type}[/cyan] user {run_row.user_id} "
                f"(run {run_row.id}, started {run_row.started_at:%Y-%m-%d %H:%M:%S})"
            )
    else:
        console.print("  Running jobs: none")
