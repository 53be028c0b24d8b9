"""Main CLI entry point for dockwatch."""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from dockwatch import __app_name__, __version__
from dockwatch.cli import config, intents, jobs, run, users
from dockwatch.cli.exit_codes import ExitCode

# Create the main Typer app
app = typer.Typer(
    name=__app_name__,
    help="dockwatch - scheduled and event-driven job engine for container updates.",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Register command groups
app.add_typer(run.app, name="run")
app.add_typer(jobs.app, name="jobs")
app.add_typer(intents.app, name="intents")
app.add_typer(users.app, name="users")
app.add_typer(config.app, name="config")

# Global state for CLI options
_global_state: dict[str, bool] = {
    "verbose": False,
    "debug": False,
    "quiet": False,
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"{__app_name__} v{__version__}")
        raise typer.Exit(code=ExitCode.SUCCESS)


def _setup_logging(
    verbose: bool = False,
    debug: bool = False,
    quiet: bool = False,
    log_file: Optional[Path] = None,
) -> None:
    """Set up logging configuration based on CLI options.

    Args:
        verbose: Enable INFO level logging
        debug: Enable DEBUG level logging
        quiet: Suppress non-error output (ERROR and above)
        log_file: Optional log file path
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING

    if debug:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
    else:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = []

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    if not quiet:
        handlers.append(logging.StreamHandler(sys.stderr))
    elif not log_file:
        # In quiet mode without log file, add null handler to prevent warnings
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    # APScheduler logs every tick at INFO
    logging.getLogger("apscheduler").setLevel(logging.DEBUG if debug else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}, debug={debug}")


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable verbose output (INFO level logging).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug mode (DEBUG level logging).",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output.",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Also write logs to this file.",
    ),
) -> None:
    """dockwatch - scheduled and event-driven job engine for container updates.

    [bold]Core Commands:[/bold]

    • [cyan]run[/cyan] - Start the engine (batch scheduler and intent evaluator)
    • [cyan]jobs[/cyan] - Configure, run and inspect batch jobs
    • [cyan]intents[/cyan] - Manage auto-upgrade intents
    • [cyan]users[/cyan] - Manage users
    • [cyan]config[/cyan] - Manage configuration

    [bold]Examples:[/bold]

        dockwatch users add alice
        dockwatch jobs configure alice registry-scan --enable --interval 30
        dockwatch intents create alice nightly --cron "0 3 * * *"
        dockwatch run

    For more help on a specific command, use: [cyan]dockwatch <command> --help[/cyan]
    """
    _global_state["verbose"] = verbose
    _global_state["debug"] = debug
    _global_state["quiet"] = quiet

    if quiet and verbose:
        console.print("[red]Error:[/red] --quiet and --verbose are mutually exclusive")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    if quiet and debug:
        console.print("[red]Error:[/red] --quiet and --debug are mutually exclusive")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    _setup_logging(verbose=verbose, debug=debug, quiet=quiet, log_file=log_file)

    logger = logging.getLogger(__name__)
    logger.debug(f"dockwatch v{__version__} starting")


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return _global_state.get("verbose", False) or _global_state.get("debug", False)


def is_debug() -> bool:
    return _global_state.get("debug", False)


def is_quiet() -> bool:
    return _global_state.get("quiet", False)


__all__ = [
    "app",
    "console",
    "is_verbose",
    "is_debug",
    "is_quiet",
]


if __name__ == "__main__":
    app()
