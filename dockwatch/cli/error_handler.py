"""Global exception handling for the dockwatch CLI.

Commands are wrapped with :func:`handle_errors`, which turns engine
exceptions into a short message and the exit code carried by the
exception.
"""

from functools import wraps
from typing import Callable, TypeVar, Any
import logging

import typer
from rich.console import Console

from dockwatch.cli.exit_codes import ExitCode
from dockwatch.exceptions import DockwatchError, LockConflictError

# Console for error output (stderr)
console = Console(stderr=True)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def handle_errors(func: F) -> F:
    """Decorator for consistent error handling across CLI commands.

    - LockConflictError: "already running" notice, exit ALREADY_RUNNING
    - DockwatchError subclasses: error message and details, with the
      exception's exit code
    - KeyboardInterrupt: cancellation message, exit code 130
    - Other exceptions: generic error, exit code 1

    Example:
        @app.command()
        @handle_errors
        def my_command():
            raise NotFoundError("User not found")
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except LockConflictError as e:
            logger.info(f"Lock conflict: {e}")
            console.print(f"[yellow]Already running:[/yellow] {e.message}")
            for key, value in e.details.items():
                console.print(f"  [dim]{key}:[/dim] {value}")
            raise typer.Exit(code=e.exit_code)

        except DockwatchError as e:
            logger.error(
                f"DockwatchError: {e.message}",
                extra={"exit_code": e.exit_code, "details": e.details},
            )
            console.print(f"[red]Error:[/red] {e.message}")
            for key, value in e.details.items():
                console.print(f"  [dim]{key}:[/dim] {value}")
            raise typer.Exit(code=e.exit_code)

        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user.[/yellow]")
            logger.info("Operation cancelled by user (KeyboardInterrupt)")
            raise typer.Exit(code=ExitCode.CANCELLED)

        except typer.Exit:
            raise

        except Exception as e:
            logger.exception("Unexpected error occurred")
            console.print(f"[red]Unexpected error:[/red] {e}")
            console.print("[dim]Run with --verbose for more details[/dim]")
            raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    return wrapper  # type: ignore[return-value]
