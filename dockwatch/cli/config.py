"""dockwatch config command - Configuration management."""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from dockwatch.cli.exit_codes import ExitCode

app = typer.Typer(help="Manage dockwatch configuration.")
console = Console()


def _config_file_path() -> Path:
    from dockwatch.config import DEFAULT_CONFIG_DIR, DEFAULT_CONFIG_FILE

    config_dir = Path(os.environ.get("DOCKWATCH_CONFIG_DIR", DEFAULT_CONFIG_DIR))
    return config_dir / DEFAULT_CONFIG_FILE


@app.command("show")
def show_config(
    section: Optional[str] = typer.Argument(
        None,
        help="Configuration section to show (scheduler, logging, paths).",
    ),
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, yaml, json).",
    ),
    unmask: bool = typer.Option(
        False,
        "--unmask",
        help="Show the database password unmasked.",
    ),
) -> None:
    """Show current configuration.

    Example:
        dockwatch config show
        dockwatch config show scheduler
        dockwatch config show --format yaml
    """
    from dockwatch.config import _config_to_dict, export_config_json, export_config_yaml, get_config

    config = get_config()

    if format == "yaml":
        console.print(Syntax(export_config_yaml(config, mask_secrets=not unmask), "yaml", theme="monokai"))
        return
    elif format == "json":
        console.print(Syntax(export_config_json(config, mask_secrets=not unmask), "json", theme="monokai"))
        return
    elif format != "table":
        console.print(f"[red]Unknown format: {format}[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    data = _config_to_dict(config, mask_secrets=not unmask)
    sections = {
        "scheduler": data["scheduler"],
        "logging": data["logging"],
        "paths": {
            "config_dir": data["config_dir"],
            "data_dir": data["data_dir"],
            "database_url": data["database_url"],
        },
    }

    if section and section not in sections:
        console.print(f"[red]Unknown section: {section}[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    for name in [section] if section else sections:
        table = Table(title=name.capitalize())
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for key, value in sections[name].items():
            if isinstance(value, list):
                value = ", ".join(value) or "None"
            table.add_row(key, "" if value is None else str(value))
        console.print(table)
        console.print()


@app.command("set")
def set_config(
    key: str = typer.Argument(
        ...,
        help="Configuration key (format: section.key, e.g., scheduler.check_interval).",
    ),
    value: str = typer.Argument(
        ...,
        help="Value to set. Lists are comma separated.",
    ),
) -> None:
    """Set a configuration value.

    Example:
        dockwatch config set scheduler.check_interval 15
        dockwatch config set scheduler.disabled_job_types registry-scan,cleanup
        dockwatch config set logging.level DEBUG
    """
    from dockwatch.config import clear_config_cache, set_config_value

    if "." not in key:
        console.print("[red]Key must be in format: section.key[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    section, config_key = key.split(".", 1)

    try:
        set_config_value(section, config_key, value, _config_file_path())
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    clear_config_cache()
    console.print(f"[green]✓[/green] Set {section}.{config_key} = {value}")


@app.command("path")
def config_path() -> None:
    """Show configuration file path.

    Example:
        dockwatch config path
    """
    path = _config_file_path()
    console.print(f"[bold]Config directory:[/bold] {path.parent}")
    console.print(f"[bold]Config file:[/bold] {path}")
    console.print(f"[bold]Exists:[/bold] {path.exists()}")


@app.command("validate")
def validate_config() -> None:
    """Validate current configuration.

    Example:
        dockwatch config validate
    """
    from dockwatch.config import get_config, validate_config as do_validate

    console.print("[bold]Validating configuration...[/bold]")
    console.print()

    errors = do_validate(get_config())

    all_passed = True
    for error in errors:
        if error.severity == "error":
            status = "[red]✗[/red]"
            all_passed = False
        else:
            status = "[yellow]![/yellow]"
        console.print(f"  {status} \\[{error.severity.upper()}] {error.field}: {error.message}")

    if errors:
        console.print()
    if all_passed:
        console.print("[green]Configuration is valid[/green]")
    else:
        console.print("[red]Configuration has errors[/red]")
        raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR)
