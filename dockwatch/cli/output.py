"""Output formatting utilities for the dockwatch CLI."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.json import JSON as RichJSON
from rich.table import Table

# Default console for output
console = Console()

STATUS_STYLES = {
    "running": "cyan",
    "completed": "green",
    "partial": "yellow",
    "failed": "red",
}


def print_json(data: Any, console_instance: Console | None = None) -> None:
    """Print data as formatted JSON.

    Args:
        data: Data to print (datetimes and other values are rendered with str())
        console_instance: Optional custom console instance
    """
    prog_console = console_instance or console
    json_str = json.dumps(data, indent=2, default=str)
    prog_console.print(RichJSON(json_str))


def print_table(
    data: List[Dict[str, Any]],
    columns: List[str],
    title: str | None = None,
    column_styles: Dict[str, str] | None = None,
    console_instance: Console | None = None,
) -> None:
    """Print rows of dictionaries as a table.

    Example:
        print_table(runs, ["id", "job_type", "status"], title="Runs")
    """
    prog_console = console_instance or console
    column_styles = column_styles or {}

    table = Table(title=title)
    for col in columns:
        table.add_column(col.replace("_", " ").title(), style=column_styles.get(col))

    for row in data:
        values = []
        for col in columns:
            value = row.get(col, "")
            if value is None:
                value = ""
            elif isinstance(value, bool):
                value = "[green]Yes[/green]" if value else "[red]No[/red]"
            values.append(str(value))
        table.add_row(*values)

    prog_console.print(table)


def format_status(status: str) -> str:
    """Colour a run or execution status."""
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def format_duration(duration_ms: Optional[int]) -> str:
    """Format a duration in milliseconds.

    Example:
        format_duration(1500)     # "1.5s"
        format_duration(90000)    # "1m 30s"
    """
    if duration_ms is None:
        return ""
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


def format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "Never"
