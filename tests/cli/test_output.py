"""Tests for output formatting module."""

from datetime import datetime
from unittest.mock import Mock

import pytest
from rich.console import Console
from rich.table import Table

from dockwatch.cli.output import (
    format_duration,
    format_status,
    format_time,
    print_json,
    print_table,
)


class TestPrintJson:
    """Test print_json function."""

    def test_print_simple_dict(self) -> None:
        """Test printing simple dictionary as JSON."""
        mock_console = Mock()
        print_json({"key": "value", "number": 42}, console_instance=mock_console)

        mock_console.print.assert_called_once()
        call_args = mock_console.print.call_args[0][0]
        assert "JSON" in type(call_args).__name__

    def test_datetimes_are_rendered(self, capsys) -> None:
        """Datetimes from to_dict() rows do not break serialization."""
        print_json(
            [{"started_at": datetime(2024, 1, 15, 10, 0)}],
            console_instance=Console(force_terminal=False),
        )

        assert "2024-01-15 10:00:00" in capsys.readouterr().out


class TestPrintTable:
    """Test print_table function."""

    def test_print_basic_table(self) -> None:
        """Test printing basic table."""
        mock_console = Mock()
        data = [
            {"name": "item1", "value": 10},
            {"name": "item2", "value": 20},
        ]
        print_table(data, ["name", "value"], console_instance=mock_console)

        mock_console.print.assert_called_once()
        table = mock_console.print.call_args[0][0]
        assert isinstance(table, Table)
        assert table.row_count == 2
        assert [c.header for c in table.columns] == ["Name", "Value"]

    def test_print_table_with_title(self) -> None:
        """Test printing table with title."""
        mock_console = Mock()
        print_table([{"id": 1}], ["id"], title="Users", console_instance=mock_console)

        table = mock_console.print.call_args[0][0]
        assert table.title == "Users"

    def test_none_and_bool_values(self, capsys) -> None:
        print_table(
            [{"id": 1, "enabled": True, "note": None}],
            ["id", "enabled", "note"],
            console_instance=Console(force_terminal=False),
        )

        out = capsys.readouterr().out
        assert "Yes" in out
        assert "None" not in out


class TestFormatDuration:
    """Test format_duration function."""

    @pytest.mark.parametrize(
        "duration_ms, expected",
        [
            (None, ""),
            (0, "0.0s"),
            (1500, "1.5s"),
            (90_000, "1m 30s"),
            (3_720_000, "1h 2m"),
        ],
    )
    def test_format_duration(self, duration_ms, expected) -> None:
        assert format_duration(duration_ms) == expected


class TestFormatHelpers:
    """Test status and time formatting."""

    def test_format_status(self) -> None:
        assert format_status("completed") == "[green]completed[/green]"
        assert format_status("partial") == "[yellow]partial[/yellow]"
        assert format_status("unknown") == "unknown"

    def test_format_time(self) -> None:
        assert format_time(datetime(2024, 1, 15, 10, 0, 5)) == "2024-01-15 10:00:05"
        assert format_time(None) == "Never"
