"""Tests for exit codes module."""

import pytest

from dockwatch.cli.exit_codes import ExitCode


class TestExitCode:
    """Test exit code constants."""

    def test_standard_codes(self) -> None:
        assert ExitCode.SUCCESS == 0
        assert ExitCode.GENERAL_ERROR == 1
        assert ExitCode.CANCELLED == 130

    def test_dockwatch_codes(self) -> None:
        assert ExitCode.CONFIGURATION_ERROR == 2
        assert ExitCode.HANDLER_ERROR == 3
        assert ExitCode.PERSISTENCE_ERROR == 4
        assert ExitCode.ALREADY_RUNNING == 5
        assert ExitCode.INVALID_ARGUMENT == 7
        assert ExitCode.NOT_FOUND == 8

    @pytest.mark.parametrize(
        "code, name",
        [
            (0, "SUCCESS"),
            (4, "PERSISTENCE_ERROR"),
            (5, "ALREADY_RUNNING"),
            (130, "CANCELLED"),
        ],
    )
    def test_get_name(self, code: int, name: str) -> None:
        assert ExitCode.get_name(code) == name

    def test_get_name_unknown(self) -> None:
        assert ExitCode.get_name(99) == "UNKNOWN(99)"

    def test_get_description(self) -> None:
        assert ExitCode.get_description(ExitCode.ALREADY_RUNNING) == "The job or intent is already running"
        assert ExitCode.get_description(99) == "Unknown exit code: 99"
