"""Tests for the daemon PID file."""

import os
from unittest.mock import patch

import pytest

from dockwatch.cli.exit_codes import ExitCode
from dockwatch.daemon.pid import PIDFile
from dockwatch.exceptions import DockwatchError


class TestPIDFile:
    """Tests for PIDFile class."""

    def test_acquire_writes_pid(self, tmp_path):
        """Test acquire writes the current PID, creating parent directories."""
        pid_file = PIDFile(tmp_path / "nested" / "dockwatch.pid")

        pid_file.acquire()

        assert pid_file.path.read_text() == str(os.getpid())
        assert pid_file.read() == os.getpid()

    def test_read_nonexistent_file(self, tmp_path):
        assert PIDFile(tmp_path / "missing.pid").read() is None

    def test_read_invalid_content(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.path.write_text("not a pid")

        assert pid_file.read() is None
        assert pid_file.is_running() is False

    def test_is_running_with_current_process(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.acquire()

        assert pid_file.is_running() is True

    def test_is_running_with_stale_pid(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.path.write_text("999999")

        with patch("dockwatch.daemon.pid.os.kill", side_effect=ProcessLookupError):
            assert pid_file.is_running() is False

    def test_is_running_other_users_process(self, tmp_path):
        """A process we may not signal still counts as running."""
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.path.write_text("1")

        with patch("dockwatch.daemon.pid.os.kill", side_effect=PermissionError):
            assert pid_file.is_running() is True

    def test_acquire_replaces_stale_file(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.path.write_text("999999")

        with patch("dockwatch.daemon.pid.os.kill", side_effect=ProcessLookupError):
            pid_file.acquire()

        assert pid_file.read() == os.getpid()

    def test_acquire_refuses_live_daemon(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.path.write_text("4242")

        with patch("dockwatch.daemon.pid.os.kill", return_value=None):
            with pytest.raises(DockwatchError) as exc_info:
                pid_file.acquire()

        assert exc_info.value.exit_code == ExitCode.ALREADY_RUNNING
        assert exc_info.value.details["pid"] == 4242
        assert pid_file.read() == 4242

    def test_release_removes_own_file(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.acquire()

        pid_file.release()

        assert not pid_file.path.exists()

    def test_release_keeps_foreign_file(self, tmp_path):
        pid_file = PIDFile(tmp_path / "dockwatch.pid")
        pid_file.path.write_text("4242")

        pid_file.release()

        assert pid_file.path.exists()

    def test_release_without_file(self, tmp_path):
        PIDFile(tmp_path / "missing.pid").release()
