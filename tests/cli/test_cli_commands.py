"""Tests for the dockwatch CLI commands."""

import logging
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from dockwatch import __version__
from dockwatch.batch.handler import JobResult
from dockwatch.clock import utcnow
from dockwatch.cli.exit_codes import ExitCode
from dockwatch.database.models import SCHEDULE_IMMEDIATE
from dockwatch.main import app


@pytest.fixture
def cli(db_config, monkeypatch):
    """Invoke the CLI against the test database."""
    monkeypatch.setenv("DOCKWATCH_CONFIG_DIR", str(db_config.config_dir))
    monkeypatch.setenv("DOCKWATCH_DATA_DIR", str(db_config.data_dir))
    monkeypatch.setattr("dockwatch.main._setup_logging", lambda **kwargs: None)
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(app, list(args))

    # 'dockwatch run' applies the configured level to the package logger
    engine_logger = logging.getLogger("dockwatch")
    level = engine_logger.level
    yield invoke
    engine_logger.setLevel(level)


@pytest.fixture
def handlers(make_handler, monkeypatch):
    """Install a 'scan' handler in place of entry-point discovery."""
    installed = {"scan": make_handler("scan", result=JobResult(items_checked=3, items_updated=2))}
    monkeypatch.setattr("dockwatch.cli.jobs._discover_handlers", lambda: dict(installed))
    return installed


@pytest.fixture
def alice(cli):
    result = cli("users", "add", "alice")
    assert result.exit_code == 0, result.output
    return "alice"


class TestGlobalOptions:
    """Tests for the top-level callback."""

    def test_version(self, cli):
        result = cli("--version")

        assert result.exit_code == 0
        assert f"dockwatch v{__version__}" in result.output

    def test_quiet_and_verbose_conflict(self, cli):
        result = cli("--quiet", "--verbose", "users", "list")

        assert result.exit_code == ExitCode.INVALID_ARGUMENT


class TestUsersCommands:
    """Tests for 'dockwatch users'."""

    def test_add_and_list(self, cli, alice):
        result = cli("users", "list", "--json")

        assert result.exit_code == 0
        assert '"username": "alice"' in result.output

    def test_add_duplicate(self, cli, alice):
        result = cli("users", "add", "alice")

        assert result.exit_code == ExitCode.INVALID_ARGUMENT
        assert "already exists" in result.output

    def test_add_empty(self, cli):
        assert cli("users", "add", " ").exit_code == ExitCode.INVALID_ARGUMENT

    def test_list_empty(self, cli):
        result = cli("users", "list")

        assert result.exit_code == 0
        assert "No users" in result.output


class TestJobsCommands:
    """Tests for 'dockwatch jobs'."""

    def test_list(self, cli, handlers):
        result = cli("jobs", "list")

        assert result.exit_code == 0
        assert "scan" in result.output

    def test_configure(self, cli, handlers, alice):
        result = cli("jobs", "configure", "alice", "scan", "--enable", "--interval", "30")

        assert result.exit_code == 0, result.output
        assert "scan for alice: enabled, every 30 minute(s)" in result.output

        status = cli("jobs", "status", "alice", "--json")
        assert status.exit_code == 0
        assert '"interval_minutes": 30' in status.output
        assert '"configured": true' in status.output

    def test_configure_invalid_interval(self, cli, handlers, alice):
        result = cli("jobs", "configure", "alice", "scan", "--interval", "0")

        assert result.exit_code == ExitCode.INVALID_ARGUMENT

    def test_configure_unknown_user(self, cli, handlers):
        result = cli("jobs", "configure", "nobody", "scan", "--enable")

        assert result.exit_code == ExitCode.NOT_FOUND

    def test_run(self, cli, handlers, alice):
        result = cli("jobs", "run", "alice", "scan")

        assert result.exit_code == 0, result.output
        assert "Run 1 completed" in result.output
        assert "Items checked: 3" in result.output
        assert "Items updated: 2" in result.output

        history = cli("jobs", "history", "alice", "--json")
        assert history.exit_code == 0
        assert '"status": "completed"' in history.output
        assert '"is_manual": true' in history.output

    def test_run_dispatches_immediate_intents(self, cli, handlers, alice, repos):
        with repos() as r:
            user = r.users.get_by_username("alice")
            intent_id = r.intents.create(user.id, "eager", schedule_type=SCHEDULE_IMMEDIATE).id

        result = cli("jobs", "run", "alice", "scan")

        assert result.exit_code == 0, result.output
        assert f"Immediate intents dispatched: {intent_id}" in result.output
        with repos() as r:
            assert len(r.intent_executions.get_history(intent_id)) == 1

    def test_run_without_intents(self, cli, handlers, alice, repos):
        with repos() as r:
            user = r.users.get_by_username("alice")
            intent_id = r.intents.create(user.id, "eager", schedule_type=SCHEDULE_IMMEDIATE).id

        result = cli("jobs", "run", "alice", "scan", "--no-intents")

        assert result.exit_code == 0
        with repos() as r:
            assert r.intent_executions.get_history(intent_id) == []

    def test_run_unknown_job_type(self, cli, handlers, alice):
        result = cli("jobs", "run", "alice", "cleanup")

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR

    def test_run_already_running(self, cli, handlers, alice, repos):
        with repos() as r:
            user = r.users.get_by_username("alice")
            run_id = r.batch_runs.create(user.id, "scan", started_at=utcnow()).id

        result = cli("jobs", "run", "alice", "scan")

        assert result.exit_code == ExitCode.ALREADY_RUNNING
        assert "Already running" in result.output
        assert str(run_id) in result.output

    def test_run_handler_failure(self, cli, make_handler, monkeypatch, alice):
        async def broken(context):
            raise RuntimeError("registry unreachable")

        monkeypatch.setattr(
            "dockwatch.cli.jobs._discover_handlers",
            lambda: {"scan": make_handler("scan", execute=broken)},
        )

        result = cli("jobs", "run", "alice", "scan")

        assert result.exit_code == ExitCode.GENERAL_ERROR
        assert "registry unreachable" in result.output


class TestIntentsCommands:
    """Tests for 'dockwatch intents'."""

    def test_create_and_list(self, cli, alice):
        result = cli("intents", "create", "alice", "nightly", "--cron", "0 3 * * *")

        assert result.exit_code == 0, result.output
        assert "Intent created: 1 (nightly)" in result.output

        listing = cli("intents", "list", "--json")
        assert '"schedule_cron": "0 3 * * *"' in listing.output

    def test_create_immediate(self, cli, alice):
        result = cli("intents", "create", "alice", "eager", "--immediate", "--dry-run")

        assert result.exit_code == 0
        assert "whenever a scan finds updates" in result.output

    @pytest.mark.parametrize(
        "args",
        [
            ["--cron", "not a cron"],
            ["--cron", "0 3 * * *", "--immediate"],
            [],
        ],
    )
    def test_create_invalid(self, cli, alice, args):
        result = cli("intents", "create", "alice", "bad", *args)

        assert result.exit_code == ExitCode.INVALID_ARGUMENT

    def test_enable_disable(self, cli, alice):
        cli("intents", "create", "alice", "nightly", "--cron", "0 3 * * *")

        result = cli("intents", "disable", "1")
        assert result.exit_code == 0
        assert "Intent 1 (nightly) disabled" in result.output

        result = cli("intents", "enable", "1")
        assert "Intent 1 (nightly) enabled" in result.output

    def test_disable_missing(self, cli):
        assert cli("intents", "disable", "99").exit_code == ExitCode.NOT_FOUND

    def test_check(self, cli, alice):
        cli("intents", "create", "alice", "nightly", "--cron", "0 3 * * *")

        result = cli("intents", "check")

        assert result.exit_code == 0
        assert "nightly" in result.output

    def test_run_and_history(self, cli, alice):
        cli("intents", "create", "alice", "nightly", "--cron", "0 3 * * *")

        result = cli("intents", "run", "1")

        assert result.exit_code == 0, result.output
        assert "Execution 1" in result.output
        assert "completed" in result.output

        history = cli("intents", "history", "1", "--json")
        assert history.exit_code == 0
        assert '"trigger_type": "manual"' in history.output
        assert '"status": "completed"' in history.output

    def test_run_missing(self, cli):
        assert cli("intents", "run", "99").exit_code == ExitCode.NOT_FOUND


class TestConfigCommands:
    """Tests for 'dockwatch config'."""

    def test_show_section(self, cli):
        result = cli("config", "show", "scheduler")

        assert result.exit_code == 0
        assert "check_interval" in result.output

    def test_show_json(self, cli):
        result = cli("config", "show", "--format", "json")

        assert result.exit_code == 0
        assert '"failure_cooldown": 60' in result.output

    def test_show_unknown_section(self, cli):
        assert cli("config", "show", "plugins").exit_code == ExitCode.INVALID_ARGUMENT

    def test_set(self, cli, db_config):
        result = cli("config", "set", "scheduler.check_interval", "15")

        assert result.exit_code == 0, result.output
        assert "check_interval = 15" in (db_config.config_dir / "config.toml").read_text()

    def test_set_invalid(self, cli):
        assert cli("config", "set", "scheduler", "15").exit_code == ExitCode.INVALID_ARGUMENT
        assert cli("config", "set", "scheduler.nope", "15").exit_code == ExitCode.INVALID_ARGUMENT

    def test_validate(self, cli):
        result = cli("config", "validate")

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_path(self, cli, db_config):
        result = cli("config", "path")

        assert result.exit_code == 0
        assert "config.toml" in result.output


class TestRunCommand:
    """Tests for 'dockwatch run'."""

    def test_run_starts_daemon_and_releases_pid(self, cli, db_config):
        with patch("dockwatch.daemon.service.run_daemon", new_callable=AsyncMock) as run_daemon:
            result = cli("run", "--no-discover")

        assert result.exit_code == 0, result.output
        run_daemon.assert_awaited_once()
        assert run_daemon.await_args.args[1] == {"discover": False}
        assert not (db_config.data_dir / "dockwatch.pid").exists()

    def test_run_refuses_second_instance(self, cli, db_config):
        db_config.data_dir.mkdir(parents=True, exist_ok=True)
        (db_config.data_dir / "dockwatch.pid").write_text("4242")

        with patch("dockwatch.daemon.pid.os.kill", return_value=None):
            result = cli("run")

        assert result.exit_code == ExitCode.ALREADY_RUNNING

    def test_status(self, cli, alice, repos):
        with repos() as r:
            user = r.users.get_by_username("alice")
            r.batch_runs.create(user.id, "scan", started_at=utcnow())

        result = cli("run", "status")

        assert result.exit_code == 0, result.output
        assert "Engine is not running" in result.output
        assert "Running jobs: 1" in result.output
