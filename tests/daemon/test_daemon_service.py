"""Tests for the daemon service."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dockwatch.daemon.service import DockwatchDaemon, run_daemon
from dockwatch.database.models import STATUS_COMPLETED


class TestDockwatchDaemon:
    """Tests for DockwatchDaemon class."""

    def test_daemon_initialization(self, db_config, make_handler):
        """Nothing is built until start."""
        daemon = DockwatchDaemon(db_config, handlers=[make_handler()], discover=False)

        assert daemon.is_running is False
        assert daemon.batch_manager is None
        assert daemon.scheduler is None
        assert daemon.intent_evaluator is None
        assert daemon.get_status() == {"running": False, "batch_manager": None}

    @pytest.mark.asyncio
    async def test_start_runs_due_jobs_and_stops(self, db_config, make_handler, user_id, repos):
        """Start wires the components and runs due jobs right away."""
        daemon = DockwatchDaemon(db_config, handlers=[make_handler("scan")], discover=False)

        await daemon.start()
        try:
            assert daemon.is_running is True
            assert daemon.batch_manager.is_started is True
            assert daemon.scheduler.is_running is True
            assert daemon.intent_evaluator.is_running is True
            assert daemon.batch_manager.get_registered_job_types() == ["scan"]
        finally:
            await daemon.stop()

        assert daemon.is_running is False
        assert daemon.scheduler.is_running is False
        assert daemon.intent_evaluator.is_running is False
        with repos() as r:
            [run] = r.batch_runs.get_history(user_id)
            assert run.status == STATUS_COMPLETED

    @pytest.mark.asyncio
    async def test_start_twice(self, db_config, make_handler):
        daemon = DockwatchDaemon(db_config, handlers=[make_handler()], discover=False)

        await daemon.start()
        manager = daemon.batch_manager
        try:
            await daemon.start()
            assert daemon.batch_manager is manager
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_scheduling_disabled(self, db_config, make_handler):
        """With scheduling disabled the pollers never start."""
        db_config.scheduler.enabled = False
        daemon = DockwatchDaemon(db_config, handlers=[make_handler()], discover=False)

        await daemon.start()
        try:
            assert daemon.is_running is True
            assert daemon.batch_manager.is_started is False
            assert daemon.scheduler.is_running is False
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_disabled_job_types_not_registered(self, db_config, make_handler):
        db_config.scheduler.disabled_job_types = ["cleanup"]
        daemon = DockwatchDaemon(
            db_config,
            handlers=[make_handler("scan"), make_handler("cleanup")],
            discover=False,
        )

        await daemon.start()
        try:
            assert daemon.batch_manager.get_registered_job_types() == ["scan"]
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_discovered_handlers_added(self, db_config, make_handler):
        """Discovered handlers are registered unless passed explicitly."""
        explicit = make_handler("scan")
        registry = MagicMock()
        registry.discover_all.return_value = {
            "scan": make_handler("scan", interval_minutes=5),
            "cleanup": make_handler("cleanup"),
        }

        daemon = DockwatchDaemon(db_config, handlers=[explicit])
        with patch("dockwatch.daemon.service.HandlerRegistry", return_value=registry):
            await daemon.start()
        try:
            manager = daemon.batch_manager
            assert sorted(manager.get_registered_job_types()) == ["cleanup", "scan"]
            assert manager.get_handler("scan") is explicit
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_stop_tolerates_manager_errors(self, db_config):
        daemon = DockwatchDaemon(db_config, discover=False)
        daemon._running = True
        daemon._batch_manager = MagicMock()
        daemon._batch_manager.stop = AsyncMock(side_effect=RuntimeError("boom"))

        await daemon.stop()

        assert daemon.is_running is False

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, db_config):
        """run_until_shutdown returns once shutdown is requested."""
        daemon = DockwatchDaemon(db_config, discover=False)

        async def delayed_shutdown():
            await asyncio.sleep(0.01)
            daemon.request_shutdown()

        await asyncio.wait_for(
            asyncio.gather(daemon.run_until_shutdown(), delayed_shutdown()),
            timeout=1,
        )


class TestRunDaemon:
    """Tests for run_daemon function."""

    @pytest.mark.asyncio
    async def test_run_daemon_starts_and_stops(self, db_config, make_handler):
        handler = make_handler()
        mock_daemon = AsyncMock()

        with patch("dockwatch.daemon.service.DockwatchDaemon", return_value=mock_daemon) as cls:
            await run_daemon(db_config, {"handlers": [handler], "discover": False})

        cls.assert_called_once_with(
            db_config, handlers=[handler], intent_executor=None, discover=False
        )
        mock_daemon.start.assert_awaited_once()
        mock_daemon.run_until_shutdown.assert_awaited_once()
        mock_daemon.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_daemon_stops_on_start_failure(self, db_config):
        mock_daemon = AsyncMock()
        mock_daemon.start.side_effect = RuntimeError("database unavailable")

        with patch("dockwatch.daemon.service.DockwatchDaemon", return_value=mock_daemon):
            with pytest.raises(RuntimeError):
                await run_daemon(db_config)

        mock_daemon.stop.assert_awaited_once()
