"""Tests for the interval scheduler."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from dockwatch.batch.handler import JobResult
from dockwatch.batch.manager import BatchManager
from dockwatch.batch.scheduler import Scheduler
from dockwatch.batch.store import RunStore
from dockwatch.config import SchedulerConfig
from dockwatch.database.models import STATUS_COMPLETED
from dockwatch.exceptions import LockConflictError


@pytest.fixture
def manager(db_config, clock):
    return BatchManager(RunStore(), config=SchedulerConfig(), clock=clock)


@pytest.fixture
def scheduler(manager, clock):
    scheduler = Scheduler(manager, config=SchedulerConfig(failure_cooldown=60), clock=clock)
    manager.set_scheduler(scheduler)
    return scheduler


async def drain(scheduler):
    """Wait for every job the scheduler dispatched."""
    await asyncio.gather(*list(scheduler._tasks), return_exceptions=True)


class TestIsDue:
    """Tests for interval due-ness."""

    def test_never_run_is_due(self, scheduler, clock):
        """A pair with no recorded run is due immediately."""
        assert scheduler.is_due(1, "scan", 60, clock.now) is True
        assert scheduler.get_next_due_time(1, "scan", 60) is None

    def test_due_exactly_at_interval(self, scheduler):
        """Not due before t0 + interval, due from t0 + interval on."""
        t0 = datetime(2024, 1, 15, 10, 0, 0)
        scheduler.update_last_run_time(1, "scan", t0)

        assert scheduler.is_due(1, "scan", 60, t0) is False
        assert scheduler.is_due(1, "scan", 60, t0 + timedelta(minutes=30)) is False
        assert scheduler.is_due(1, "scan", 60, t0 + timedelta(minutes=59, seconds=59)) is False
        assert scheduler.is_due(1, "scan", 60, t0 + timedelta(minutes=60)) is True
        assert scheduler.is_due(1, "scan", 60, t0 + timedelta(hours=5)) is True
        assert scheduler.get_next_due_time(1, "scan", 60) == t0 + timedelta(minutes=60)

    def test_pairs_are_independent(self, scheduler):
        """Last-run times are tracked per (user, job type)."""
        t0 = datetime(2024, 1, 15, 10, 0, 0)
        scheduler.update_last_run_time(1, "scan", t0)

        assert scheduler.is_due(2, "scan", 60, t0) is True
        assert scheduler.is_due(1, "cleanup", 60, t0) is True


class TestInitialize:
    """Tests for loading last-run times from the run store."""

    def test_loads_latest_completed_runs(self, scheduler, manager, make_handler, user_id, repos):
        """The most recent completed run of each pair seeds the cache."""
        manager.register_handler(make_handler("scan"))
        older = datetime(2024, 1, 15, 8, 0, 0)
        newer = datetime(2024, 1, 15, 9, 30, 0)
        with repos() as r:
            for completed_at in (older, newer):
                run = r.batch_runs.create(
                    user_id, "scan", started_at=completed_at - timedelta(minutes=1)
                )
                r.batch_runs.finish(run.id, STATUS_COMPLETED, completed_at=completed_at)
            # Still running, ignored
            r.batch_runs.create(user_id, "scan", started_at=datetime(2024, 1, 15, 9, 55, 0))

        scheduler.initialize()

        assert scheduler.get_last_run_time(user_id, "scan") == newer

    def test_never_completed_is_absent(self, scheduler, manager, make_handler, user_id):
        """Pairs with no completed run stay unset."""
        manager.register_handler(make_handler("scan"))

        scheduler.initialize()

        assert scheduler.get_last_run_time(user_id, "scan") is None


class TestCheckAndSchedule:
    """Tests for the poll that dispatches due jobs."""

    @pytest.mark.asyncio
    async def test_dispatches_enabled_due_job(self, scheduler, manager, make_handler, user_id, repos):
        """An enabled job that never ran is dispatched."""
        manager.register_handler(make_handler("scan"))
        with repos() as r:
            r.batch_configs.upsert(user_id, "scan", enabled=True, interval_minutes=30)

        dispatched = scheduler.check_and_schedule_jobs()
        await drain(scheduler)

        assert dispatched == [(user_id, "scan")]
        with repos() as r:
            [run] = r.batch_runs.get_history(user_id)
            assert run.status == STATUS_COMPLETED
            assert run.is_manual is False

    @pytest.mark.asyncio
    async def test_skips_disabled_config(self, scheduler, manager, make_handler, user_id, repos):
        """A stored disabled config overrides an enabled default."""
        manager.register_handler(make_handler("scan", enabled=True))
        with repos() as r:
            r.batch_configs.upsert(user_id, "scan", enabled=False, interval_minutes=30)

        assert scheduler.check_and_schedule_jobs() == []

    @pytest.mark.asyncio
    async def test_uses_default_config(self, scheduler, manager, make_handler, user_id):
        """Without a stored config the handler's default decides."""
        manager.register_handler(make_handler("scan", enabled=True))
        manager.register_handler(make_handler("cleanup", enabled=False))

        dispatched = scheduler.check_and_schedule_jobs()
        await drain(scheduler)

        assert dispatched == [(user_id, "scan")]

    @pytest.mark.asyncio
    async def test_skips_running_job(self, scheduler, manager, make_handler, user_id):
        """A pair that is already running is not dispatched again."""
        release = asyncio.Event()

        async def slow(context):
            await release.wait()

        manager.register_handler(make_handler("scan", execute=slow))
        assert scheduler.check_and_schedule_jobs() == [(user_id, "scan")]
        await asyncio.sleep(0)
        assert manager.is_running(user_id, "scan")

        assert scheduler.check_and_schedule_jobs() == []

        release.set()
        await drain(scheduler)

    @pytest.mark.asyncio
    async def test_skips_not_due(self, scheduler, manager, make_handler, user_id, clock):
        """A job inside its interval is not dispatched."""
        manager.register_handler(make_handler("scan", interval_minutes=60))
        scheduler.update_last_run_time(user_id, "scan", clock.now - timedelta(minutes=10))

        assert scheduler.check_and_schedule_jobs() == []

    def test_no_handlers(self, scheduler, user_id):
        """Nothing is dispatched when no job types are registered."""
        assert scheduler.check_and_schedule_jobs() == []


class TestFailureCooldown:
    """Tests for retry timing after a failed run."""

    @pytest.mark.asyncio
    async def test_failed_job_due_after_cooldown(self, scheduler, manager, make_handler, user_id, clock):
        """A failed job becomes due again failure_cooldown seconds later."""
        async def broken(context):
            raise RuntimeError("registry unreachable")

        manager.register_handler(make_handler("scan", execute=broken, interval_minutes=60))

        with pytest.raises(RuntimeError):
            await scheduler.run_job(user_id, "scan", 60)

        assert scheduler.get_next_due_time(user_id, "scan", 60) == clock.now + timedelta(seconds=60)
        assert scheduler.is_due(user_id, "scan", 60, clock.now + timedelta(seconds=59)) is False
        assert scheduler.is_due(user_id, "scan", 60, clock.now + timedelta(seconds=60)) is True

    @pytest.mark.asyncio
    async def test_lock_conflict_is_not_a_failure(self, clock):
        """A lock conflict leaves the last-run time untouched."""
        manager = MagicMock()
        manager.execute_job = AsyncMock(side_effect=LockConflictError("busy", run_id=3))
        scheduler = Scheduler(manager, store=MagicMock(), clock=clock)
        t0 = clock.now - timedelta(minutes=90)
        scheduler.update_last_run_time(1, "scan", t0)

        assert await scheduler.run_job(1, "scan", 60) is None
        assert scheduler.get_last_run_time(1, "scan") == t0

    @pytest.mark.asyncio
    async def test_hourly_job_failure_and_recovery(self, scheduler, manager, make_handler, user_id, clock):
        """Walk an hourly job through a failure, its retry and the next interval."""
        attempts = []

        async def flaky(context):
            attempts.append(clock.now)
            if len(attempts) == 1:
                raise RuntimeError("registry unreachable")
            return JobResult(items_checked=1)

        manager.register_handler(make_handler("scan", execute=flaky, interval_minutes=60))
        scheduler.update_last_run_time(user_id, "scan", datetime(2024, 1, 15, 10, 0))

        clock.set(datetime(2024, 1, 15, 10, 59))
        assert scheduler.check_and_schedule_jobs() == []

        clock.set(datetime(2024, 1, 15, 11, 0))
        assert scheduler.check_and_schedule_jobs() == [(user_id, "scan")]
        await drain(scheduler)
        assert len(attempts) == 1
        assert scheduler.get_next_due_time(user_id, "scan", 60) == datetime(2024, 1, 15, 11, 1)

        clock.set(datetime(2024, 1, 15, 11, 0, 30))
        assert scheduler.check_and_schedule_jobs() == []

        clock.set(datetime(2024, 1, 15, 11, 1))
        assert scheduler.check_and_schedule_jobs() == [(user_id, "scan")]
        await drain(scheduler)
        assert len(attempts) == 2
        assert scheduler.get_last_run_time(user_id, "scan") == datetime(2024, 1, 15, 11, 1)

        clock.set(datetime(2024, 1, 15, 11, 59))
        assert scheduler.check_and_schedule_jobs() == []

        clock.set(datetime(2024, 1, 15, 12, 1))
        assert scheduler.is_due(user_id, "scan", 60) is True


class TestLifecycle:
    """Tests for starting and stopping the poll."""

    @pytest.mark.asyncio
    async def test_start_runs_immediate_check(self, scheduler, manager, make_handler, user_id):
        """Start dispatches due jobs without waiting for the first interval."""
        manager.register_handler(make_handler("scan"))

        await scheduler.start()
        try:
            assert scheduler.is_running is True
            status = scheduler.get_status()
            assert status["running"] is True
            assert status["next_check"] is not None
            await drain(scheduler)
            assert scheduler.get_last_run_time(user_id, "scan") is not None
        finally:
            await scheduler.stop()

        assert scheduler.is_running is False
        assert scheduler.get_status()["next_check"] is None

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, scheduler):
        """Stopping an idle scheduler is a no-op."""
        await scheduler.stop()
        assert scheduler.is_running is False
