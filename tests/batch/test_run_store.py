"""Tests for the batch run store."""

from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from dockwatch.batch.handler import JobResult
from dockwatch.batch.store import INTERRUPTED_MESSAGE, RunStore
from dockwatch.database.models import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING
from dockwatch.database.repositories import BatchRunRepository
from dockwatch.exceptions import LockConflictError, PersistenceError

NOW = datetime(2024, 1, 15, 10, 0, 0)


@pytest.fixture
def store(db_config):
    return RunStore()


class TestJobConfigs:
    """Tests for per-user job configuration reads."""

    def test_unset_config(self, store, user_id):
        assert store.get_job_config(user_id, "scan") is None
        assert store.get_job_configs(user_id) == {}

    def test_stored_configs(self, store, user_id, repos):
        with repos() as r:
            r.batch_configs.upsert(user_id, "scan", enabled=True, interval_minutes=30)
            r.batch_configs.upsert(user_id, "cleanup", enabled=False, interval_minutes=1440)

        configs = store.get_job_configs(user_id)

        assert configs["scan"].enabled is True
        assert configs["scan"].interval_minutes == 30
        assert configs["cleanup"].enabled is False
        assert store.get_job_config(user_id, "scan") == configs["scan"]


class TestRunRecords:
    """Tests for creating and finishing runs."""

    def test_complete_and_latest(self, store, user_id, repos):
        run_id = store.create_run(user_id, "scan", started_at=NOW)
        store.complete_run(
            run_id,
            JobResult(items_checked=4, items_updated=1),
            logs="line",
            completed_at=NOW + timedelta(seconds=90),
        )

        with repos() as r:
            run = r.batch_runs.get_by_id(run_id)
            assert run.status == STATUS_COMPLETED
            assert run.duration_ms == 90_000
            assert run.logs == "line"
        assert store.get_latest_completed_time(user_id, "scan") == NOW + timedelta(seconds=90)

    def test_failed_runs_are_not_latest(self, store, user_id):
        run_id = store.create_run(user_id, "scan", started_at=NOW)
        store.fail_run(run_id, "boom", completed_at=NOW + timedelta(seconds=1))

        assert store.get_latest_completed_time(user_id, "scan") is None

    def test_partial_note(self, store, user_id, repos):
        run_id = store.create_run(user_id, "scan", started_at=NOW)
        store.complete_run(run_id, JobResult(partial=True), completed_at=NOW)

        with repos() as r:
            assert r.batch_runs.get_by_id(run_id).error_message == "Completed with partial results"


class TestLock:
    """Tests for the persisted run lock."""

    def test_free(self, store, user_id, repos):
        run_id = store.acquire_run(user_id, "scan", timedelta(minutes=60), now=NOW, is_manual=True)

        with repos() as r:
            run = r.batch_runs.get_by_id(run_id)
            assert run.status == STATUS_RUNNING
            assert run.started_at == NOW
            assert run.is_manual is True

    def test_held(self, store, user_id):
        run_id = store.create_run(user_id, "scan", started_at=NOW - timedelta(minutes=59))

        with pytest.raises(LockConflictError) as exc_info:
            store.acquire_run(user_id, "scan", timedelta(minutes=60), now=NOW)
        assert exc_info.value.run_id == run_id

    def test_second_store_conflicts(self, db_config, user_id):
        """Two stores on one database never both hold the lock."""
        first = RunStore().acquire_run(user_id, "scan", timedelta(minutes=60), now=NOW)

        with pytest.raises(LockConflictError) as exc_info:
            RunStore().acquire_run(user_id, "scan", timedelta(minutes=60), now=NOW)
        assert exc_info.value.run_id == first

    def test_insert_racing_another_process_conflicts(self, store, user_id, repos, monkeypatch):
        """A run inserted after the check but before the insert wins the lock."""
        holder = store.create_run(user_id, "scan", started_at=NOW)
        real_get_running = BatchRunRepository.get_running
        calls = []

        def get_running_after_race(self, uid, job_type):
            calls.append(job_type)
            if len(calls) == 1:
                return None
            return real_get_running(self, uid, job_type)

        monkeypatch.setattr(BatchRunRepository, "get_running", get_running_after_race)

        with pytest.raises(LockConflictError) as exc_info:
            store.acquire_run(user_id, "scan", timedelta(minutes=60), now=NOW)

        assert exc_info.value.run_id == holder
        monkeypatch.setattr(BatchRunRepository, "get_running", real_get_running)
        with repos() as r:
            assert [run.id for run in r.batch_runs.get_all_running()] == [holder]

    def test_stale_taken_over(self, store, user_id, repos):
        stale = store.create_run(user_id, "scan", started_at=NOW - timedelta(minutes=61))

        run_id = store.acquire_run(user_id, "scan", timedelta(minutes=60), now=NOW)

        with repos() as r:
            assert r.batch_runs.get_by_id(stale).status == STATUS_FAILED
            assert [run.id for run in r.batch_runs.get_all_running()] == [run_id]

    def test_stale_kept_without_takeover(self, store, user_id, repos):
        run_id = store.create_run(user_id, "scan", started_at=NOW - timedelta(hours=5))

        with pytest.raises(LockConflictError) as exc_info:
            store.acquire_run(
                user_id, "scan", timedelta(minutes=60), now=NOW, allow_takeover=False
            )

        assert exc_info.value.run_id == run_id
        with repos() as r:
            assert r.batch_runs.get_by_id(run_id).status == STATUS_RUNNING


class TestSweep:
    """Tests for the crash-recovery sweep."""

    def test_sweep_running(self, store, user_id, repos):
        running = store.create_run(user_id, "scan", started_at=NOW)
        done = store.create_run(user_id, "cleanup", started_at=NOW)
        store.complete_run(done, JobResult(), completed_at=NOW)

        swept = store.sweep_running_runs()

        assert [(ref.run_id, ref.user_id, ref.job_type) for ref in swept] == [(running, user_id, "scan")]
        with repos() as r:
            run = r.batch_runs.get_by_id(running)
            assert run.status == STATUS_FAILED
            assert run.error_message == f"{INTERRUPTED_MESSAGE}. Original start: {NOW.isoformat()}"
            assert r.batch_runs.get_by_id(done).status == STATUS_COMPLETED

    def test_database_error_becomes_persistence_error(self):
        @contextmanager
        def broken_session():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            yield

        store = RunStore(session_factory=broken_session)

        with pytest.raises(PersistenceError, match="Failed to sweep running batch runs"):
            store.sweep_running_runs()
