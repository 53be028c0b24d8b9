"""Persisted run-record store for batch jobs.

Wraps the SQLAlchemy repositories behind the operations the batch
manager and scheduler need. Every database failure surfaces as
:class:`~dockwatch.exceptions.PersistenceError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, ContextManager, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dockwatch.batch.handler import BatchJobConfig, JobResult
from dockwatch.clock import utcnow
from dockwatch.database.connection import get_db_session
from dockwatch.database.models import STATUS_COMPLETED, STATUS_FAILED
from dockwatch.database.repositories import RepositoryFactory, repository_scope
from dockwatch.exceptions import LockConflictError

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Job was interrupted (server restart detected)"
STALE_MESSAGE = "Job exceeded the stale run threshold and was taken over"

SessionFactory = Callable[[], ContextManager[Session]]


def _conflict(user_id: int, job_type: str, run_id: Optional[int]) -> LockConflictError:
    return LockConflictError(
        f"Job '{job_type}' is already running for user {user_id}",
        run_id=run_id,
    )


@dataclass
class RunRef:
    """Identifies a run touched by a sweep."""
    run_id: int
    user_id: int
    job_type: str


class RunStore:
    """Batch run records, the persisted run lock and per-user job config."""

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self._session_factory = session_factory or get_db_session

    def _repos(self, action: str) -> ContextManager[RepositoryFactory]:
        return repository_scope(self._session_factory, action)

    def get_user_ids(self) -> List[int]:
        with self._repos("load users") as repos:
            return repos.users.get_all_ids()

    def get_job_config(self, user_id: int, job_type: str) -> Optional[BatchJobConfig]:
        """Get a user's stored config for a job type, or None if unset."""
        with self._repos("load batch config") as repos:
            row = repos.batch_configs.get(user_id, job_type)
            if row is None:
                return None
            return BatchJobConfig(enabled=row.enabled, interval_minutes=row.interval_minutes)

    def get_job_configs(self, user_id: int) -> Dict[str, BatchJobConfig]:
        """Get every stored config for a user, keyed by job type."""
        with self._repos("load batch config") as repos:
            return {
                row.job_type: BatchJobConfig(
                    enabled=row.enabled, interval_minutes=row.interval_minutes
                )
                for row in repos.batch_configs.get_for_user(user_id)
            }

    def create_run(
        self,
        user_id: int,
        job_type: str,
        is_manual: bool = False,
        started_at: Optional[datetime] = None,
    ) -> int:
        """Create a BatchRun in ``running`` state and return its id."""
        with self._repos("create batch run") as repos:
            return repos.batch_runs.create(
                user_id, job_type, is_manual=is_manual, started_at=started_at
            ).id

    def complete_run(
        self,
        run_id: int,
        result: JobResult,
        logs: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        """Mark a run completed, storing a partial-success note if any."""
        note = None
        if result.partial:
            note = result.message or "Completed with partial results"
        with self._repos("complete batch run") as repos:
            repos.batch_runs.finish(
                run_id,
                STATUS_COMPLETED,
                items_checked=result.items_checked,
                items_updated=result.items_updated,
                error_message=note,
                logs=logs,
                completed_at=completed_at,
            )

    def fail_run(
        self,
        run_id: int,
        error_message: str,
        items_checked: int = 0,
        items_updated: int = 0,
        logs: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        with self._repos("fail batch run") as repos:
            repos.batch_runs.finish(
                run_id,
                STATUS_FAILED,
                items_checked=items_checked,
                items_updated=items_updated,
                error_message=error_message,
                logs=logs,
                completed_at=completed_at,
            )

    def get_latest_completed_time(self, user_id: int, job_type: str) -> Optional[datetime]:
        """Completion time of the most recent completed run, or None."""
        with self._repos("load last completed run") as repos:
            run = repos.batch_runs.get_latest_completed(user_id, job_type)
            return run.completed_at if run else None

    def acquire_run(
        self,
        user_id: int,
        job_type: str,
        stale_after: timedelta,
        now: Optional[datetime] = None,
        is_manual: bool = False,
        allow_takeover: bool = True,
    ) -> int:
        """Take the persisted lock for a (user, job type) by creating its run.

        The check, any stale takeover and the insert share one
        transaction. The partial unique index on running runs rejects an
        insert that raced with another process, which is reported as a
        conflict.

        A running run older than ``stale_after`` is taken to belong to a
        process that no longer exists: it is marked failed and replaced,
        unless ``allow_takeover`` is False.

        Returns:
            Id of the new BatchRun in ``running`` state

        Raises:
            LockConflictError: If a live run holds the lock
            PersistenceError: If the run store is unavailable
        """
        now = now or utcnow()
        with self._repos("acquire batch run lock") as repos:
            running = repos.batch_runs.get_running(user_id, job_type)
            if running is not None:
                if not (allow_takeover and running.started_at < now - stale_after):
                    raise _conflict(user_id, job_type, running.id)
                logger.warning(
                    f"Taking over stale run {running.id} for user {user_id} "
                    f"job {job_type} (started {running.started_at.isoformat()})"
                )
                repos.batch_runs.fail_running(
                    STALE_MESSAGE,
                    started_before=now - stale_after,
                    user_id=user_id,
                    job_type=job_type,
                    commit=False,
                )

            try:
                run = repos.batch_runs.create(
                    user_id, job_type, is_manual=is_manual, started_at=now, commit=False
                )
                repos.session.commit()
            except IntegrityError:
                repos.session.rollback()
                holder = repos.batch_runs.get_running(user_id, job_type)
                raise _conflict(user_id, job_type, holder.id if holder else None)
            return run.id

    def sweep_running_runs(self, message: str = INTERRUPTED_MESSAGE) -> List[RunRef]:
        """Fail every run left ``running`` by a previous process."""
        with self._repos("sweep running batch runs") as repos:
            return [
                RunRef(run_id=run.id, user_id=run.user_id, job_type=run.job_type)
                for run in repos.batch_runs.fail_running(message)
            ]
