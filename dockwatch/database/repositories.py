"""Database repositories for dockwatch.

Provides high-level data access patterns for users, batch job
configuration, batch runs (including the persisted run lock), intents
and intent executions.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, ContextManager, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy import desc

from dockwatch.clock import utcnow
from dockwatch.config import MIN_INTERVAL_MINUTES, MAX_INTERVAL_MINUTES
from dockwatch.database.models import (
    BatchConfig,
    BatchRun,
    Intent,
    IntentExecution,
    User,
    SCHEDULE_SCHEDULED,
    SCHEDULE_IMMEDIATE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
)
from dockwatch.exceptions import PersistenceError, ValidationError


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


class UserRepository:
    """Repository for dashboard users."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, username: str) -> User:
        """
        Create a user.

        Args:
            username: Unique login name

        Returns:
            Created User instance
        """
        user = User(username=username, created_at=utcnow())
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.session.query(User).filter(User.id == user_id).first()

    def get_by_username(self, username: str) -> Optional[User]:
        return self.session.query(User).filter(User.username == username).first()

    def get_all(self) -> List[User]:
        return self.session.query(User).order_by(User.id).all()

    def get_all_ids(self) -> List[int]:
        """Get the ids of every user, in ascending order."""
        return [row[0] for row in self.session.query(User.id).order_by(User.id).all()]


class BatchConfigRepository:
    """
    Repository for per-user batch job configuration.

    Rows are read-only to the engine; they are written by the CLI.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int, job_type: str) -> Optional[BatchConfig]:
        """
        Get the configuration for one job type.

        Args:
            user_id: Owning user
            job_type: Job type identifier

        Returns:
            BatchConfig if configured, None otherwise
        """
        return self.session.query(BatchConfig).filter(
            BatchConfig.user_id == user_id,
            BatchConfig.job_type == job_type,
        ).first()

    def get_for_user(self, user_id: int) -> List[BatchConfig]:
        """Get every configured job type for a user."""
        return self.session.query(BatchConfig).filter(
            BatchConfig.user_id == user_id
        ).order_by(BatchConfig.job_type).all()

    def upsert(
        self,
        user_id: int,
        job_type: str,
        enabled: bool,
        interval_minutes: int,
    ) -> BatchConfig:
        """
        Create or update the configuration for one job type.

        Args:
            user_id: Owning user
            job_type: Job type identifier
            enabled: Whether the scheduler may run the job
            interval_minutes: Minutes between runs

        Returns:
            The stored BatchConfig

        Raises:
            ValidationError: If the interval is outside 1..1440 minutes
        """
        if not MIN_INTERVAL_MINUTES <= interval_minutes <= MAX_INTERVAL_MINUTES:
            raise ValidationError(
                f"Interval must be between {MIN_INTERVAL_MINUTES} and "
                f"{MAX_INTERVAL_MINUTES} minutes",
                details={"interval_minutes": interval_minutes},
            )

        config = self.get(user_id, job_type)
        if config is None:
            config = BatchConfig(user_id=user_id, job_type=job_type)
            self.session.add(config)
        config.enabled = enabled
        config.interval_minutes = interval_minutes
        self.session.commit()
        self.session.refresh(config)
        return config


class BatchRunRepository:
    """
    Repository for batch run records.

    A run with status ``running`` is the persisted lock for its
    (user, job type); ``get_running`` and ``fail_running`` operate on it.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        user_id: int,
        job_type: str,
        is_manual: bool = False,
        started_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> BatchRun:
        """
        Record the start of a run.

        Args:
            user_id: Owning user
            job_type: Job type identifier
            is_manual: True for user-initiated runs
            started_at: Start time (default: now)
            commit: Commit now, or only flush so the caller owns the transaction

        Returns:
            Created BatchRun in ``running`` state
        """
        run = BatchRun(
            user_id=user_id,
            job_type=job_type,
            status=STATUS_RUNNING,
            is_manual=is_manual,
            started_at=started_at or utcnow(),
        )
        self.session.add(run)
        if commit:
            self.session.commit()
            self.session.refresh(run)
        else:
            self.session.flush()
        return run

    def get_by_id(self, run_id: int) -> Optional[BatchRun]:
        return self.session.query(BatchRun).filter(BatchRun.id == run_id).first()

    def get_running(self, user_id: int, job_type: str) -> Optional[BatchRun]:
        """Get the oldest running run for a (user, job type), if any."""
        return self.session.query(BatchRun).filter(
            BatchRun.user_id == user_id,
            BatchRun.job_type == job_type,
            BatchRun.status == STATUS_RUNNING,
        ).order_by(BatchRun.started_at).first()

    def get_all_running(self) -> List[BatchRun]:
        return self.session.query(BatchRun).filter(
            BatchRun.status == STATUS_RUNNING
        ).order_by(BatchRun.started_at).all()

    def get_latest_completed(self, user_id: int, job_type: str) -> Optional[BatchRun]:
        """
        Get the most recent successfully completed run.

        Args:
            user_id: Owning user
            job_type: Job type identifier

        Returns:
            Latest completed BatchRun, or None if the job never completed
        """
        return self.session.query(BatchRun).filter(
            BatchRun.user_id == user_id,
            BatchRun.job_type == job_type,
            BatchRun.status == STATUS_COMPLETED,
            BatchRun.completed_at.isnot(None),
        ).order_by(desc(BatchRun.completed_at)).first()

    def get_history(
        self,
        user_id: Optional[int] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
    ) -> List[BatchRun]:
        """
        Get recent runs, newest first.

        Args:
            user_id: Restrict to one user
            job_type: Restrict to one job type
            limit: Maximum number of runs

        Returns:
            List of runs ordered by start time descending
        """
        query = self.session.query(BatchRun)
        if user_id is not None:
            query = query.filter(BatchRun.user_id == user_id)
        if job_type is not None:
            query = query.filter(BatchRun.job_type == job_type)
        return query.order_by(desc(BatchRun.started_at), desc(BatchRun.id)).limit(limit).all()

    def finish(
        self,
        run_id: int,
        status: str,
        items_checked: int = 0,
        items_updated: int = 0,
        error_message: Optional[str] = None,
        logs: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Optional[BatchRun]:
        """
        Move a run to a terminal state.

        Args:
            run_id: Run to update
            status: ``completed`` or ``failed``
            items_checked: Items examined by the handler
            items_updated: Items the handler found updates for
            error_message: Failure reason or partial-success note
            logs: Rendered run transcript
            completed_at: Completion time (default: now)

        Returns:
            Updated BatchRun, or None if it does not exist
        """
        run = self.get_by_id(run_id)
        if run is None:
            return None

        completed_at = completed_at or utcnow()
        run.status = status
        run.completed_at = completed_at
        run.duration_ms = _duration_ms(run.started_at, completed_at)
        run.items_checked = items_checked
        run.items_updated = items_updated
        run.error_message = error_message
        if logs is not None:
            run.logs = logs
        self.session.commit()
        self.session.refresh(run)
        return run

    def fail_running(
        self,
        message: str,
        started_before: Optional[datetime] = None,
        user_id: Optional[int] = None,
        job_type: Optional[str] = None,
        commit: bool = True,
    ) -> List[BatchRun]:
        """
        Force running runs to ``failed``.

        Used by the crash-recovery sweep and by stale-lock takeover.

        Args:
            message: Error message stored on each run
            started_before: Only fail runs started before this time
            user_id: Restrict to one user
            job_type: Restrict to one job type
            commit: Commit now, or only flush so the caller owns the transaction

        Returns:
            The runs that were failed
        """
        query = self.session.query(BatchRun).filter(BatchRun.status == STATUS_RUNNING)
        if started_before is not None:
            query = query.filter(BatchRun.started_at < started_before)
        if user_id is not None:
            query = query.filter(BatchRun.user_id == user_id)
        if job_type is not None:
            query = query.filter(BatchRun.job_type == job_type)

        now = utcnow()
        runs = query.all()
        for run in runs:
            run.status = STATUS_FAILED
            run.completed_at = now
            run.duration_ms = _duration_ms(run.started_at, now)
            run.error_message = f"{message}. Original start: {run.started_at.isoformat()}"
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        return runs


class IntentRepository:
    """Repository for auto-upgrade intents."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        user_id: int,
        name: str,
        schedule_type: str = SCHEDULE_SCHEDULED,
        schedule_cron: Optional[str] = None,
        dry_run: bool = False,
        enabled: bool = True,
        created_at: Optional[datetime] = None,
    ) -> Intent:
        """
        Create an intent.

        ``last_evaluated_at`` starts at the creation time, so a new
        scheduled intent waits for the first cron boundary after it was
        created.

        Args:
            user_id: Owning user
            name: Human-readable name
            schedule_type: ``scheduled`` or ``immediate``
            schedule_cron: Cron expression, required for scheduled intents
            dry_run: Record matches without upgrading
            enabled: Whether the intent is evaluated
            created_at: Creation time (default: now)

        Returns:
            Created Intent

        Raises:
            ValidationError: On an unknown schedule type or a missing cron
        """
        if schedule_type not in (SCHEDULE_SCHEDULED, SCHEDULE_IMMEDIATE):
            raise ValidationError(f"Unknown schedule type: {schedule_type}")
        if schedule_type == SCHEDULE_SCHEDULED and not schedule_cron:
            raise ValidationError("Scheduled intents require a cron expression")

        created_at = created_at or utcnow()
        intent = Intent(
            user_id=user_id,
            name=name,
            schedule_type=schedule_type,
            schedule_cron=schedule_cron if schedule_type == SCHEDULE_SCHEDULED else None,
            dry_run=dry_run,
            enabled=enabled,
            last_evaluated_at=created_at,
            created_at=created_at,
            updated_at=created_at,
        )
        self.session.add(intent)
        self.session.commit()
        self.session.refresh(intent)
        return intent

    def get_by_id(self, intent_id: int) -> Optional[Intent]:
        return self.session.query(Intent).filter(Intent.id == intent_id).first()

    def get_all(self, user_id: Optional[int] = None) -> List[Intent]:
        query = self.session.query(Intent)
        if user_id is not None:
            query = query.filter(Intent.user_id == user_id)
        return query.order_by(Intent.id).all()

    def get_enabled(self, user_id: int, schedule_type: Optional[str] = None) -> List[Intent]:
        """
        Get a user's enabled intents.

        Args:
            user_id: Owning user
            schedule_type: Restrict to ``scheduled`` or ``immediate``

        Returns:
            Enabled intents ordered by id
        """
        query = self.session.query(Intent).filter(
            Intent.user_id == user_id,
            Intent.enabled.is_(True),
        )
        if schedule_type is not None:
            query = query.filter(Intent.schedule_type == schedule_type)
        return query.order_by(Intent.id).all()

    def set_enabled(
        self,
        intent_id: int,
        enabled: bool,
        now: Optional[datetime] = None,
    ) -> Optional[Intent]:
        """
        Enable or disable an intent.

        Re-enabling a scheduled intent moves ``last_evaluated_at`` to now,
        so cron boundaries missed while it was disabled never fire.

        Returns:
            Updated Intent, or None if it does not exist
        """
        intent = self.get_by_id(intent_id)
        if intent is None:
            return None
        now = now or utcnow()
        if enabled and not intent.enabled and intent.schedule_type == SCHEDULE_SCHEDULED:
            intent.last_evaluated_at = now
        intent.enabled = enabled
        intent.updated_at = now
        self.session.commit()
        self.session.refresh(intent)
        return intent

    def update_last_evaluated(
        self,
        intent_id: int,
        evaluated_at: datetime,
        execution_id: Optional[int] = None,
    ) -> Optional[Intent]:
        """
        Record that evaluation has consumed the schedule up to a boundary.

        Args:
            intent_id: Intent to update
            evaluated_at: Consumed cron boundary
            execution_id: Execution created for the boundary, if any

        Returns:
            Updated Intent, or None if it does not exist
        """
        intent = self.get_by_id(intent_id)
        if intent is None:
            return None
        intent.last_evaluated_at = evaluated_at
        if execution_id is not None:
            intent.last_execution_id = execution_id
        self.session.commit()
        self.session.refresh(intent)
        return intent


class IntentExecutionRepository:
    """Repository for intent execution history."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        intent_id: int,
        user_id: int,
        trigger_type: str,
        started_at: Optional[datetime] = None,
    ) -> IntentExecution:
        """Record the start of an intent execution."""
        execution = IntentExecution(
            intent_id=intent_id,
            user_id=user_id,
            trigger_type=trigger_type,
            status=STATUS_RUNNING,
            started_at=started_at or utcnow(),
        )
        self.session.add(execution)
        self.session.commit()
        self.session.refresh(execution)
        return execution

    def get_by_id(self, execution_id: int) -> Optional[IntentExecution]:
        return self.session.query(IntentExecution).filter(
            IntentExecution.id == execution_id
        ).first()

    def get_history(self, intent_id: Optional[int] = None, limit: int = 20) -> List[IntentExecution]:
        query = self.session.query(IntentExecution)
        if intent_id is not None:
            query = query.filter(IntentExecution.intent_id == intent_id)
        return query.order_by(
            desc(IntentExecution.started_at), desc(IntentExecution.id)
        ).limit(limit).all()

    def finish(
        self,
        execution_id: int,
        status: str,
        containers_matched: int = 0,
        containers_upgraded: int = 0,
        containers_failed: int = 0,
        containers_skipped: int = 0,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Optional[IntentExecution]:
        """
        Move an execution to a terminal state.

        Returns:
            Updated IntentExecution, or None if it does not exist
        """
        execution = self.get_by_id(execution_id)
        if execution is None:
            return None

        completed_at = completed_at or utcnow()
        execution.status = status
        execution.containers_matched = containers_matched
        execution.containers_upgraded = containers_upgraded
        execution.containers_failed = containers_failed
        execution.containers_skipped = containers_skipped
        execution.error_message = error_message
        execution.completed_at = completed_at
        execution.duration_ms = _duration_ms(execution.started_at, completed_at)
        self.session.commit()
        self.session.refresh(execution)
        return execution

    def fail_running(self, message: str) -> int:
        """
        Force every running execution to ``failed``.

        Args:
            message: Error message stored on each execution

        Returns:
            Number of executions failed
        """
        now = utcnow()
        executions = self.session.query(IntentExecution).filter(
            IntentExecution.status == STATUS_RUNNING
        ).all()
        for execution in executions:
            execution.status = STATUS_FAILED
            execution.error_message = message
            execution.completed_at = now
            execution.duration_ms = _duration_ms(execution.started_at, now)
        self.session.commit()
        return len(executions)


class RepositoryFactory:
    """
    Factory for creating repository instances.

    Usage:
        with get_db_session() as session:
            repos = RepositoryFactory(session)
            runs = repos.batch_runs.get_history(limit=10)
    """

    def __init__(self, session: Session):
        self.session = session
        self._users: Optional[UserRepository] = None
        self._batch_configs: Optional[BatchConfigRepository] = None
        self._batch_runs: Optional[BatchRunRepository] = None
        self._intents: Optional[IntentRepository] = None
        self._intent_executions: Optional[IntentExecutionRepository] = None

    @property
    def users(self) -> UserRepository:
        if self._users is None:
            self._users = UserRepository(self.session)
        return self._users

    @property
    def batch_configs(self) -> BatchConfigRepository:
        if self._batch_configs is None:
            self._batch_configs = BatchConfigRepository(self.session)
        return self._batch_configs

    @property
    def batch_runs(self) -> BatchRunRepository:
        if self._batch_runs is None:
            self._batch_runs = BatchRunRepository(self.session)
        return self._batch_runs

    @property
    def intents(self) -> IntentRepository:
        if self._intents is None:
            self._intents = IntentRepository(self.session)
        return self._intents

    @property
    def intent_executions(self) -> IntentExecutionRepository:
        if self._intent_executions is None:
            self._intent_executions = IntentExecutionRepository(self.session)
        return self._intent_executions


@contextmanager
def repository_scope(
    session_factory: Callable[[], ContextManager[Session]],
    action: str,
) -> Iterator[RepositoryFactory]:
    """
    Open a session and yield a RepositoryFactory bound to it.

    Any SQLAlchemy error raised inside the block, or while committing,
    is re-raised as PersistenceError.

    Args:
        session_factory: Context manager factory yielding a Session
        action: Short description used in the error message

    Raises:
        PersistenceError: On any database failure
    """
    try:
        with session_factory() as session:
            yield RepositoryFactory(session)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to {action}: {e}") from e
