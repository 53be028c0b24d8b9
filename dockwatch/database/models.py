"""
SQLAlchemy models for the dockwatch database.

Tables:
- users: accounts whose jobs and intents the engine evaluates
- batch_config: per-user schedule for each batch job type
- batch_runs: one row per job execution; a ``running`` row is the durable lock
- intents: auto-upgrade rules, either cron scheduled or scan triggered
- intent_executions: one row per intent dispatch
"""

from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import (
    Integer,
    String,
    Boolean,
    ForeignKey,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base

from dockwatch.clock import utcnow

# Create base class for all models
Base = declarative_base()

# Run and execution statuses
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PARTIAL = "partial"  # intent executions only

# Intent schedule types
SCHEDULE_SCHEDULED = "scheduled"
SCHEDULE_IMMEDIATE = "immediate"

# Intent trigger types
TRIGGER_SCHEDULED_WINDOW = "scheduled_window"
TRIGGER_SCAN_DETECTED = "scan_detected"
TRIGGER_MANUAL = "manual"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class User(Base):
    """A dashboard account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert user to dictionary representation."""
        return {
            "id": self.id,
            "username": self.username,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"


class BatchConfig(Base):
    """
    Per-user schedule for one batch job type.

    When no row exists for a (user, job type) the handler's default
    configuration applies.
    """

    __tablename__ = "batch_config"
    __table_args__ = (
        UniqueConstraint("user_id", "job_type", name="uq_batch_config_user_job"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    interval_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert batch config to dictionary representation."""
        return {
            "user_id": self.user_id,
            "job_type": self.job_type,
            "enabled": self.enabled,
            "interval_minutes": self.interval_minutes,
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"<BatchConfig(user_id={self.user_id}, job_type='{self.job_type}', "
            f"enabled={self.enabled}, interval={self.interval_minutes}m)>"
        )


class BatchRun(Base):
    """
    One execution of a batch job for a user.

    Lifecycle: running -> completed | failed. A run in ``running`` state is
    the persisted lock for its (user, job type).
    """

    __tablename__ = "batch_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=STATUS_RUNNING, nullable=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    items_checked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logs: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_batch_runs_user_job_status", "user_id", "job_type", "status"),
        # At most one running run per (user, job type), across processes
        Index(
            "uq_batch_runs_running",
            "user_id",
            "job_type",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
        Index("idx_batch_runs_started", "started_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "job_type": self.job_type,
            "status": self.status,
            "is_manual": self.is_manual,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "items_checked": self.items_checked,
            "items_updated": self.items_updated,
            "error_message": self.error_message,
        }

    def __repr__(self) -> str:
        return (
            f"<BatchRun(id={self.id}, user_id={self.user_id}, "
            f"job_type='{self.job_type}', status='{self.status}')>"
        )


class Intent(Base):
    """
    An auto-upgrade rule.

    ``scheduled`` intents fire on cron boundaries; ``immediate`` intents
    fire after an update scan finds new updates. ``last_evaluated_at`` is
    the boundary up to which scheduled evaluation has been consumed.
    """

    __tablename__ = "intents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    schedule_type: Mapped[str] = mapped_column(String, default=SCHEDULE_SCHEDULED, nullable=False)
    schedule_cron: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_execution_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert intent to dictionary representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "enabled": self.enabled,
            "schedule_type": self.schedule_type,
            "schedule_cron": self.schedule_cron,
            "dry_run": self.dry_run,
            "last_evaluated_at": _iso(self.last_evaluated_at),
            "last_execution_id": self.last_execution_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Intent(id={self.id}, name='{self.name}', schedule_type='{self.schedule_type}')>"


class IntentExecution(Base):
    """One dispatch of an intent and its container-level outcome."""

    __tablename__ = "intent_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    intent_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("intents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=STATUS_RUNNING, nullable=False, index=True)

    containers_matched: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    containers_upgraded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    containers_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    containers_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert execution to dictionary representation."""
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "user_id": self.user_id,
            "trigger_type": self.trigger_type,
            "status": self.status,
            "containers_matched": self.containers_matched,
            "containers_upgraded": self.containers_upgraded,
            "containers_failed": self.containers_failed,
            "containers_skipped": self.containers_skipped,
            "error_message": self.error_message,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
        }

    def __repr__(self) -> str:
        return (
            f"<IntentExecution(id={self.id}, intent_id={self.intent_id}, "
            f"status='{self.status}')>"
        )
