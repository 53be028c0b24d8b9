"""Job handler capability and the values passed to and from handlers.

A job handler is a record of data plus an ``execute`` coroutine
function, registered with the batch manager under its ``job_type``.
Concrete handlers (registry scans and the like) are supplied by
collaborators, either passed to the daemon or discovered through the
``dockwatch.handlers`` entry-point group.

Example:
    async def scan(context: JobContext) -> JobResult:
        context.logger.info("Scanning")
        return JobResult(items_checked=12, items_updated=2)

    handler = JobHandler(
        job_type="registry-scan",
        display_name="Registry Scan",
        execute=scan,
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple

from dockwatch.config import MIN_INTERVAL_MINUTES, MAX_INTERVAL_MINUTES

if TYPE_CHECKING:
    from dockwatch.batch.logger import BatchLogger


@dataclass
class BatchJobConfig:
    """Per-user schedule for one job type."""
    enabled: bool = False
    interval_minutes: int = 60

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "interval_minutes": self.interval_minutes}


@dataclass
class JobContext:
    """Context passed to ``JobHandler.execute``.

    Attributes:
        logger: Run-scoped logger whose entries become the run transcript
        user_id: User the job runs for
        run_id: Id of the BatchRun record
        is_manual: True when a user triggered the run
    """
    logger: "BatchLogger"
    user_id: int
    run_id: int
    is_manual: bool = False


@dataclass
class JobResult:
    """Outcome of a successful handler execution.

    A ``partial`` result is still a success: the run is recorded as
    completed and ``message`` is stored as the partial-success note.
    """
    items_checked: int = 0
    items_updated: int = 0
    partial: bool = False
    message: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "JobResult":
        """Coerce a handler return value into a JobResult.

        Handlers may return a JobResult, a mapping with ``items_checked``
        and ``items_updated`` keys, or None.
        """
        if isinstance(value, JobResult):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls(
                items_checked=int(value.get("items_checked", 0)),
                items_updated=int(value.get("items_updated", 0)),
                partial=bool(value.get("partial", False)),
                message=value.get("message"),
            )
        raise TypeError(f"Unsupported job result type: {type(value).__name__}")


JobExecute = Callable[[JobContext], Awaitable[Any]]


@dataclass(frozen=True)
class JobHandler:
    """Capability record for one job type.

    Attributes:
        job_type: Unique identifier the handler is registered under
        display_name: Human-readable name
        execute: Coroutine function run for each execution; raises on failure
        default_config: Schedule used when a user has no stored config
        triggers_intents: Whether updates found by this job dispatch
            the user's immediate intents
    """
    job_type: str
    display_name: str
    execute: JobExecute
    default_config: BatchJobConfig = field(default_factory=BatchJobConfig)
    triggers_intents: bool = True

    def get_job_type(self) -> str:
        return self.job_type

    def get_display_name(self) -> str:
        return self.display_name

    def get_default_config(self) -> BatchJobConfig:
        return BatchJobConfig(
            enabled=self.default_config.enabled,
            interval_minutes=self.default_config.interval_minutes,
        )

    def validate_config(self, config: Any) -> Tuple[bool, Optional[str]]:
        """Check a candidate config for this job type.

        Returns:
            Tuple of (valid, error message)
        """
        if isinstance(config, dict):
            enabled = config.get("enabled")
            interval = config.get("interval_minutes")
        elif isinstance(config, BatchJobConfig):
            enabled, interval = config.enabled, config.interval_minutes
        else:
            return False, "Config must be an object"

        if not isinstance(enabled, bool):
            return False, "enabled must be a boolean"
        if (
            not isinstance(interval, int)
            or isinstance(interval, bool)
            or not MIN_INTERVAL_MINUTES <= interval <= MAX_INTERVAL_MINUTES
        ):
            return False, (
                f"interval_minutes must be an integer between "
                f"{MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES}"
            )
        return True, None
