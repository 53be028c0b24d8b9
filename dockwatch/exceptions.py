"""Exception taxonomy for the dockwatch engine.

Every engine error derives from :class:`DockwatchError`, which carries
an exit code for the CLI and an optional dictionary of details.
"""

from typing import Any

from dockwatch.cli.exit_codes import ExitCode


class DockwatchError(Exception):
    """Base exception for dockwatch.
    
    Attributes:
        message: Error message
        exit_code: Exit code to use when a CLI command fails with this error
        details: Optional dictionary of additional error details
    """
    
    exit_code: int = ExitCode.GENERAL_ERROR
    
    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        self.details = details or {}
    
    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(DockwatchError):
    """Invalid or missing configuration for a unit of work.
    
    Covers invalid cron expressions, disabled or sub-minimum intervals
    and unknown job types. Such work fails closed: it never runs and is
    not retried automatically.
    """
    
    exit_code = ExitCode.CONFIGURATION_ERROR


class UnknownJobTypeError(ConfigurationError):
    """Raised when no handler is registered for a job type."""
    
    def __init__(self, job_type: str) -> None:
        super().__init__(
            f"No handler registered for job type: {job_type}",
            details={"job_type": job_type},
        )
        self.job_type = job_type


class DuplicateHandlerError(ConfigurationError):
    """Raised when a job type is registered twice."""
    
    def __init__(self, job_type: str) -> None:
        super().__init__(f"Job handler for type '{job_type}' is already registered")
        self.job_type = job_type


class LockConflictError(DockwatchError):
    """A job or intent is already executing.
    
    Carries the id of the in-flight run (or intent) so a caller can
    point the user at it. This is an expected outcome, not an
    application error.
    """
    
    exit_code = ExitCode.ALREADY_RUNNING
    
    def __init__(
        self,
        message: str,
        run_id: int | None = None,
        intent_id: int | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if run_id is not None:
            details["run_id"] = run_id
        if intent_id is not None:
            details["intent_id"] = intent_id
        super().__init__(message, details=details)
        self.run_id = run_id
        self.intent_id = intent_id


class HandlerExecutionError(DockwatchError):
    """Raised by job handlers when their work fails.
    
    May carry partial-success metrics, e.g. "processed N of M before an
    external rate limit".
    """
    
    exit_code = ExitCode.HANDLER_ERROR
    
    def __init__(
        self,
        message: str,
        items_checked: int = 0,
        items_updated: int = 0,
    ) -> None:
        super().__init__(
            message,
            details={"items_checked": items_checked, "items_updated": items_updated},
        )
        self.items_checked = items_checked
        self.items_updated = items_updated


class PersistenceError(DockwatchError):
    """The durable run-record store could not be read or written."""
    
    exit_code = ExitCode.PERSISTENCE_ERROR


class ValidationError(DockwatchError):
    """User input failed validation (CLI arguments, config values)."""
    
    exit_code = ExitCode.INVALID_ARGUMENT


class NotFoundError(DockwatchError):
    """A requested user, intent or run does not exist."""
    
    exit_code = ExitCode.NOT_FOUND
