"""Run-scoped logger for batch jobs.

Every entry is forwarded to the ``dockwatch.batch`` logger and kept in
memory, so the full transcript of a run can be stored on its BatchRun.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from dockwatch.clock import utcnow

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class LogEntry:
    """One transcript line."""
    timestamp: datetime
    level: str
    job_type: str
    run_id: Optional[int]
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        run = f" [run:{self.run_id}]" if self.run_id is not None else ""
        meta = " ".join(
            f"{key}={json.dumps(value, default=str)}" for key, value in self.metadata.items()
        )
        line = (
            f"[{self.timestamp.isoformat()}] [{self.level.upper()}] "
            f"[{self.job_type}]{run} {self.message}"
        )
        return f"{line} {meta}" if meta else line


class BatchLogger:
    """Logger bound to one job type and, once started, one run."""

    def __init__(self, job_type: str = "system", run_id: Optional[int] = None) -> None:
        self.job_type = job_type
        self.run_id = run_id
        self._entries: List[LogEntry] = []
        self._logger = logging.getLogger("dockwatch.batch").getChild(job_type)

    def log(self, level: str, message: str, **metadata: Any) -> LogEntry:
        """Record an entry and forward it to the standard logger.

        Args:
            level: One of debug, info, warning, error
            message: Log message
            **metadata: Extra key/value context rendered into the transcript
        """
        level = level.lower()
        if level == "warn":
            level = "warning"
        entry = LogEntry(
            timestamp=utcnow(),
            level=level,
            job_type=self.job_type,
            run_id=self.run_id,
            message=message,
            metadata=metadata,
        )
        self._entries.append(entry)

        run = f"[run:{self.run_id}] " if self.run_id is not None else ""
        self._logger.log(_LEVELS.get(level, logging.INFO), f"{run}{message}", extra={"job_metadata": metadata})
        return entry

    def debug(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("debug", message, **metadata)

    def info(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("info", message, **metadata)

    def warning(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("warning", message, **metadata)

    def error(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("error", message, **metadata)

    @property
    def entries(self) -> List[LogEntry]:
        return list(self._entries)

    def get_formatted_logs(self) -> str:
        """Render the transcript, one entry per line."""
        return "\n".join(entry.format() for entry in self._entries)

    def clear(self) -> None:
        self._entries.clear()
