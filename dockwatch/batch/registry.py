"""Discovery of job handlers published by other packages.

Packages expose handlers through the ``dockwatch.handlers`` entry-point
group. An entry point may name a :class:`JobHandler` instance or a
zero-argument callable returning one:

    [project.entry-points."dockwatch.handlers"]
    registry-scan = "mypkg.handlers:registry_scan_handler"
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Iterable, List, Optional

from dockwatch.batch.handler import JobHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Collects job handlers from entry points.

    Handlers whose job type is listed in ``disabled_job_types`` are
    excluded; entry points that fail to load are logged and skipped.
    """

    ENTRY_POINT_GROUP = "dockwatch.handlers"

    def __init__(self, disabled_job_types: Optional[Iterable[str]] = None) -> None:
        self._disabled = set(disabled_job_types or [])
        self._handlers: Dict[str, JobHandler] = {}

    def discover_all(self) -> Dict[str, JobHandler]:
        """Discover handlers from all entry points.

        Returns:
            Mapping of job type to handler
        """
        for ep in entry_points(group=self.ENTRY_POINT_GROUP):
            try:
                handler = self._coerce(ep.load())
            except Exception as e:
                logger.warning(f"Failed to load job handler entry point '{ep.name}': {e}")
                continue
            if handler is None:
                logger.warning(f"Entry point '{ep.name}' does not provide a JobHandler, skipping")
                continue
            self._register_discovered(handler)
        return dict(self._handlers)

    def _coerce(self, obj: Any) -> Optional[JobHandler]:
        if isinstance(obj, JobHandler):
            return obj
        if callable(obj):
            produced = obj()
            if isinstance(produced, JobHandler):
                return produced
        return None

    def _register_discovered(self, handler: JobHandler) -> None:
        if handler.job_type in self._disabled:
            logger.info(f"Job type '{handler.job_type}' is disabled by configuration")
            return
        if handler.job_type in self._handlers:
            logger.warning(f"Duplicate job handler for '{handler.job_type}' ignored")
            return
        self._handlers[handler.job_type] = handler
        logger.debug(f"Discovered job handler: {handler.job_type}")

    @property
    def handlers(self) -> List[JobHandler]:
        return list(self._handlers.values())

    @property
    def available_job_types(self) -> List[str]:
        return sorted(self._handlers)
