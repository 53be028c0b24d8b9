"""In-process upgrade locks keyed by container id.

Two intents (or an intent and a manual run) that match the same container
must not upgrade it at the same time. The first to acquire the lock wins;
the other records the container as skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from dockwatch.clock import Clock, utcnow

logger = logging.getLogger(__name__)

STALE_LOCK_AFTER = timedelta(minutes=10)


@dataclass
class UpgradeLock:
    owner: str
    acquired_at: datetime


class UpgradeLockManager:
    """Tracks which containers are being upgraded.

    A lock older than ``stale_after`` is assumed abandoned and may be
    taken by the next caller.
    """

    def __init__(self, stale_after: timedelta = STALE_LOCK_AFTER, clock: Clock = utcnow) -> None:
        self._locks: Dict[str, UpgradeLock] = {}
        self._stale_after = stale_after
        self._clock = clock

    def acquire(self, container_id: str, owner: str = "unknown") -> bool:
        """Take the lock for a container.

        Returns:
            True if acquired, False if another owner holds a live lock
        """
        now = self._clock()
        existing = self._locks.get(container_id)
        if existing is not None:
            age = now - existing.acquired_at
            if age <= self._stale_after:
                return False
            logger.warning(
                f"Releasing stale upgrade lock on container {container_id} "
                f"held by {existing.owner} for {int(age.total_seconds())}s"
            )
        self._locks[container_id] = UpgradeLock(owner=owner, acquired_at=now)
        return True

    def release(self, container_id: str) -> None:
        self._locks.pop(container_id, None)

    def holder(self, container_id: str) -> Optional[str]:
        """Owner of a live lock on the container, if any."""
        existing = self._locks.get(container_id)
        if existing is None or self._clock() - existing.acquired_at > self._stale_after:
            return None
        return existing.owner

    def clear(self) -> None:
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every executor in the process
upgrade_locks = UpgradeLockManager()
