"""Intent execution: the collaborator contract and a recording executor.

The evaluator only needs something with an ``execute_intent`` coroutine
that resolves with an :class:`IntentExecutionResult` or raises. The
container matching and upgrading itself belongs to collaborators, which
plug into :class:`RecordingIntentExecutor` as two coroutine functions:

- ``matcher(intent, user_id) -> list[UpgradeTarget]``
- ``upgrader(target, user_id, execution_id) -> "upgraded" | "skipped" | "failed"``
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from dockwatch.clock import Clock, utcnow
from dockwatch.database.models import (
    Intent,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
)
from dockwatch.intents.store import IntentStore
from dockwatch.intents.upgrade_lock import UpgradeLockManager, upgrade_locks

logger = logging.getLogger(__name__)

UPGRADED = "upgraded"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class UpgradeTarget:
    """A container an intent matched."""
    container_id: str
    container_name: str
    image_name: str = ""
    stack_name: Optional[str] = None


@dataclass
class IntentExecutionResult:
    """Summary of one intent execution."""
    execution_id: Optional[int]
    status: str
    containers_matched: int = 0
    containers_upgraded: int = 0
    containers_failed: int = 0
    containers_skipped: int = 0
    duration_ms: int = 0
    containers: List[Dict[str, Any]] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "containers_matched": self.containers_matched,
            "containers_upgraded": self.containers_upgraded,
            "containers_failed": self.containers_failed,
            "containers_skipped": self.containers_skipped,
        }


class IntentExecutor(Protocol):
    """Contract the intent evaluator dispatches to."""

    async def execute_intent(
        self,
        intent: Intent,
        user_id: int,
        trigger_type: str,
        trigger_time: Optional[datetime] = None,
    ) -> IntentExecutionResult:
        ...


Matcher = Callable[[Intent, int], Awaitable[List[UpgradeTarget]]]
Upgrader = Callable[[UpgradeTarget, int, int], Awaitable[str]]


class RecordingIntentExecutor:
    """Records an IntentExecution around pluggable match and upgrade steps.

    Containers in the same stack are upgraded one after another; separate
    stacks (and standalone containers) are upgraded concurrently. Dry-run
    intents record every match as skipped without calling the upgrader.
    With no matcher configured nothing matches. A container another
    execution is already upgrading is recorded as skipped.
    """

    def __init__(
        self,
        store: Optional[IntentStore] = None,
        matcher: Optional[Matcher] = None,
        upgrader: Optional[Upgrader] = None,
        clock: Clock = utcnow,
        locks: Optional[UpgradeLockManager] = None,
    ) -> None:
        self.store = store or IntentStore()
        self._matcher = matcher
        self._upgrader = upgrader
        self._clock = clock
        self._locks = locks if locks is not None else upgrade_locks

    async def execute_intent(
        self,
        intent: Intent,
        user_id: int,
        trigger_type: str,
        trigger_time: Optional[datetime] = None,
        dry_run: Optional[bool] = None,
    ) -> IntentExecutionResult:
        """Match and upgrade the intent's containers.

        Args:
            intent: Intent to execute
            user_id: Owning user
            trigger_type: scheduled_window, scan_detected or manual
            trigger_time: Cron boundary being consumed, for scheduled runs
            dry_run: Override the intent's dry_run setting

        Returns:
            IntentExecutionResult

        Raises:
            Exception: Whatever matching raised, after recording the failure
        """
        is_dry_run = intent.dry_run if dry_run is None else dry_run
        started = self._clock()
        execution_id: Optional[int] = None

        try:
            targets = await self._match(intent, user_id)
            execution_id = self.store.create_execution(
                intent.id, user_id, trigger_type, started_at=started
            )

            if is_dry_run:
                result = IntentExecutionResult(
                    execution_id=execution_id,
                    status=STATUS_COMPLETED,
                    containers_matched=len(targets),
                    containers_skipped=len(targets),
                    containers=[
                        {"container_id": t.container_id, "container_name": t.container_name, "status": "dry_run"}
                        for t in targets
                    ],
                )
            else:
                result = await self._upgrade_all(execution_id, targets, user_id, owner=f"intent:{intent.id}")

            completed = self._clock()
            result.duration_ms = int((completed - started).total_seconds() * 1000)
            self.store.finish_execution(
                execution_id, result.status, completed_at=completed, **result.counts()
            )
        except Exception as e:
            if execution_id is not None:
                try:
                    self.store.finish_execution(
                        execution_id, STATUS_FAILED, error_message=str(e), completed_at=self._clock()
                    )
                except Exception as update_error:
                    logger.error(f"Failed to record failure of intent execution {execution_id}: {update_error}")
            logger.error(f"Intent {intent.id} ({intent.name}) execution failed: {e}")
            raise

        logger.info(
            f"Intent {intent.id} ({intent.name}) {trigger_type} execution {execution_id}: "
            f"{result.status}, matched={result.containers_matched} "
            f"upgraded={result.containers_upgraded} failed={result.containers_failed} "
            f"skipped={result.containers_skipped}{' (dry run)' if is_dry_run else ''}"
        )
        return result

    async def _match(self, intent: Intent, user_id: int) -> List[UpgradeTarget]:
        if self._matcher is None:
            logger.info(f"No container matcher configured, intent {intent.id} matches nothing")
            return []
        return list(await self._matcher(intent, user_id))

    async def _upgrade_all(
        self, execution_id: int, targets: List[UpgradeTarget], user_id: int, owner: str = "unknown"
    ) -> IntentExecutionResult:
        groups: Dict[str, List[UpgradeTarget]] = {}
        for index, target in enumerate(targets):
            groups.setdefault(target.stack_name or f"__standalone_{index}", []).append(target)

        async def upgrade_group(group: List[UpgradeTarget]) -> List[Dict[str, Any]]:
            outcomes = []
            for target in group:
                outcomes.append(await self._upgrade_one(execution_id, target, user_id, owner))
            return outcomes

        group_results = await asyncio.gather(*(upgrade_group(g) for g in groups.values()))

        result = IntentExecutionResult(
            execution_id=execution_id,
            status=STATUS_COMPLETED,
            containers_matched=len(targets),
        )
        for outcomes in group_results:
            for outcome in outcomes:
                result.containers.append(outcome)
                if outcome["status"] == UPGRADED:
                    result.containers_upgraded += 1
                elif outcome["status"] == SKIPPED:
                    result.containers_skipped += 1
                else:
                    result.containers_failed += 1

        if result.containers_failed:
            result.status = STATUS_FAILED if result.containers_upgraded == 0 else STATUS_PARTIAL
        return result

    async def _upgrade_one(
        self, execution_id: int, target: UpgradeTarget, user_id: int, owner: str = "unknown"
    ) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {
            "container_id": target.container_id,
            "container_name": target.container_name,
        }
        if self._upgrader is None:
            outcome["status"] = SKIPPED
            return outcome

        if not self._locks.acquire(target.container_id, owner=owner):
            holder = self._locks.holder(target.container_id) or "unknown"
            logger.info(f"Upgrade of container {target.container_name} skipped, locked by {holder}")
            outcome.update(status=SKIPPED, reason=f"locked by {holder}")
            return outcome

        try:
            status = await self._upgrader(target, user_id, execution_id)
        except Exception as e:
            logger.error(f"Upgrade of container {target.container_name} failed: {e}")
            outcome.update(status=FAILED, error=str(e))
            return outcome
        finally:
            self._locks.release(target.container_id)
        outcome["status"] = status if status in (UPGRADED, SKIPPED) else FAILED
        return outcome
