"""Intent evaluator: dispatches intents on cron boundaries and after scans.

Two trigger paths share one in-progress guard, so an intent never runs
twice at the same time in this process:

1. Scheduled intents are polled every ``intent_check_interval`` seconds
   and dispatched when a cron boundary has passed since their
   ``last_evaluated_at``.
2. Immediate intents are dispatched when a batch job that triggers
   intents completes with ``items_updated > 0``. The evaluator learns
   about completed jobs from ``JOB_COMPLETED`` events.

Each dispatch runs as its own asyncio task; the poll never waits for it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import EVENT_JOB_ERROR

from dockwatch.clock import Clock, utcnow
from dockwatch.config import SchedulerConfig
from dockwatch.database.models import (
    Intent,
    TRIGGER_MANUAL,
    TRIGGER_SCAN_DETECTED,
    TRIGGER_SCHEDULED_WINDOW,
)
from dockwatch.events import Event, EventBus, EventType
from dockwatch.exceptions import LockConflictError, NotFoundError, PersistenceError
from dockwatch.intents.executor import IntentExecutionResult, IntentExecutor
from dockwatch.intents.schedule import is_intent_due
from dockwatch.intents.store import IntentStore

logger = logging.getLogger(__name__)

TICK_JOB_ID = "intent-evaluator-tick"


class IntentEvaluator:
    """Evaluates and dispatches intents.

    Constructed once by the application root and started and stopped
    explicitly.
    """

    def __init__(
        self,
        executor: IntentExecutor,
        store: Optional[IntentStore] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.executor = executor
        self.store = store or IntentStore()
        self._event_bus = event_bus
        self._config = config or SchedulerConfig()
        self._clock = clock

        self._in_progress: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._unsubscribe = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_progress(self) -> Set[int]:
        return set(self._in_progress)

    async def start(self) -> None:
        """Subscribe to job completions and start polling scheduled intents.

        The first poll runs after ``intent_startup_delay`` seconds.
        """
        if self._running:
            logger.warning("Intent evaluator already running")
            return

        logger.info(
            f"Starting intent evaluator (every {self._config.intent_check_interval}s, "
            f"first check in {self._config.intent_startup_delay}s)"
        )

        if self._event_bus is not None:
            self._unsubscribe = self._event_bus.subscribe(
                EventType.JOB_COMPLETED, self._on_job_completed
            )

        self._scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=timezone.utc,
        )
        self._scheduler.add_listener(self._on_tick_error, EVENT_JOB_ERROR)
        self._scheduler.start()
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._config.intent_check_interval),
            id=TICK_JOB_ID,
            name="Scheduled intent evaluation",
            next_run_time=datetime.now(timezone.utc)
            + timedelta(seconds=self._config.intent_startup_delay),
            replace_existing=True,
        )
        self._running = True

    async def stop(self, wait_for_executions: bool = True) -> None:
        """Stop polling and unsubscribe.

        Args:
            wait_for_executions: Wait for dispatched intents to finish
        """
        if not self._running:
            return

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._running = False

        if wait_for_executions:
            await self.wait_for_idle()
        logger.info("Intent evaluator stopped")

    async def wait_for_idle(self) -> None:
        """Wait until every dispatched intent has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_tick_error(self, event: Any) -> None:
        logger.error(f"Intent evaluation tick failed: {getattr(event, 'exception', 'Unknown error')}")

    async def _tick(self) -> None:
        try:
            await self.evaluate_scheduled_intents()
        except Exception as e:
            logger.error(f"Error in scheduled intent evaluation: {e}", exc_info=True)

    async def _on_job_completed(self, event: Event) -> None:
        payload = event.payload
        if not payload.get("triggers_intents", True):
            return
        await self.evaluate_immediate_intents(payload["user_id"], payload)

    async def evaluate_scheduled_intents(self, now: Optional[datetime] = None) -> List[int]:
        """Dispatch every due scheduled intent of every user.

        Args:
            now: Evaluation time (default: the evaluator clock)

        Returns:
            Ids of the intents dispatched
        """
        now = now or self._clock()
        dispatched: List[int] = []

        try:
            user_ids = self.store.get_user_ids()
        except PersistenceError as e:
            logger.error(f"Failed to load users for intent evaluation: {e}")
            return dispatched

        for user_id in user_ids:
            try:
                intents = self.store.get_scheduled_intents(user_id)
            except PersistenceError as e:
                logger.error(f"Error evaluating scheduled intents for user {user_id}: {e}")
                continue

            for intent in intents:
                if intent.id in self._in_progress:
                    logger.debug(f"Skipping intent {intent.id} ({intent.name}), execution in progress")
                    continue

                try:
                    due = is_intent_due(intent, now)
                except Exception as e:
                    logger.error(f"Error checking if intent {intent.id} is due: {e}")
                    continue

                if not due.is_due:
                    continue

                logger.info(
                    f"Scheduled intent {intent.id} ({intent.name}) is due for user {user_id}: {due.reason}"
                )
                self._execute_intent_safe(
                    intent, user_id, TRIGGER_SCHEDULED_WINDOW, trigger_time=due.trigger_time
                )
                dispatched.append(intent.id)

        return dispatched

    async def evaluate_immediate_intents(self, user_id: int, scan_result: Any) -> List[int]:
        """Dispatch a user's immediate intents after a scan found updates.

        Args:
            user_id: User whose scan completed
            scan_result: JobResult, JobOutcome payload or mapping with ``items_updated``

        Returns:
            Ids of the intents dispatched
        """
        if isinstance(scan_result, dict):
            items_updated = scan_result.get("items_updated", 0)
        else:
            items_updated = getattr(scan_result, "items_updated", 0)

        if not items_updated or items_updated <= 0:
            return []

        logger.info(f"Scan found {items_updated} update(s) for user {user_id}, evaluating immediate intents")

        try:
            intents = self.store.get_immediate_intents(user_id)
        except PersistenceError as e:
            logger.error(f"Error evaluating immediate intents for user {user_id}: {e}")
            return []

        dispatched: List[int] = []
        for intent in intents:
            if intent.id in self._in_progress:
                logger.info(f"Skipping immediate intent {intent.id} ({intent.name}), execution in progress")
                continue
            self._execute_intent_safe(intent, user_id, TRIGGER_SCAN_DETECTED)
            dispatched.append(intent.id)

        return dispatched

    def trigger_intent(self, intent_id: int) -> asyncio.Task:
        """Run an intent now, regardless of its schedule.

        Does not advance ``last_evaluated_at``.

        Raises:
            NotFoundError: If the intent does not exist
            LockConflictError: If the intent is already executing
        """
        intent = self.store.get_intent(intent_id)
        if intent is None:
            raise NotFoundError(f"Intent {intent_id} not found")
        if intent_id in self._in_progress:
            raise LockConflictError(f"Intent {intent_id} is already executing", intent_id=intent_id)
        return self._execute_intent_safe(intent, intent.user_id, TRIGGER_MANUAL)

    def _execute_intent_safe(
        self,
        intent: Intent,
        user_id: int,
        trigger_type: str,
        trigger_time: Optional[datetime] = None,
    ) -> asyncio.Task:
        """Mark the intent in progress and run it as a task."""
        self._in_progress.add(intent.id)
        task = asyncio.create_task(
            self._run_intent(intent, user_id, trigger_type, trigger_time),
            name=f"intent-{intent.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_intent(
        self,
        intent: Intent,
        user_id: int,
        trigger_type: str,
        trigger_time: Optional[datetime],
    ) -> Optional[IntentExecutionResult]:
        result: Optional[IntentExecutionResult] = None
        try:
            await self._publish(EventType.INTENT_DISPATCHED, intent, user_id, trigger_type)
            try:
                result = await self.executor.execute_intent(
                    intent, user_id, trigger_type, trigger_time=trigger_time
                )
            except Exception as e:
                logger.error(
                    f"Intent {intent.id} ({intent.name}) {trigger_type} execution failed: {e}"
                )
                await self._publish(EventType.INTENT_FAILED, intent, user_id, trigger_type, error=str(e))
            else:
                logger.info(
                    f"Intent {intent.id} ({intent.name}) {trigger_type} execution finished: "
                    f"{result.status}, matched={result.containers_matched} "
                    f"upgraded={result.containers_upgraded} failed={result.containers_failed} "
                    f"skipped={result.containers_skipped}"
                )
                await self._publish(
                    EventType.INTENT_COMPLETED,
                    intent,
                    user_id,
                    trigger_type,
                    execution_id=result.execution_id,
                    status=result.status,
                    **result.counts(),
                )

            if trigger_time is not None:
                self._mark_evaluated(intent, trigger_time, result)
        finally:
            self._in_progress.discard(intent.id)

        return result

    def _mark_evaluated(
        self,
        intent: Intent,
        trigger_time: datetime,
        result: Optional[IntentExecutionResult],
    ) -> None:
        try:
            self.store.update_last_evaluated(
                intent.id,
                trigger_time,
                execution_id=result.execution_id if result else None,
            )
        except PersistenceError as e:
            logger.error(f"Failed to update last evaluated time of intent {intent.id}: {e}")

    async def _publish(self, event_type: EventType, intent: Intent, user_id: int, trigger_type: str, **payload: Any) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(
                Event(
                    event_type=event_type,
                    payload={
                        "intent_id": intent.id,
                        "user_id": user_id,
                        "trigger_type": trigger_type,
                        **payload,
                    },
                    source="intent_evaluator",
                )
            )
        except Exception as e:
            logger.error(f"Failed to publish {event_type.name} for intent {intent.id}: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Get intent evaluator status information."""
        next_tick = None
        if self._scheduler:
            tick = self._scheduler.get_job(TICK_JOB_ID)
            if tick and tick.next_run_time:
                next_tick = tick.next_run_time.isoformat()
        return {
            "running": self._running,
            "check_interval": self._config.intent_check_interval,
            "in_progress": sorted(self._in_progress),
            "next_check": next_tick,
        }
