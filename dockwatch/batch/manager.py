"""Batch manager: handler registration, run locking and run bookkeeping.

A (user, job type) pair runs at most once at a time. The lock has two
halves: the persisted ``running`` BatchRun row, which is the source of
truth across restarts, and an in-memory map of runs executing in this
process. Acquiring the lock is synchronous, so no other coroutine can
interleave between the check and the creation of the run record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from dockwatch.batch.handler import JobContext, JobHandler, JobResult
from dockwatch.batch.logger import BatchLogger
from dockwatch.batch.store import RunStore
from dockwatch.clock import Clock, utcnow
from dockwatch.config import SchedulerConfig
from dockwatch.events import Event, EventBus, EventType
from dockwatch.exceptions import (
    DuplicateHandlerError,
    HandlerExecutionError,
    LockConflictError,
    PersistenceError,
    UnknownJobTypeError,
)

if TYPE_CHECKING:
    from dockwatch.batch.scheduler import Scheduler
    from dockwatch.intents.evaluator import IntentEvaluator

logger = logging.getLogger(__name__)

JobKey = Tuple[int, str]


@dataclass
class JobOutcome:
    """Result of a successful job execution."""
    run_id: int
    user_id: int
    job_type: str
    result: JobResult
    is_manual: bool = False
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "user_id": self.user_id,
            "job_type": self.job_type,
            "is_manual": self.is_manual,
            "items_checked": self.result.items_checked,
            "items_updated": self.result.items_updated,
            "partial": self.result.partial,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RecoveryReport:
    """What the startup crash-recovery sweep released."""
    batch_runs: List[int] = field(default_factory=list)
    intent_executions: int = 0


class BatchManager:
    """Owns job handlers and executes jobs under the per-pair lock.

    Example:
        manager = BatchManager(RunStore(), event_bus=bus)
        manager.register_handler(handler)
        outcome = await manager.execute_job(user_id=1, job_type="registry-scan")
    """

    def __init__(
        self,
        store: Optional[RunStore] = None,
        config: Optional[SchedulerConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Clock = utcnow,
        stale_takeover: bool = True,
    ) -> None:
        self.store = store or RunStore()
        self._config = config or SchedulerConfig()
        self._event_bus = event_bus
        self._clock = clock
        # Only the engine process may fail another process's stale run
        self._stale_takeover = stale_takeover

        self._handlers: Dict[str, JobHandler] = {}
        self._running: Dict[JobKey, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._scheduler: Optional["Scheduler"] = None
        self._intent_evaluator: Optional["IntentEvaluator"] = None
        self._started = False

    # Wiring

    def set_scheduler(self, scheduler: "Scheduler") -> None:
        self._scheduler = scheduler

    def set_intent_evaluator(self, evaluator: "IntentEvaluator") -> None:
        self._intent_evaluator = evaluator

    @property
    def scheduler(self) -> Optional["Scheduler"]:
        return self._scheduler

    @property
    def is_started(self) -> bool:
        return self._started

    # Handlers

    def register_handler(self, handler: JobHandler) -> None:
        """Register a handler under its job type.

        Raises:
            DuplicateHandlerError: If the job type is already registered
        """
        if handler.job_type in self._handlers:
            raise DuplicateHandlerError(handler.job_type)
        self._handlers[handler.job_type] = handler
        logger.info(f"Registered job handler: {handler.job_type} ({handler.display_name})")

    def get_handler(self, job_type: str) -> JobHandler:
        """Get the handler for a job type.

        Raises:
            UnknownJobTypeError: If no handler is registered
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def get_registered_job_types(self) -> List[str]:
        return list(self._handlers)

    # Locking

    def is_running(self, user_id: int, job_type: str) -> bool:
        return (user_id, job_type) in self._running

    @property
    def running_jobs(self) -> Dict[JobKey, int]:
        """(user id, job type) -> run id of runs executing in this process."""
        return dict(self._running)

    def acquire(self, user_id: int, job_type: str, is_manual: bool = False) -> int:
        """Acquire the run lock and create the run record.

        Contains no awaits, so it is atomic with respect to other
        coroutines on the event loop. Across processes the run store's
        single-transaction acquire decides.

        Returns:
            Id of the new BatchRun

        Raises:
            UnknownJobTypeError: If no handler is registered for the job type
            LockConflictError: If the pair is already running
            PersistenceError: If the run store is unavailable
        """
        self.get_handler(job_type)
        key = (user_id, job_type)

        in_flight = self._running.get(key)
        if in_flight is not None:
            logger.debug(f"Job {job_type} for user {user_id} already running in process (run {in_flight})")
            raise LockConflictError(
                f"Job '{job_type}' is already running for user {user_id}",
                run_id=in_flight,
            )

        try:
            run_id = self.store.acquire_run(
                user_id,
                job_type,
                stale_after=timedelta(minutes=self._config.stale_run_minutes),
                now=self._clock(),
                is_manual=is_manual,
                allow_takeover=self._stale_takeover,
            )
        except LockConflictError as e:
            logger.debug(f"Job {job_type} for user {user_id} already running (run {e.run_id})")
            raise

        self._running[key] = run_id
        return run_id

    def _release(self, user_id: int, job_type: str, run_id: int) -> None:
        if self._running.get((user_id, job_type)) == run_id:
            del self._running[(user_id, job_type)]

    # Execution

    async def execute_job(self, user_id: int, job_type: str, is_manual: bool = False) -> JobOutcome:
        """Run a job to completion under the lock.

        Raises:
            LockConflictError: If the pair is already running
            Exception: Whatever the handler raised, after the run is recorded as failed
        """
        run_id = self.acquire(user_id, job_type, is_manual=is_manual)
        return await self._run(run_id, user_id, job_type, is_manual)

    def trigger_job(self, user_id: int, job_type: str, is_manual: bool = True) -> asyncio.Task:
        """Start a job in the background ("run now").

        The lock is acquired before returning, so a conflict raises here.

        Returns:
            Task resolving to the JobOutcome

        Raises:
            LockConflictError: If the pair is already running
        """
        run_id = self.acquire(user_id, job_type, is_manual=is_manual)
        task = asyncio.create_task(
            self._run(run_id, user_id, job_type, is_manual),
            name=f"batch-{job_type}-{user_id}-manual",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_triggered_done)
        return task

    def _on_triggered_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Triggered job failed: {task.exception()}")

    async def _run(self, run_id: int, user_id: int, job_type: str, is_manual: bool) -> JobOutcome:
        handler = self._handlers[job_type]
        batch_logger = BatchLogger(job_type, run_id)
        started = self._clock()

        try:
            batch_logger.info(
                f"Starting {handler.display_name}", user_id=user_id, manual=is_manual
            )
            await self._publish(EventType.JOB_STARTED, run_id, user_id, job_type, is_manual=is_manual)

            try:
                raw = await handler.execute(
                    JobContext(logger=batch_logger, user_id=user_id, run_id=run_id, is_manual=is_manual)
                )
                result = JobResult.from_value(raw)
            except asyncio.CancelledError:
                batch_logger.warning("Job cancelled")
                self._record_failure(run_id, "Job was cancelled", batch_logger)
                raise
            except Exception as e:
                await self._handle_failure(run_id, user_id, job_type, is_manual, e, batch_logger)
                raise

            completed = self._clock()
            duration_ms = int((completed - started).total_seconds() * 1000)
            if result.partial:
                batch_logger.warning(
                    result.message or "Completed with partial results",
                    items_checked=result.items_checked,
                    items_updated=result.items_updated,
                )
            batch_logger.info(
                f"{handler.display_name} completed",
                items_checked=result.items_checked,
                items_updated=result.items_updated,
                duration_ms=duration_ms,
            )

            try:
                self.store.complete_run(
                    run_id, result, logs=batch_logger.get_formatted_logs(), completed_at=completed
                )
            except PersistenceError as e:
                logger.error(f"Failed to record completion of run {run_id}: {e}")

            if self._scheduler is not None:
                self._scheduler.update_last_run_time(user_id, job_type, completed)
        finally:
            self._release(user_id, job_type, run_id)

        await self._publish(
            EventType.JOB_COMPLETED,
            run_id,
            user_id,
            job_type,
            is_manual=is_manual,
            items_checked=result.items_checked,
            items_updated=result.items_updated,
            partial=result.partial,
            triggers_intents=handler.triggers_intents,
        )

        return JobOutcome(
            run_id=run_id,
            user_id=user_id,
            job_type=job_type,
            result=result,
            is_manual=is_manual,
            duration_ms=duration_ms,
        )

    async def _handle_failure(
        self,
        run_id: int,
        user_id: int,
        job_type: str,
        is_manual: bool,
        error: Exception,
        batch_logger: BatchLogger,
    ) -> None:
        message = str(error) or type(error).__name__
        items_checked = items_updated = 0
        if isinstance(error, HandlerExecutionError):
            items_checked, items_updated = error.items_checked, error.items_updated
            message = error.message

        batch_logger.error(f"Job failed: {message}")
        self._record_failure(run_id, message, batch_logger, items_checked, items_updated)
        await self._publish(
            EventType.JOB_FAILED,
            run_id,
            user_id,
            job_type,
            is_manual=is_manual,
            error=message,
        )

    def _record_failure(
        self,
        run_id: int,
        message: str,
        batch_logger: BatchLogger,
        items_checked: int = 0,
        items_updated: int = 0,
    ) -> None:
        try:
            self.store.fail_run(
                run_id,
                message,
                items_checked=items_checked,
                items_updated=items_updated,
                logs=batch_logger.get_formatted_logs(),
                completed_at=self._clock(),
            )
        except PersistenceError as e:
            logger.error(f"Failed to record failure of run {run_id}: {e}")

    async def _publish(self, event_type: EventType, run_id: int, user_id: int, job_type: str, **payload: Any) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(
                Event(
                    event_type=event_type,
                    payload={"run_id": run_id, "user_id": user_id, "job_type": job_type, **payload},
                    source="batch_manager",
                )
            )
        except Exception as e:
            logger.error(f"Failed to publish {event_type.name} for run {run_id}: {e}")

    # Lifecycle

    def recover_interrupted_work(self) -> RecoveryReport:
        """Fail runs and intent executions left running by a previous process."""
        report = RecoveryReport()

        try:
            swept = self.store.sweep_running_runs()
            report.batch_runs = [ref.run_id for ref in swept]
            for ref in swept:
                logger.warning(
                    f"Marked interrupted run {ref.run_id} ({ref.job_type}, user {ref.user_id}) as failed"
                )
        except PersistenceError as e:
            logger.error(f"Failed to sweep interrupted batch runs: {e}")

        if self._intent_evaluator is not None:
            try:
                report.intent_executions = self._intent_evaluator.store.sweep_stale_executions()
            except PersistenceError as e:
                logger.error(f"Failed to sweep interrupted intent executions: {e}")

        if report.batch_runs or report.intent_executions:
            logger.info(
                f"Crash recovery released {len(report.batch_runs)} batch run(s) and "
                f"{report.intent_executions} intent execution(s)"
            )
        return report

    async def start(self) -> None:
        """Recover interrupted work, then start the pollers."""
        if self._started:
            logger.warning("Batch manager already started")
            return

        if not self._handlers:
            logger.warning("No job handlers registered, batch manager not started")
            return

        self.recover_interrupted_work()

        if self._scheduler is not None:
            await self._scheduler.start()
        if self._intent_evaluator is not None:
            await self._intent_evaluator.start()

        self._started = True
        logger.info(f"Batch manager started with job types: {', '.join(self._handlers)}")

    async def stop(self) -> None:
        """Stop the pollers and wait for jobs already in flight."""
        if self._intent_evaluator is not None:
            await self._intent_evaluator.stop()
        if self._scheduler is not None:
            await self._scheduler.stop()

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if self._started:
            logger.info("Batch manager stopped")
        self._started = False

    def get_status(self) -> Dict[str, Any]:
        """Get batch manager status information."""
        return {
            "started": self._started,
            "registered_job_types": self.get_registered_job_types(),
            "running_jobs": [
                {"user_id": user_id, "job_type": job_type, "run_id": run_id}
                for (user_id, job_type), run_id in self._running.items()
            ],
            "scheduler": self._scheduler.get_status() if self._scheduler else None,
            "intent_evaluator": (
                self._intent_evaluator.get_status() if self._intent_evaluator else None
            ),
        }
