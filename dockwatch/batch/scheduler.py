"""Interval scheduler for batch jobs.

Every ``check_interval`` seconds the scheduler looks at each
(user, job type) pair with an enabled configuration and dispatches the
ones whose interval has elapsed since their last successful run. Jobs
run as independent asyncio tasks; the tick never awaits them.

The last-run cache is only advanced by the batch manager after a
successful run. A run that raises moves the pair's effective last run
so that it becomes due again after ``failure_cooldown`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
)

from dockwatch.batch.handler import BatchJobConfig
from dockwatch.batch.store import RunStore
from dockwatch.clock import Clock, utcnow
from dockwatch.config import SchedulerConfig
from dockwatch.exceptions import LockConflictError, PersistenceError

if TYPE_CHECKING:
    from dockwatch.batch.manager import BatchManager

logger = logging.getLogger(__name__)

JobKey = Tuple[int, str]

TICK_JOB_ID = "batch-scheduler-tick"


class Scheduler:
    """Polls job due-ness and dispatches due jobs to the batch manager."""

    def __init__(
        self,
        batch_manager: "BatchManager",
        store: Optional[RunStore] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._manager = batch_manager
        self._store = store or batch_manager.store
        self._config = config or SchedulerConfig()
        self._clock = clock

        self._last_run_times: Dict[JobKey, datetime] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._initialized = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def initialize(self) -> None:
        """Load the last completed run time of every (user, job type).

        Pairs that fail to load are logged and treated as never run.
        Calling this again after a successful load is a no-op.
        """
        if self._initialized:
            return

        try:
            user_ids = self._store.get_user_ids()
        except PersistenceError as e:
            logger.error(f"Failed to load users for scheduler initialization: {e}")
            return

        loaded = 0
        for user_id in user_ids:
            for job_type in self._manager.get_registered_job_types():
                try:
                    completed_at = self._store.get_latest_completed_time(user_id, job_type)
                except PersistenceError as e:
                    logger.warning(
                        f"Failed to load last run for user {user_id} job {job_type}: {e}"
                    )
                    continue
                if completed_at is not None:
                    self._last_run_times[(user_id, job_type)] = completed_at
                    loaded += 1

        self._initialized = True
        logger.info(f"Scheduler initialized with {loaded} last-run times")

    async def start(self) -> None:
        """Start polling. Runs one check immediately."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting batch scheduler...")
        self.initialize()

        self._scheduler = self._create_scheduler()
        self._setup_listeners()
        self._scheduler.start()
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._config.check_interval),
            id=TICK_JOB_ID,
            name="Batch job due-ness check",
            replace_existing=True,
        )
        self._running = True
        logger.info(f"Scheduler started (checking every {self._config.check_interval}s)")

        await self._tick()

    async def stop(self, wait_for_jobs: bool = True) -> None:
        """Stop polling.

        Args:
            wait_for_jobs: Wait for already dispatched jobs to finish
        """
        if not self._running:
            return

        logger.info("Stopping batch scheduler...")
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._running = False

        if wait_for_jobs and self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} dispatched job(s) to finish")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        logger.info("Scheduler stopped")

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        return AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed ticks
                "max_instances": 1,  # Never overlap ticks
                "misfire_grace_time": self._config.check_interval,
            },
            timezone=timezone.utc,
        )

    def _setup_listeners(self) -> None:
        """Set up APScheduler event listeners."""
        if not self._scheduler:
            return

        def on_tick_error(event: Any) -> None:
            exception = getattr(event, "exception", "Unknown error")
            logger.error(f"Scheduler tick failed: {exception}")

        def on_tick_skipped(event: Any) -> None:
            logger.warning("Scheduler tick skipped, previous tick still running")

        self._scheduler.add_listener(on_tick_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_tick_skipped, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES)

    async def _tick(self) -> None:
        try:
            self.check_and_schedule_jobs()
        except Exception as e:
            logger.error(f"Error checking scheduled jobs: {e}", exc_info=True)

    def check_and_schedule_jobs(self, now: Optional[datetime] = None) -> List[JobKey]:
        """Dispatch every enabled, idle and due (user, job type).

        Dispatched jobs run as tasks; this method does not wait for them.

        Args:
            now: Evaluation time (default: the scheduler clock)

        Returns:
            The (user id, job type) pairs dispatched
        """
        now = now or self._clock()
        job_types = self._manager.get_registered_job_types()
        if not job_types:
            return []

        dispatched: List[JobKey] = []
        for user_id in self._store.get_user_ids():
            try:
                configs = self._store.get_job_configs(user_id)
            except PersistenceError as e:
                logger.error(f"Failed to load batch config for user {user_id}: {e}")
                continue

            for job_type in job_types:
                config = self._resolve_config(job_type, configs)
                if not config.enabled:
                    continue
                if config.interval_minutes < 1:
                    logger.debug(
                        f"Skipping user {user_id} job {job_type}: "
                        f"invalid interval {config.interval_minutes}"
                    )
                    continue
                if self._manager.is_running(user_id, job_type):
                    logger.debug(f"Skipping user {user_id} job {job_type}: already running")
                    continue
                if not self.is_due(user_id, job_type, config.interval_minutes, now):
                    continue

                logger.info(f"Dispatching scheduled job {job_type} for user {user_id}")
                self._dispatch(user_id, job_type, config.interval_minutes)
                dispatched.append((user_id, job_type))

        return dispatched

    def _resolve_config(self, job_type: str, configs: Dict[str, BatchJobConfig]) -> BatchJobConfig:
        config = configs.get(job_type)
        if config is not None:
            return config
        return self._manager.get_handler(job_type).get_default_config()

    def _dispatch(self, user_id: int, job_type: str, interval_minutes: int) -> None:
        task = asyncio.create_task(
            self._run_dispatched(user_id, job_type, interval_minutes),
            name=f"batch-{job_type}-{user_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_dispatched(self, user_id: int, job_type: str, interval_minutes: int) -> None:
        try:
            outcome = await self.run_job(user_id, job_type, interval_minutes)
        except Exception as e:
            logger.error(f"Scheduled job {job_type} failed for user {user_id}: {e}")
            return
        if outcome is not None:
            logger.info(f"Scheduled job {job_type} completed for user {user_id}")

    async def run_job(
        self,
        user_id: int,
        job_type: str,
        interval_minutes: Optional[int] = None,
    ) -> Any:
        """Run one scheduled job through the batch manager.

        On failure the pair becomes due again after the failure cooldown.
        A lock conflict is not a failure and returns None.

        Raises:
            Exception: Whatever the job raised
        """
        try:
            return await self._manager.execute_job(user_id, job_type, is_manual=False)
        except LockConflictError as e:
            logger.debug(f"Job {job_type} for user {user_id} already running: {e}")
            return None
        except Exception:
            self._apply_failure_cooldown(user_id, job_type, interval_minutes)
            raise

    def _apply_failure_cooldown(
        self, user_id: int, job_type: str, interval_minutes: Optional[int]
    ) -> None:
        if interval_minutes is None:
            try:
                interval_minutes = self._resolve_config(
                    job_type, self._store.get_job_configs(user_id)
                ).interval_minutes
            except PersistenceError:
                interval_minutes = self._manager.get_handler(job_type).get_default_config().interval_minutes

        now = self._clock()
        effective = now - timedelta(minutes=interval_minutes) + timedelta(
            seconds=self._config.failure_cooldown
        )
        self._last_run_times[(user_id, job_type)] = effective
        logger.info(
            f"Job {job_type} for user {user_id} will retry after "
            f"{self._config.failure_cooldown}s cooldown"
        )

    def is_due(self, user_id: int, job_type: str, interval_minutes: int, now: Optional[datetime] = None) -> bool:
        """Whether the interval has elapsed since the last successful run."""
        last_run = self._last_run_times.get((user_id, job_type))
        if last_run is None:
            return True
        now = now or self._clock()
        return now - last_run >= timedelta(minutes=interval_minutes)

    def update_last_run_time(self, user_id: int, job_type: str, timestamp: Optional[datetime] = None) -> None:
        """Record a successful run. Called by the batch manager."""
        self._last_run_times[(user_id, job_type)] = timestamp or self._clock()

    def get_last_run_time(self, user_id: int, job_type: str) -> Optional[datetime]:
        return self._last_run_times.get((user_id, job_type))

    def get_next_due_time(self, user_id: int, job_type: str, interval_minutes: int) -> Optional[datetime]:
        """When the pair becomes due, or None if it has never run (due now)."""
        last_run = self._last_run_times.get((user_id, job_type))
        if last_run is None:
            return None
        return last_run + timedelta(minutes=interval_minutes)

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status information."""
        next_tick = None
        if self._scheduler:
            tick = self._scheduler.get_job(TICK_JOB_ID)
            if tick and tick.next_run_time:
                next_tick = tick.next_run_time.isoformat()

        return {
            "running": self._running,
            "initialized": self._initialized,
            "check_interval": self._config.check_interval,
            "failure_cooldown": self._config.failure_cooldown,
            "dispatched_jobs": len(self._tasks),
            "next_check": next_tick,
            "last_run_times": {
                f"{user_id}:{job_type}": value.isoformat()
                for (user_id, job_type), value in sorted(self._last_run_times.items())
            },
        }
