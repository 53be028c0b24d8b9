"""Main daemon service for dockwatch.

This module provides the application root of the engine:
- Construction and wiring of the event bus, batch manager, scheduler and
  intent evaluator
- Handler registration (explicit and entry-point discovered)
- Service lifecycle management (start/stop)
- Signal handling for graceful shutdown
"""

import asyncio
import logging
import signal
from typing import Any, Dict, Iterable, Optional

from dockwatch.batch.handler import JobHandler
from dockwatch.batch.manager import BatchManager
from dockwatch.batch.registry import HandlerRegistry
from dockwatch.batch.scheduler import Scheduler
from dockwatch.batch.store import RunStore
from dockwatch.config import DockwatchConfig
from dockwatch.database.connection import create_tables
from dockwatch.events import EventBus
from dockwatch.intents.evaluator import IntentEvaluator
from dockwatch.intents.executor import IntentExecutor, RecordingIntentExecutor
from dockwatch.intents.store import IntentStore

logger = logging.getLogger(__name__)


class DockwatchDaemon:
    """Main daemon service for dockwatch.

    The DockwatchDaemon owns the batch manager, the interval scheduler and
    the intent evaluator. It wires them together, registers job handlers
    and manages their lifecycle.

    Attributes:
        _config: dockwatch configuration
        _handlers: Handlers registered explicitly by the caller
        _intent_executor: Collaborator that executes intents
        _discover: Whether to discover handlers from entry points
        _running: Whether the daemon is running
        _shutdown_event: Event to signal shutdown

    Example:
        daemon = DockwatchDaemon(config, handlers=[registry_scan])

        # Start daemon
        await daemon.start()

        # Run until shutdown signal
        await daemon.run_until_shutdown()

        # Stop daemon
        await daemon.stop()
    """

    def __init__(
        self,
        config: DockwatchConfig,
        handlers: Optional[Iterable[JobHandler]] = None,
        intent_executor: Optional[IntentExecutor] = None,
        discover: bool = True,
    ):
        """Initialize the daemon service.

        Args:
            config: dockwatch configuration
            handlers: Job handlers to register in addition to discovered ones
            intent_executor: Intent executor (default: RecordingIntentExecutor)
            discover: Discover handlers from the ``dockwatch.handlers`` entry points
        """
        self._config = config
        self._handlers = list(handlers or [])
        self._intent_executor = intent_executor
        self._discover = discover

        self._event_bus: Optional[EventBus] = None
        self._batch_manager: Optional[BatchManager] = None
        self._scheduler: Optional[Scheduler] = None
        self._intent_evaluator: Optional[IntentEvaluator] = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the daemon services.

        This builds and starts all daemon components:
        1. Database tables
        2. Event bus, batch manager, scheduler and intent evaluator
        3. Job handlers
        4. Crash recovery, then the two polling loops
        """
        if self._running:
            logger.warning("dockwatch daemon already running")
            return

        logger.info("Starting dockwatch daemon...")
        scheduler_config = self._config.scheduler

        create_tables(self._config)

        self._event_bus = EventBus()
        self._batch_manager = BatchManager(
            RunStore(),
            config=scheduler_config,
            event_bus=self._event_bus,
        )
        self._scheduler = Scheduler(self._batch_manager, config=scheduler_config)
        self._batch_manager.set_scheduler(self._scheduler)

        intent_store = IntentStore()
        executor = self._intent_executor or RecordingIntentExecutor(store=intent_store)
        self._intent_evaluator = IntentEvaluator(
            executor,
            store=intent_store,
            event_bus=self._event_bus,
            config=scheduler_config,
        )
        self._batch_manager.set_intent_evaluator(self._intent_evaluator)

        self._register_handlers()

        if not scheduler_config.enabled:
            logger.warning("Scheduling is disabled by configuration, no jobs or intents will run")
        else:
            await self._batch_manager.start()

        self._running = True
        logger.info("dockwatch daemon started successfully")

    def _register_handlers(self) -> None:
        disabled = set(self._config.scheduler.disabled_job_types)

        for handler in self._handlers:
            if handler.job_type in disabled:
                logger.info(f"Job type '{handler.job_type}' is disabled by configuration")
                continue
            self._batch_manager.register_handler(handler)

        if not self._discover:
            return

        registry = HandlerRegistry(disabled_job_types=disabled)
        for job_type, handler in registry.discover_all().items():
            if job_type in self._batch_manager.get_registered_job_types():
                logger.debug(f"Discovered handler '{job_type}' already registered, skipping")
                continue
            self._batch_manager.register_handler(handler)

    async def stop(self) -> None:
        """Stop the daemon services.

        Stops the pollers and waits for in-flight jobs and intents.
        """
        logger.info("Stopping dockwatch daemon...")

        self._running = False

        if self._batch_manager:
            try:
                await self._batch_manager.stop()
                logger.info("Batch manager stopped")
            except Exception as e:
                logger.warning(f"Error stopping batch manager: {e}")

        logger.info("dockwatch daemon stopped")

    async def run_until_shutdown(self) -> None:
        """Run daemon until shutdown signal received.

        This method blocks until request_shutdown() is called,
        typically via a signal handler.
        """
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request daemon shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def event_bus(self) -> Optional[EventBus]:
        return self._event_bus

    @property
    def batch_manager(self) -> Optional[BatchManager]:
        """Get the batch manager, or None if not started."""
        return self._batch_manager

    @property
    def scheduler(self) -> Optional[Scheduler]:
        return self._scheduler

    @property
    def intent_evaluator(self) -> Optional[IntentEvaluator]:
        return self._intent_evaluator

    def get_status(self) -> Dict[str, Any]:
        """Get daemon status information."""
        return {
            "running": self._running,
            "batch_manager": self._batch_manager.get_status() if self._batch_manager else None,
        }


async def run_daemon(config: DockwatchConfig, options: Optional[Dict[str, Any]] = None) -> None:
    """Run the dockwatch daemon with signal handling.

    This function sets up signal handlers for graceful shutdown and
    runs the daemon until a shutdown signal is received.

    Args:
        config: dockwatch configuration
        options: Daemon options including:
            - handlers: Extra job handlers to register
            - intent_executor: Intent executor to use
            - discover: Discover handlers from entry points (default True)

    Example:
        await run_daemon(config, {"handlers": [registry_scan]})
    """
    options = options or {}
    daemon = DockwatchDaemon(
        config,
        handlers=options.get("handlers"),
        intent_executor=options.get("intent_executor"),
        discover=options.get("discover", True),
    )

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        daemon.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda signum, frame: handle_signal(signal.Signals(signum)))

    try:
        await daemon.start()
        await daemon.run_until_shutdown()
    finally:
        await daemon.stop()
