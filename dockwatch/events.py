"""Event types and in-process EventBus for engine signals.

The batch manager publishes job lifecycle events here; the intent
evaluator subscribes to ``JOB_COMPLETED`` to run scan-triggered intents.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Dict, List, Optional
from uuid import UUID, uuid4

from dockwatch.clock import utcnow

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Engine event types."""

    # Batch job lifecycle
    JOB_STARTED = auto()
    JOB_COMPLETED = auto()
    JOB_FAILED = auto()

    # Intent lifecycle
    INTENT_DISPATCHED = auto()
    INTENT_COMPLETED = auto()
    INTENT_FAILED = auto()


@dataclass
class Event:
    """An engine event.

    Attributes:
        event_type: The type of event
        payload: Event-specific data
        event_id: Unique identifier for this event
        timestamp: When the event was created (naive UTC)
        source: Component that emitted the event
    """

    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utcnow)
    source: str = ""


# Type alias for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """In-process async event bus.

    Example:
        bus = EventBus()

        async def handler(event: Event) -> None:
            print(f"Received: {event.event_type}")

        bus.subscribe(EventType.JOB_COMPLETED, handler)
        await bus.publish(Event(EventType.JOB_COMPLETED, {"user_id": 1}))
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._event_history: List[Event] = []
        self._history_enabled: bool = False
        self._max_history: int = 1000

    def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """Subscribe a handler to a specific event type.

        Args:
            event_type: The event type to subscribe to
            handler: Async function to call when event is published

        Returns:
            Unsubscribe function to remove this subscription
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe a handler to all event types.

        Args:
            handler: Async function to call for every event

        Returns:
            Unsubscribe function to remove this subscription
        """
        self._global_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._global_handlers:
                self._global_handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: Event) -> None:
        """Publish an event to all subscribed handlers.

        Handlers run concurrently; an exception in one handler is logged
        and does not reach the publisher or the other handlers.

        Args:
            event: The event to publish
        """
        if self._history_enabled:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history:]

        handlers: List[EventHandler] = []
        handlers.extend(self._global_handlers)
        handlers.extend(self._handlers.get(event.event_type, []))

        if not handlers:
            return

        await asyncio.gather(
            *[self._safe_call(handler, event) for handler in handlers],
            return_exceptions=True,
        )

    async def _safe_call(self, handler: EventHandler, event: Event) -> None:
        """Call a handler, catching and logging exceptions."""
        try:
            await handler(event)
        except Exception as e:
            logger.error(f"Event handler error for {event.event_type.name}: {e}", exc_info=True)

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, []))

    def enable_history(self, max_size: int = 1000) -> None:
        """Enable event history tracking.

        Args:
            max_size: Maximum number of events to retain
        """
        self._history_enabled = True
        self._max_history = max_size

    def disable_history(self) -> None:
        """Disable event history tracking and clear history."""
        self._history_enabled = False
        self._event_history.clear()

    def get_history(
        self,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Get event history, optionally filtered.

        Args:
            event_type: Filter by event type
            limit: Maximum number of events to return

        Returns:
            List of events matching the filter criteria
        """
        events = self._event_history

        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]

        if limit is not None:
            events = events[-limit:]

        return list(events)

    def clear(self) -> None:
        """Clear all subscriptions and history."""
        self._handlers.clear()
        self._global_handlers.clear()
        self._event_history.clear()
