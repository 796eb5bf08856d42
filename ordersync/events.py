"""
Notification sink for the sync engine.

A small async publish/subscribe bus. The orchestrator and dispatcher emit
lifecycle and order events; the hosting application subscribes to show a
running indicator, push alerts, or refresh views. The bus is passed in
explicitly, there is no module-level instance.

Usage:
    bus = EventBus()

    @bus.on(SyncEvent.ORDERS_IMPORTED)
    async def show_new_orders(data: dict):
        print(f"{data['count']} new orders")

    await bus.emit(SyncEvent.ORDERS_IMPORTED, {"count": 2, "sample": [...]})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from ordersync.observability import get_logger, get_correlation_id

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class SyncEvent(Enum):
    """Events emitted by the sync engine."""

    # Cycle lifecycle
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"

    # Orders
    ORDERS_IMPORTED = "orders.imported"
    ORDERS_STATUS_CHANGED = "orders.status_changed"
    HIGHLIGHTS_CLEARED = "highlights.cleared"

    # Sustained failure, operators should look
    SYNC_ALERT = "sync.alert"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "orchestrator"


@dataclass
class Event:
    """Wrapper for event data with metadata."""

    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async event bus.

    Features:
    - Multiple handlers per event, plus wildcard handlers
    - Error isolation (one handler failure doesn't affect others)
    - Bounded event history for the running indicator and debugging
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[SyncEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def on(self, event_type: Optional[SyncEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator to register a handler; None subscribes to every event."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        if event_type is None:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            f"Registered handler {getattr(handler, '__name__', handler)} "
            f"for {event_type.value if event_type else '*'}"
        )

    def unsubscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> bool:
        """
        Returns:
            True if handler was found and removed
        """
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "orchestrator",
    ) -> Event:
        """
        Emit an event to all subscribed handlers.

        Handlers run concurrently; a failing handler is logged and does not
        affect the emitter or the other handlers.
        """
        event = Event(
            type=event_type,
            data=data or {},
            metadata=EventMetadata(source=source),
        )

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            logger.debug(f"No handlers for event {event_type.value}")
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed for {event_type.value}: {result}",
                    extra={"event_type": event_type.value},
                )

        return event

    def get_history(self, event_type: Optional[SyncEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Recent events, newest last."""
        events = self._history
        if event_type:
            events = [e for e in events if e.type == event_type]
        return [e.to_dict() for e in events[-limit:]]

    def last(self, event_type: SyncEvent) -> Optional[Event]:
        for event in reversed(self._history):
            if event.type == event_type:
                return event
        return None

    def clear_handlers(self) -> None:
        self._handlers.clear()
        self._wildcard_handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()
