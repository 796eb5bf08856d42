"""
Integration tests for ordersync/events.py

Tests the event-driven publish/subscribe system.
"""
import pytest
from typing import Any, Dict, List

from ordersync.events import Event, EventBus, SyncEvent
from ordersync.observability import correlation_context


class TestEventBus:
    """Tests for EventBus class."""

    def setup_method(self):
        """Create fresh event bus for each test."""
        self.bus = EventBus()

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers(self):
        """Emitting event with no handlers succeeds silently."""
        event = await self.bus.emit(SyncEvent.SYNC_STARTED, {"cycle_id": "abc"})
        assert event.type == SyncEvent.SYNC_STARTED
        assert event.data["cycle_id"] == "abc"

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self):
        """Subscribed handler receives events."""
        received: List[Dict[str, Any]] = []

        @self.bus.on(SyncEvent.ORDERS_IMPORTED)
        async def handler(data: dict):
            received.append(data)

        await self.bus.emit(SyncEvent.ORDERS_IMPORTED, {"count": 10})

        assert len(received) == 1
        assert received[0]["count"] == 10

    @pytest.mark.asyncio
    async def test_multiple_handlers(self):
        """Multiple handlers all receive the event."""
        results = []

        @self.bus.on(SyncEvent.SYNC_COMPLETED)
        async def handler1(data: dict):
            results.append("handler1")

        @self.bus.on(SyncEvent.SYNC_COMPLETED)
        async def handler2(data: dict):
            results.append("handler2")

        await self.bus.emit(SyncEvent.SYNC_COMPLETED, {})

        assert sorted(results) == ["handler1", "handler2"]

    @pytest.mark.asyncio
    async def test_wildcard_handler(self):
        """Wildcard handler receives all events."""
        received = []

        @self.bus.on()
        async def wildcard_handler(data: dict):
            received.append(data)

        await self.bus.emit(SyncEvent.SYNC_STARTED, {"type": "start"})
        await self.bus.emit(SyncEvent.SYNC_ALERT, {"type": "alert"})

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_handler_isolation(self):
        """Failing handler doesn't affect other handlers."""
        results = []

        @self.bus.on(SyncEvent.ORDERS_IMPORTED)
        async def failing_handler(data: dict):
            raise ValueError("Handler error")

        @self.bus.on(SyncEvent.ORDERS_IMPORTED)
        async def working_handler(data: dict):
            results.append("success")

        await self.bus.emit(SyncEvent.ORDERS_IMPORTED, {})

        assert results == ["success"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Can unsubscribe handlers."""
        received = []

        async def handler(data: dict):
            received.append(data)

        self.bus.subscribe(SyncEvent.SYNC_STARTED, handler)
        await self.bus.emit(SyncEvent.SYNC_STARTED, {"n": 1})
        assert self.bus.unsubscribe(SyncEvent.SYNC_STARTED, handler) is True
        assert self.bus.unsubscribe(SyncEvent.SYNC_STARTED, handler) is False

        await self.bus.emit(SyncEvent.SYNC_STARTED, {"n": 2})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for n in range(5):
            await bus.emit(SyncEvent.SYNC_STARTED, {"n": n})

        history = bus.get_history()
        assert [entry["data"]["n"] for entry in history] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_history_filter_and_last(self):
        await self.bus.emit(SyncEvent.SYNC_STARTED, {})
        await self.bus.emit(SyncEvent.SYNC_FAILED, {"error": "down"})
        await self.bus.emit(SyncEvent.SYNC_STARTED, {})

        assert len(self.bus.get_history(SyncEvent.SYNC_STARTED)) == 2
        assert self.bus.last(SyncEvent.SYNC_FAILED).data == {"error": "down"}
        assert self.bus.last(SyncEvent.SYNC_ALERT) is None

        self.bus.clear_history()
        assert self.bus.get_history() == []

    @pytest.mark.asyncio
    async def test_clear_handlers(self):
        received = []

        @self.bus.on()
        async def handler(data: dict):
            received.append(data)

        self.bus.clear_handlers()
        await self.bus.emit(SyncEvent.SYNC_STARTED, {})
        assert received == []


class TestEvent:
    @pytest.mark.asyncio
    async def test_carries_correlation_id(self):
        bus = EventBus()
        with correlation_context("cycle-7"):
            event = await bus.emit(SyncEvent.SYNC_COMPLETED, {"new": 1}, source="dispatcher")

        data = event.to_dict()
        assert data["event_type"] == "sync.completed"
        assert data["metadata"]["correlation_id"] == "cycle-7"
        assert data["metadata"]["source"] == "dispatcher"
        assert isinstance(event, Event)
