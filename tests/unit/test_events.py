"""
Unit tests for the event bus.
"""

import pytest

from agent_orchestrator.orchestration.events import EventBus, EventType


class TestEventBus:
    """Test publishing, subscribers and streams."""

    @pytest.fixture
    def bus(self):
        return EventBus(max_history=5, stream_queue_size=2)

    def test_sync_subscriber_without_loop_runs_inline(self, bus):
        received = []
        bus.subscribe(received.append)
        event = bus.publish(EventType.TASK_CREATED, task_id="t1")
        assert received == [event]
        assert event.payload == {"task_id": "t1"}

    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self, bus):
        sync_events, async_events = [], []

        async def on_event(event):
            async_events.append(event.type)

        bus.subscribe(sync_events.append)
        bus.subscribe(on_event)
        bus.publish(EventType.TASK_COMPLETED, task_id="t1")
        # Delivery is deferred until the loop runs
        assert sync_events == []

        await bus.drain()
        assert [e.type for e in sync_events] == [EventType.TASK_COMPLETED]
        assert async_events == [EventType.TASK_COMPLETED]

    @pytest.mark.asyncio
    async def test_type_filter(self, bus):
        received = []
        bus.subscribe(received.append, event_types=[EventType.TASK_FAILED, "task:blocked"])
        bus.publish(EventType.TASK_CREATED)
        bus.publish(EventType.TASK_BLOCKED, task_id="t2")
        await bus.drain()
        assert [e.type for e in received] == [EventType.TASK_BLOCKED]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_delivery(self, bus):
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(EventType.TASK_CREATED)
        await bus.drain()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        received = []
        subscription_id = bus.subscribe(received.append)
        assert bus.unsubscribe(subscription_id) is True
        assert bus.unsubscribe(subscription_id) is False
        bus.publish(EventType.TASK_CREATED)
        await bus.drain()
        assert received == []

    @pytest.mark.asyncio
    async def test_stream_drops_oldest_when_full(self, bus):
        queue = bus.open_stream()
        for task_id in ("t1", "t2", "t3"):
            bus.publish(EventType.TASK_CREATED, task_id=task_id)
        assert queue.qsize() == 2
        assert queue.get_nowait().payload["task_id"] == "t2"
        assert queue.get_nowait().payload["task_id"] == "t3"

        assert bus.close_stream(queue) is True
        bus.publish(EventType.TASK_CREATED, task_id="t4")
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_filtered_stream(self, bus):
        queue = bus.open_stream(event_types=[EventType.SESSION_CREATED])
        bus.publish(EventType.TASK_CREATED)
        bus.publish(EventType.SESSION_CREATED, session_id="s1")
        assert queue.qsize() == 1

    def test_history_bounded_and_filtered(self, bus):
        for i in range(7):
            bus.publish(EventType.TASK_CREATED if i % 2 else EventType.TASK_QUEUED, index=i)
        history = bus.history()
        assert [e.payload["index"] for e in history] == [2, 3, 4, 5, 6]
        assert [e.payload["index"] for e in bus.history(EventType.TASK_CREATED)] == [3, 5]
        assert [e.payload["index"] for e in bus.history(limit=2)] == [5, 6]

        bus.clear_history()
        assert bus.history() == []
