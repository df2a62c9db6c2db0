"""
Event bus for orchestration lifecycle notifications.

The orchestration core is the only producer. Subscribers are either
callbacks or bounded asyncio queues; neither can block the scheduling loop.
"""

import asyncio
import inspect
import itertools
import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from ..utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Published event names."""
    TASK_CREATED = "task:created"
    TASK_ASSIGNED = "task:assigned"
    TASK_STARTED = "task:started"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"
    TASK_BLOCKED = "task:blocked"
    TASK_REQUEUED = "task:requeued"
    TASK_QUEUED = "task:queued"
    TASK_REBALANCED = "task:rebalanced"
    TASK_CANCELLED = "task:cancelled"
    AGENT_REGISTERED = "agent:registered"
    AGENT_UNREGISTERED = "agent:unregistered"
    AGENT_STATUS_CHANGED = "agent:status_changed"
    CAPACITY_UPDATED = "capacity:updated"
    CAPACITY_BOTTLENECK = "capacity:bottleneck"
    METRICS_UPDATED = "metrics:updated"
    SESSION_CREATED = "session:created"
    SESSION_COMPLETED = "session:completed"
    SESSION_FAILED = "session:failed"


class OrchestratorEvent(BaseModel):
    """A published lifecycle event."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


EventHandler = Callable[[OrchestratorEvent], Any]


class _Subscription:
    def __init__(self, subscription_id: int, handler: EventHandler, event_types: Optional[Set[EventType]]):
        self.subscription_id = subscription_id
        self.handler = handler
        self.event_types = event_types
        self.is_async = inspect.iscoroutinefunction(handler)

    def matches(self, event: OrchestratorEvent) -> bool:
        return self.event_types is None or event.type in self.event_types


class _Stream:
    def __init__(self, queue: asyncio.Queue, event_types: Optional[Set[EventType]]):
        self.queue = queue
        self.event_types = event_types
        self.dropped = 0


class EventBus:
    """
    Outbound event stream.

    ``publish`` never awaits. Sync callbacks are deferred with ``call_soon``
    when a loop is running, async callbacks run as tasks, and stream queues
    drop their oldest event when full.
    """

    def __init__(self, max_history: int = 1000, stream_queue_size: int = 1000):
        self._subscriptions: Dict[int, _Subscription] = {}
        self._streams: List[_Stream] = []
        self._history: Deque[OrchestratorEvent] = deque(maxlen=max_history)
        self._ids = itertools.count(1)
        self._pending: Set[asyncio.Task] = set()
        self.stream_queue_size = stream_queue_size
        self.logger = get_logger(f"{__name__}.EventBus")

    def subscribe(self, handler: EventHandler, event_types: Optional[Iterable[EventType]] = None) -> int:
        """
        Register a callback.

        Args:
            handler: Sync or async callable taking an OrchestratorEvent
            event_types: Restrict delivery to these types; None means all

        Returns:
            Subscription ID for ``unsubscribe``
        """
        subscription_id = next(self._ids)
        types = {EventType(t) for t in event_types} if event_types is not None else None
        self._subscriptions[subscription_id] = _Subscription(subscription_id, handler, types)
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def open_stream(self, event_types: Optional[Iterable[EventType]] = None,
                    maxsize: Optional[int] = None) -> asyncio.Queue:
        """Open a bounded queue receiving matching events."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.stream_queue_size)
        types = {EventType(t) for t in event_types} if event_types is not None else None
        self._streams.append(_Stream(queue, types))
        return queue

    def close_stream(self, queue: asyncio.Queue) -> bool:
        for stream in list(self._streams):
            if stream.queue is queue:
                self._streams.remove(stream)
                return True
        return False

    def publish(self, event_type: EventType, **payload: Any) -> OrchestratorEvent:
        """
        Publish an event to history, streams and subscribers.

        Args:
            event_type: Event name
            **payload: Event data

        Returns:
            OrchestratorEvent: The published event
        """
        event = OrchestratorEvent(type=event_type, payload=payload)
        self._history.append(event)
        self.logger.debug("Event published", event_type=event.type.value)

        for stream in self._streams:
            if stream.event_types is not None and event.type not in stream.event_types:
                continue
            if stream.queue.full():
                stream.queue.get_nowait()
                stream.dropped += 1
                self.logger.warning("Event stream full, dropped oldest event", dropped=stream.dropped)
            stream.queue.put_nowait(event)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            if subscription.is_async:
                if loop is None:
                    self.logger.warning("No running loop, async subscriber skipped",
                                        event_type=event.type.value)
                    continue
                task = loop.create_task(self._invoke_async(subscription, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            elif loop is not None:
                loop.call_soon(self._invoke_sync, subscription, event)
            else:
                self._invoke_sync(subscription, event)

        return event

    def _invoke_sync(self, subscription: _Subscription, event: OrchestratorEvent):
        try:
            subscription.handler(event)
        except Exception:
            self.logger.exception("Event subscriber failed",
                                  subscription_id=subscription.subscription_id,
                                  event_type=event.type.value)

    async def _invoke_async(self, subscription: _Subscription, event: OrchestratorEvent):
        try:
            await subscription.handler(event)
        except Exception:
            self.logger.exception("Event subscriber failed",
                                  subscription_id=subscription.subscription_id,
                                  event_type=event.type.value)

    def history(self, event_type: Optional[EventType] = None, limit: Optional[int] = None) -> List[OrchestratorEvent]:
        """Recent events, oldest first."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self):
        self._history.clear()

    async def drain(self):
        """Let deferred sync callbacks run and wait for async subscribers to finish."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await asyncio.sleep(0)
