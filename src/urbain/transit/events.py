"""
In-process event bus.

Publication is fire-and-forget with at-least-once intent: handlers run as
background tasks, their failures are logged and never reach the publisher.
Consumers must be idempotent; events carry the subscription id as key.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class EventPriority(str, Enum):
    """Event priority levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class EventStatus(str, Enum):
    """Delivery status of an event."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class EventMetadata(BaseModel):
    """Routing metadata attached to every event."""

    model_config = ConfigDict(extra="allow")

    key: str | None = Field(None, description="Partition key (subscription id)")
    source: str = Field("subscriptions", description="Emitting subsystem")
    user_id: str | None = Field(None, description="User that triggered the event")


class Event(BaseModel):
    """A published event."""

    model_config = ConfigDict()

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    priority: EventPriority = EventPriority.NORMAL
    status: EventStatus = EventStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Publish/subscribe dispatcher keyed by event type."""

    def __init__(self, keep_history: bool = True) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[None]] = set()
        self.keep_history = keep_history
        self.published: list[Event] = []

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a coroutine handler for an event type."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        priority: EventPriority = EventPriority.NORMAL,
    ) -> Event:
        """Publish an event; handlers are scheduled, not awaited."""
        event = Event(
            event_type=event_type,
            payload=payload,
            metadata=EventMetadata(**(metadata or {})),
            priority=priority,
        )
        if self.keep_history:
            self.published.append(event)

        for handler in list(self._handlers.get(event_type, [])):
            task = asyncio.create_task(self._dispatch(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.debug("event.published", event_type=event_type, event_id=event.event_id)
        return event

    async def _dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
            event.status = EventStatus.DELIVERED
        except Exception as exc:
            event.status = EventStatus.FAILED
            logger.error(
                "event.handler_failed",
                event_type=event.event_type,
                event_id=event.event_id,
                error=str(exc),
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for all in-flight handler tasks (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide event bus (mainly for testing)."""
    global _event_bus
    _event_bus = None


__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "EventMetadata",
    "EventPriority",
    "EventStatus",
    "get_event_bus",
    "reset_event_bus",
]
