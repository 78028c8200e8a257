# hubnet/core/events.py
"""
Event Bus - In-process pub/sub for topology and deployment events

- Publishers (orchestrator, deployer) emit events without knowing consumers
- Subscribers (audit log, tests, integrations) react independently
- A failing handler never breaks the operation that published the event
"""

import asyncio
import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventPriority(Enum):
    """Event handler priority levels"""
    HIGH = 1
    NORMAL = 5
    LOW = 10      # Logging, audit


@dataclass
class Event:
    """Base event class"""
    event_type: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


@dataclass
class HandlerRegistration:
    """Registration info for an event handler"""
    handler: Callable
    priority: EventPriority
    is_async: bool


class EventBus:
    """
    In-process Event Bus

    Features:
    - Sync and async handlers
    - Priority-based execution order
    - Bounded event history for debugging and tests
    """

    def __init__(self, max_history_size: int = 1000):
        self._handlers: Dict[str, List[HandlerRegistration]] = {}
        self._event_history: List[Event] = []
        self._max_history_size = max_history_size

    def subscribe(
        self,
        event_type: str,
        handler: Callable,
        priority: EventPriority = EventPriority.NORMAL,
    ) -> None:
        """
        Subscribe a handler to an event type

        Args:
            event_type: Event type to subscribe to (e.g., "HubCreated"), or
                "*" for every event
            handler: Callable that receives the Event
            priority: Execution priority (HIGH runs first)
        """
        registration = HandlerRegistration(
            handler=handler,
            priority=priority,
            is_async=asyncio.iscoroutinefunction(handler),
        )
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(registration)
        handlers.sort(key=lambda r: r.priority.value)

        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable) -> bool:
        """Remove a handler from an event type"""
        if event_type not in self._handlers:
            return False

        original_count = len(self._handlers[event_type])
        self._handlers[event_type] = [
            r for r in self._handlers[event_type] if r.handler != handler
        ]
        return len(self._handlers[event_type]) < original_count

    def _handlers_for(self, event_type: str) -> List[HandlerRegistration]:
        handlers = self._handlers.get(event_type, []) + self._handlers.get("*", [])
        return sorted(handlers, key=lambda r: r.priority.value)

    def publish(self, event: Event) -> None:
        """
        Publish an event synchronously

        Async handlers are skipped here; use publish_async() from a coroutine.
        """
        self._add_to_history(event)
        for registration in self._handlers_for(event.event_type):
            if registration.is_async:
                logger.debug(f"Async handler skipped in sync publish: {event.event_type}")
                continue
            self._run_sync(registration, event)

    async def publish_async(self, event: Event) -> None:
        """Publish an event; async handlers run concurrently, sync handlers in order"""
        self._add_to_history(event)

        tasks = []
        for registration in self._handlers_for(event.event_type):
            if registration.is_async:
                tasks.append(self._run_async(registration, event))
            else:
                self._run_sync(registration, event)

        if tasks:
            await asyncio.gather(*tasks)

    def _run_sync(self, registration: HandlerRegistration, event: Event) -> None:
        try:
            registration.handler(event)
        except Exception as e:
            logger.error(
                f"Handler {getattr(registration.handler, '__name__', registration.handler)} "
                f"failed on {event.event_type}: {e}\n{traceback.format_exc()}"
            )

    async def _run_async(self, registration: HandlerRegistration, event: Event) -> None:
        try:
            await registration.handler(event)
        except Exception as e:
            logger.error(
                f"Async handler {getattr(registration.handler, '__name__', registration.handler)} "
                f"failed on {event.event_type}: {e}\n{traceback.format_exc()}"
            )

    def _add_to_history(self, event: Event) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history_size:
            self._event_history = self._event_history[-self._max_history_size:]

    def get_history(self, event_type: Optional[str] = None, limit: int = 100) -> List[Event]:
        """Get recent events, optionally filtered by type"""
        history = self._event_history
        if event_type:
            history = [e for e in history if e.event_type == event_type]
        return history[-limit:]

    def get_subscriptions(self) -> Dict[str, int]:
        return {event_type: len(handlers) for event_type, handlers in self._handlers.items()}

    def clear(self) -> None:
        """Clear all subscriptions and history (for testing)"""
        self._handlers.clear()
        self._event_history.clear()


# Application wide instance; components accept their own bus for isolation
event_bus = EventBus()
