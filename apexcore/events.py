"""
Event Bus

Observability hooks for scale-events and orchestration progress. External
autoscalers, dashboards and loggers subscribe here; the core never depends
on anyone listening.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger("apexcore.events")


class EventType(str, Enum):
    SCALE_UP = "scale_up"
    SLOT_ACQUIRED = "slot_acquired"
    SLOT_RELEASED = "slot_released"
    ORCHESTRATOR_STARTED = "orchestrator_started"
    PLAN_CREATED = "plan_created"
    SUBTASK_COMPLETED = "subtask_completed"
    ORCHESTRATOR_COMPLETED = "orchestrator_completed"


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """
    A small publish/subscribe hub.

    Handlers may be sync or async. Sync `publish()` runs sync handlers inline
    and schedules async ones on the running loop; `publish_async()` awaits
    them. A failing handler is logged and never affects the publisher.

    Example:
        bus = EventBus()
        unsubscribe = bus.subscribe(EventType.SCALE_UP, lambda e: print(e.data))
        bus.publish(Event(EventType.SCALE_UP, {"category": "physics"}))
        unsubscribe()
    """

    def __init__(self):
        self._handlers: Dict[Optional[EventType], List[EventHandler]] = {}
        # Strong references to scheduled async handlers until they finish
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Optional[EventType], handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler. Pass `None` as the type to receive every event.

        Returns:
            A function that removes the handler
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        return self.subscribe(None, handler)

    def _handlers_for(self, event: Event) -> List[EventHandler]:
        return list(self._handlers.get(event.type, [])) + list(self._handlers.get(None, []))

    def publish(self, event: Event) -> None:
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    try:
                        task = asyncio.get_running_loop().create_task(self._guard(result, event))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
                    except RuntimeError:
                        result.close()
                        logger.warning(f"Dropped async handler for {event.type.value}: no running loop")
            except Exception as e:
                logger.error(f"Event handler failed for {event.type.value}: {e}")

    async def publish_async(self, event: Event) -> None:
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler failed for {event.type.value}: {e}")

    async def _guard(self, coro: Awaitable[None], event: Event) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Event handler failed for {event.type.value}: {e}")

    @property
    def pending(self) -> int:
        """Number of async handlers scheduled by publish() that have not finished."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every async handler scheduled by publish()."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def clear(self) -> None:
        self._handlers.clear()


_default_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the process-wide default event bus."""
    global _default_bus
    if _default_bus is None:
        _default_bus = EventBus()
    return _default_bus
