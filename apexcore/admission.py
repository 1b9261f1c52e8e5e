"""
Admission Controller

A fixed-capacity gate on concurrently in-flight tasks (the "hive scaler").
Acquisition never blocks: saturated callers are rejected, and the rejection
is published as a SCALE_UP event for external autoscaling hooks.
"""

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Set, Union

from .errors import SaturatedError
from .events import Event, EventBus, EventType, get_event_bus
from .tasks import TaskCategory

logger = logging.getLogger("apexcore.admission")

DEFAULT_MAX_WORKERS = 8


@dataclass(frozen=True)
class WorkerSlot:
    """A capacity token. Held by at most one task at a time."""
    id: int
    category: Optional[str] = None


class AdmissionController:
    """
    Caps concurrent work at `max_workers` slots.

    Instances are passed by reference to whoever needs them, so tests and
    independent pools never share a counter.

    Example:
        admission = AdmissionController(max_workers=4)
        slot = admission.try_acquire(TaskCategory.PHYSICS)
        if slot is None:
            ...  # rejected: queue and poll again later
        try:
            ...
        finally:
            admission.release(slot)
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS, event_bus: Optional[EventBus] = None):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.max_workers = max_workers
        self.event_bus = event_bus or get_event_bus()
        self._lock = threading.Lock()
        self._held: Set[int] = set()
        self._ids = itertools.count(1)

    @property
    def capacity(self) -> int:
        return self.max_workers

    def try_acquire(self, category: Union[TaskCategory, str, None] = None) -> Optional[WorkerSlot]:
        """
        Take a slot if one is free.

        Returns:
            A WorkerSlot, or None when every slot is held (rejected)
        """
        label = category.value if isinstance(category, TaskCategory) else category
        with self._lock:
            if len(self._held) >= self.max_workers:
                active = len(self._held)
                slot = None
            else:
                slot = WorkerSlot(id=next(self._ids), category=label)
                self._held.add(slot.id)
                active = len(self._held)

        if slot is None:
            logger.info(f"Saturated at {active}/{self.max_workers} workers ({label}), requesting scale-up")
            self.event_bus.publish(Event(EventType.SCALE_UP, {
                "category": label,
                "current_workers": active,
                "max_workers": self.max_workers
            }))
            return None

        logger.debug(f"Slot {slot.id} acquired ({active}/{self.max_workers})")
        self.event_bus.publish(Event(EventType.SLOT_ACQUIRED, {"slot": slot.id, "category": label}))
        return slot

    def release(self, slot: Optional[WorkerSlot]) -> None:
        """Return a slot to the pool. Releasing an unknown or already-released slot is a no-op."""
        if slot is None:
            return
        with self._lock:
            if slot.id not in self._held:
                released = False
            else:
                self._held.discard(slot.id)
                released = True
            active = len(self._held)

        if not released:
            logger.warning(f"Ignoring release of slot {slot.id}: not held")
            return

        logger.debug(f"Slot {slot.id} released ({active}/{self.max_workers})")
        self.event_bus.publish(Event(EventType.SLOT_RELEASED, {"slot": slot.id, "category": slot.category}))

    def active_count(self) -> int:
        with self._lock:
            return len(self._held)

    def available(self) -> int:
        with self._lock:
            return self.max_workers - len(self._held)

    @contextmanager
    def slot(self, category: Union[TaskCategory, str, None] = None) -> Iterator[WorkerSlot]:
        """
        Scoped acquire-use-release.

        Raises:
            SaturatedError: If no slot is free
        """
        slot = self.try_acquire(category)
        if slot is None:
            raise SaturatedError(category.value if isinstance(category, TaskCategory) else category)
        try:
            yield slot
        finally:
            self.release(slot)

    def __repr__(self) -> str:
        return f"AdmissionController(active={self.active_count()}, max_workers={self.max_workers})"
