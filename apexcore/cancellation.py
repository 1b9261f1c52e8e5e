"""Run-level cancellation."""

import threading
from typing import Optional


class CancellationToken:
    """
    A one-shot cancellation flag shared by an Orchestrator run and its Apex Loops.

    Cancellation is cooperative: holders check `cancelled` at their own
    boundaries (before acquiring a slot, before a retry). An in-flight
    provider call is never interrupted.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
