"""Compile progress notifications and cooperative cancellation.

The Director pushes ``CompileEvent`` objects into a ``CompileEventChannel``;
callers subscribe plain callables to it. Cancellation is requested through a
``CancellationToken`` that may be set from another thread or a signal handler.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CompileEventType(str, Enum):
    PROGRESS = "compilation-progress"
    FINALIZED = "finalize"
    FAILED = "task-stopped"
    CANCELLED = "task-cancelled"


@dataclass
class CompileEvent:
    """Event data for compile notifications."""

    type: CompileEventType
    progress: float | None = None
    payload: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


CompileEventCallback = Callable[[CompileEvent], None]


class CompileEventChannel:
    """Explicit update channel between the Director and its observers."""

    def __init__(self) -> None:
        self._subscribers: list[CompileEventCallback] = []
        self._lock = threading.Lock()
        self.history: list[CompileEvent] = []

    def subscribe(self, callback: CompileEventCallback) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: CompileEventCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: CompileEvent) -> int:
        """Deliver an event to every subscriber.

        Returns:
            Number of subscribers notified
        """
        with self._lock:
            self.history.append(event)
            subscribers = list(self._subscribers)

        notified = 0
        for callback in subscribers:
            try:
                callback(event)
                notified += 1
            except Exception:
                # An observer must never break the compile
                logger.exception(f"[Events] Subscriber failed on {event.type.value}")
        return notified

    def progress(self, value: float) -> None:
        self.emit(CompileEvent(type=CompileEventType.PROGRESS, progress=value))

    def events_of(self, event_type: CompileEventType) -> list[CompileEvent]:
        return [event for event in self.history if event.type == event_type]


class CancellationToken:
    """Thread-safe stop flag, observed between suspension points."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("[Events] Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
