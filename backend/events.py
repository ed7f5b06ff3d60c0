"""
Outbound event surface for the probe engine.

The test queue, run manager and scheduler only depend on EventSink.emit();
the presentation layer subscribes to an EventBus to receive updates.
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events emitted by the probe engine."""
    TEST_STARTED = "test-started"
    TEST_PROGRESS = "test-progress"
    TEST_STREAM_READY = "test-stream-ready"
    TEST_STREAM_ENDING = "test-stream-ending"
    BANDWIDTH_SAMPLE = "bandwidth-sample"
    TEST_COMPLETED = "test-completed"
    RUN_CREATED = "run-created"
    RUN_STARTED = "run-started"
    RUN_PROGRESS = "run-progress"
    RUN_COMPLETED = "run-completed"
    RUN_PAUSED = "run-paused"
    RUN_RESUMED = "run-resumed"
    RUN_CANCELLED = "run-cancelled"
    RUN_ERROR = "run-error"
    QUEUE_DEPTH_CHANGED = "queue-depth-changed"
    QUEUE_PAUSED = "queue-paused"
    QUEUE_RESUMED = "queue-resumed"
    QUEUE_CANCELLED = "queue-cancelled"
    SCHEDULED_RUN_STARTED = "scheduled-run-started"


class EventSink(ABC):
    """Anything that can receive engine events."""

    @abstractmethod
    def emit(self, event: EventType, payload: Optional[dict] = None) -> None:
        pass


class NullEventSink(EventSink):
    """Discards every event."""

    def emit(self, event: EventType, payload: Optional[dict] = None) -> None:
        return None


Listener = Callable[[EventType, dict], Any]


class EventBus(EventSink):
    """
    Fan-out event sink.

    Listeners are called synchronously in subscription order. A listener
    that returns an awaitable is scheduled on the running loop. Listener
    failures are logged and never propagate into the emitting component.
    """

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, event: EventType, payload: Optional[dict] = None) -> None:
        payload = payload or {}
        for listener in list(self._listeners):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error("[EVENTS] Listener failed for %s: %s", event.value, e)


# Global event bus
_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus, creating it on first use."""
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus
