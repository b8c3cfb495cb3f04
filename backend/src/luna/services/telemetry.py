"""Telemetry collection service for assistant interactions."""

import threading
from typing import Any, Callable, Optional

from luna.contracts.telemetry import TelemetryEvent, TelemetryEventType
from luna.logging_config import get_logger

logger = get_logger(__name__)

# Type alias for event callback
TelemetryCallback = Callable[[TelemetryEvent], None]


class TelemetryCollector:
    """
    In-memory telemetry collector with optional callback hook.

    Stores TelemetryEvent records for inspection and forwards each one to
    the callback, enabling integration with an audit-log exporter.
    Callback failures are logged and never reach the conversation flow.
    """

    def __init__(
        self,
        callback: Optional[TelemetryCallback] = None,
        max_events: int = 1000,
    ):
        if max_events <= 0:
            raise ValueError("max_events must be > 0")
        self._events: list[TelemetryEvent] = []
        self._callback = callback
        self._max_events = max_events
        self._lock = threading.Lock()

    def emit(
        self,
        session_id: str,
        event_type: TelemetryEventType,
        **metadata: Any,
    ) -> TelemetryEvent:
        """Build and record an event."""
        event = TelemetryEvent(session_id=session_id, event_type=event_type, metadata=metadata)
        self.record(event)
        return event

    def record(self, event: TelemetryEvent) -> None:
        """
        Record an event. Calls callback if registered.
        Evicts oldest event if max_events exceeded.
        """
        with self._lock:
            if len(self._events) >= self._max_events:
                self._events.pop(0)
            self._events.append(event)
        if self._callback is not None:
            try:
                self._callback(event)
            except Exception as exc:
                logger.warning(
                    "telemetry_callback_failed",
                    event_type=event.event_type,
                    error_type=type(exc).__name__,
                )

    def get_events(self, event_type: TelemetryEventType | None = None) -> list[TelemetryEvent]:
        """Return recorded events (newest last), optionally filtered by type."""
        with self._lock:
            if event_type is None:
                return list(self._events)
            return [e for e in self._events if e.event_type == event_type]

    def get_latest(self, n: int = 1) -> list[TelemetryEvent]:
        """Return the N most recent events."""
        with self._lock:
            return list(self._events[-n:])

    def clear(self) -> None:
        """Clear all stored events."""
        with self._lock:
            self._events.clear()

    @property
    def count(self) -> int:
        """Number of events currently stored."""
        with self._lock:
            return len(self._events)
