"""
In-process publish/subscribe bus.

Every component of the agent notifies the others through one EventBus:
- Closed set of event types (EventType)
- Synchronous delivery in subscription order
- A failing handler is logged and does not stop the remaining handlers
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from logging_setup import get_logger, Component


logger = get_logger(Component.EVENT_BUS)


class EventType(str, Enum):
    """All events that travel over the bus."""

    # Capture stream controller
    CAPTURE_STARTED = "capture_started"
    CAPTURE_ENDED = "capture_ended"
    FINAL_TRANSCRIPT = "final_transcript"
    PARTIAL_TRANSCRIPT = "partial_transcript"
    CAPTURE_ERROR = "capture_error"

    # Synthesis provider
    SYNTHESIS_STARTED = "synthesis_started"
    SYNTHESIS_ENDED = "synthesis_ended"
    SYNTHESIS_ERROR = "synthesis_error"

    # Turn orchestrator
    TURN_INPUT_STARTED = "turn_input_started"
    REASONING_STARTED = "reasoning_started"
    REASONING_COMPLETED = "reasoning_completed"
    TURN_COMPLETED = "turn_completed"
    TURN_ERROR = "turn_error"
    TURN_ABANDONED = "turn_abandoned"
    HISTORY_CLEARED = "history_cleared"

    # Retrieval index
    DOCUMENT_INDEXED = "document_indexed"
    INDEX_CLEARED = "index_cleared"


@dataclass(frozen=True)
class BusEvent:
    """One published event as seen by handlers."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


Handler = Callable[[BusEvent], Any]


class EventBus:
    """Synchronous, in-order event dispatch with isolated handler failures."""

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[Handler]] = {}

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register a handler. Raises ValueError for unknown event types."""
        key = EventType(event_type)
        self._handlers.setdefault(key, []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Remove the first registration of handler; unknown handlers are ignored."""
        key = EventType(event_type)
        handlers = self._handlers.get(key)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[key]

    def publish(self, event_type: EventType | str, **payload: Any) -> BusEvent:
        """
        Deliver an event to every handler registered for its type.

        Handlers are snapshotted before dispatch, so handlers added during the
        publish are not called for this event.
        """
        key = EventType(event_type)
        event = BusEvent(type=key, payload=payload)
        for handler in list(self._handlers.get(key, ())):
            try:
                handler(event)
            except Exception as e:
                logger.exception(
                    "Event handler failed",
                    event_type=key.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error_type=type(e).__name__,
                )
        return event

    def clear(self, event_type: Optional[EventType | str] = None) -> None:
        """Drop handlers for one event type, or for all of them."""
        if event_type is None:
            self._handlers.clear()
        else:
            self._handlers.pop(EventType(event_type), None)

    def listener_count(self, event_type: EventType | str) -> int:
        return len(self._handlers.get(EventType(event_type), ()))

    def event_types(self) -> List[EventType]:
        """Event types that currently have at least one handler."""
        return list(self._handlers.keys())
