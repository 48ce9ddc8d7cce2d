"""
Lifecycle events emitted by the scheduler core.

External layers (HTTP API, websocket push) subscribe here; the core never
imports them. Handlers run synchronously on the control loop, in
subscription order.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event names, as seen by subscribers."""
    WORKER_START = "worker.start"        # payload: Run
    WORKER_COMPLETE = "worker.complete"  # payload: Run
    QUEUE_NEW = "queue.new"              # payload: Run
    TASK_UPDATED = "task.updated"        # payload: task id or collection name
    TASK_DELETED = "task.deleted"        # payload: task id or collection name
    RUN_SKIPPED = "run.skipped"          # payload: Run failed by dependency cascade


@dataclass(frozen=True)
class Event:
    """A single emitted event."""
    type: EventType
    payload: Any = None


Handler = Callable[[Event], None]


class EventBus:
    """Typed publish/subscribe channel."""

    def __init__(self):
        self._handlers: Dict[EventType, List[Handler]] = {}

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_type: EventType, payload: Optional[Any] = None) -> Event:
        """
        Deliver an event to every subscriber.

        A failing handler is logged and does not stop delivery to the rest.
        """
        event = Event(type=event_type, payload=payload)
        for handler in list(self._handlers.get(event_type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler for {event_type.value} failed: {e}", exc_info=True)
        return event
