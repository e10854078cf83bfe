import logging
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple

logger = logging.getLogger(__name__)

ENTITY_CONFLICT_DETECTED = "entityConflictDetected"
ENTITY_CONFLICT_RESOLVED = "entityConflictResolved"


def updated_event(entity_type: str) -> str:
    """``Account`` -> ``accountUpdated``."""
    return f"{entity_type[:1].lower()}{entity_type[1:]}Updated"


class Event(NamedTuple):
    name: str
    ts: str
    payload: dict[str, Any]


Handler = Callable[[Event], None]


class EventBus:
    """In-process notifier for live-update subscribers.

    Delivery is best effort: a failing handler is logged and skipped, it never
    affects the write that triggered the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subscribers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        handlers = self._subscribers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, name: str, payload: dict[str, Any]) -> int:
        handlers = list(self._subscribers.get(name, []))
        if not handlers:
            return 0
        event = Event(
            name=name,
            ts=datetime.now(timezone.utc).isoformat(),
            payload=payload,
        )
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"event_handler_failed: event={name}")
                continue
            delivered += 1
        return delivered
