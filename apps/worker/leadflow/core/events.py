from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


LEAD_CREATED = "lead.created"
LEAD_STAGE_CHANGED = "lead.stage_changed"
LEAD_STATUS_CHANGED = "lead.status_changed"
LEAD_AUTOMATION_REQUESTED = "lead.automation_requested"


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of CRM domain events to in-process subscribers."""

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event_name]:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event_name, ()):
            self._handlers[event_name].remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> InternalEvent:
        event = InternalEvent(name=event_name, payload=payload)
        # Handlers may unsubscribe while being called.
        for handler in tuple(self._handlers.get(event_name, ())):
            handler(event)
        return event


event_bus = InProcessEventBus()
