"""
In-process domain event bus.

``publish`` awaits every handler registered for the event's type, in
registration order, on the publisher's own task.  A failing handler is
logged and skipped; it never stops the remaining handlers and never
reaches the publisher.  Nothing is persisted: this is a fan-out point,
not a durable log.  Durable work belongs in the job queue.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable


class EventType(str, enum.Enum):
    CREATED = "post.created"
    UPDATED = "post.updated"
    DELETED = "post.deleted"


@dataclass(frozen=True)
class DomainEvent:
    type: EventType
    resource_id: int
    owner_id: int
    payload: dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {t: [] for t in EventType}
        self._log = logger or logging.getLogger(__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def handlers(self, event_type: EventType) -> list[EventHandler]:
        return list(self._handlers[event_type])

    async def publish(self, event: DomainEvent) -> None:
        # Copy so a handler subscribing mid-publish does not see this event.
        for handler in list(self._handlers[event.type]):
            try:
                await handler(event)
            except Exception:
                self._log.exception(
                    "Handler %s failed for %s (post %s)",
                    getattr(handler, "__qualname__", repr(handler)),
                    event.type.value,
                    event.resource_id,
                )
