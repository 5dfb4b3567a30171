from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from docpipe.domain.events import DomainEvent, EventType


logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventPublisher(Protocol):
    async def publish(self, event: DomainEvent) -> None:
        ...


class EventBus:
    """In-process fan-out of domain events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def subscribe(self, handler: EventHandler, *, event_type: EventType | None = None) -> None:
        # None subscribes to every event type.
        self._handlers.setdefault(event_type, []).append(handler)

    @property
    def handler_count(self) -> int:
        return sum(len(handlers) for handlers in self._handlers.values())

    async def publish(self, event: DomainEvent) -> None:
        handlers = list(self._handlers.get(event.event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            logger.debug("event_unhandled event_type=%s owner_id=%s", event.event_type.value, event.owner_id)
            return

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception:  # noqa: BLE001 - one subscriber must not break the publisher or its peers
                logger.exception(
                    "event_handler_failed handler=%s event_type=%s owner_id=%s",
                    getattr(handler, "__qualname__", repr(handler)),
                    event.event_type.value,
                    event.owner_id,
                )

        await asyncio.gather(*[_safe_call(handler) for handler in handlers])


class RecordingPublisher:
    """Publisher that keeps every event in memory; used by local tooling and tests."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[DomainEvent]:
        return [event for event in self.events if event.event_type == event_type]
