"""In-process event bus for SystemEvents.

Connection and account actions publish a SystemEvent here; the audit
logger (and anything else registered at startup) consumes them. Delivery is
queued so a slow subscriber never holds up the request that emitted the
event. Row-level changes that guardian views react to go through
`carelink.feed` instead.

Usage:
    from carelink.events import emit, subscribe

    subscribe(audit_on_event)                                   # every event
    subscribe(alert, [EventType.GUARDIAN_LINK_DEFERRED])        # one type

    await emit(SystemEvent(event_type=EventType.CONNECTION_ACCEPTED, ...))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from carelink.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Fan SystemEvents out to global and per-type handlers."""

    def __init__(self) -> None:
        self._global: list[EventHandler] = []
        self._by_type: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register ``handler`` for ``event_types``, or for every event when None."""
        if event_types is None:
            self._global.append(handler)
        else:
            for event_type in event_types:
                self._by_type.setdefault(event_type, []).append(handler)
        logger.info(
            "Subscribed %s to %s",
            getattr(handler, "__name__", repr(handler)),
            "all events" if event_types is None else [t.value for t in event_types],
        )

    def unsubscribe(self, handler: EventHandler) -> None:
        for handlers in (self._global, *self._by_type.values()):
            while handler in handlers:
                handlers.remove(handler)

    def handlers_for(self, event: SystemEvent) -> list[EventHandler]:
        return [*self._global, *self._by_type.get(event.event_type, [])]

    async def publish(self, event: SystemEvent) -> None:
        """Queue ``event`` for the background worker, starting it on first use."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if not self.running:
            self._worker = asyncio.create_task(self._drain(self._queue), name="event-bus")
        await self._queue.put(event)
        logger.debug("Event queued: %s (actor=%s)", event.event_type.value, event.actor_id)

    async def dispatch(self, event: SystemEvent) -> None:
        """Run every matching handler now; a failing handler is logged, never raised."""
        handlers = self.handlers_for(event)
        if not handlers:
            return
        results = await asyncio.gather(*(handler(event) for handler in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Handler %s failed for %s",
                    getattr(handler, "__name__", repr(handler)),
                    event.event_type.value,
                    exc_info=result,
                )

    async def start(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if not self.running:
            self._worker = asyncio.create_task(self._drain(self._queue), name="event-bus")
        logger.info(
            "Event bus started (%d global, %d typed handlers)",
            len(self._global),
            sum(len(h) for h in self._by_type.values()),
        )

    async def stop(self) -> None:
        """Deliver whatever is still queued, then stop the worker."""
        if self._queue is not None and self.running:
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None
        logger.info("Event bus stopped")

    async def _drain(self, queue: asyncio.Queue[SystemEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            finally:
                queue.task_done()


# Module-level singleton
event_bus = EventBus()


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    event_bus.subscribe(handler, event_types)


def unsubscribe(handler: EventHandler) -> None:
    event_bus.unsubscribe(handler)


async def emit(event: SystemEvent) -> None:
    """Publish a SystemEvent without waiting for its subscribers."""
    await event_bus.publish(event)


async def emit_nowait(event: SystemEvent) -> None:
    """Deliver a SystemEvent and wait until every subscriber has run.

    Used for startup and shutdown events, which must not sit in the queue.
    """
    await event_bus.dispatch(event)


async def start_event_system() -> None:
    await event_bus.start()


async def stop_event_system() -> None:
    await event_bus.stop()
