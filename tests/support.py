"""Test doubles shared across the suite."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from datetime import datetime, timedelta, timezone

from carelink.errors import TransientGatewayError
from carelink.schemas.connections import ChangeEvent

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


# ── Test doubles ─────────────────────────────────────────────────────


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now


class InMemoryFeed:
    """Change feed double: per-guardian queues, scripted outages."""

    def __init__(self) -> None:
        self.published: list[ChangeEvent] = []
        self.subscribe_calls = 0
        self.fail_subscribe = 0
        self._queues: dict[str, list[asyncio.Queue[ChangeEvent | None]]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        self.published.append(event)
        for queue in self._queues.get(event.guardian_id, []):
            queue.put_nowait(event)

    @contextlib.asynccontextmanager
    async def subscribe(self, guardian_id: str) -> AsyncGenerator[AsyncIterator[ChangeEvent], None]:
        self.subscribe_calls += 1
        if self.fail_subscribe > 0:
            self.fail_subscribe -= 1
            raise TransientGatewayError("feed down")
        queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._queues.setdefault(guardian_id, []).append(queue)
        try:
            yield self._drain(queue)
        finally:
            self._queues[guardian_id].remove(queue)

    async def _drain(self, queue: asyncio.Queue[ChangeEvent | None]) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    def disconnect(self, guardian_id: str) -> None:
        """End every open subscription for the guardian, as a server close would."""
        for queue in self._queues.get(guardian_id, []):
            queue.put_nowait(None)

    def subscribers(self, guardian_id: str) -> int:
        return len(self._queues.get(guardian_id, []))


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
