"""Guardian-scoped pending view kept fresh by polling plus the change feed.

Two channels feed one in-memory view:

- a poll task re-fetches the full pending list every ``poll_interval``
  seconds and replaces the view wholesale. It is the consistency backstop.
- a push task applies individual change events as they arrive.

Each snapshot is versioned with the clock reading taken before its fetch.
Snapshots older than the displayed one are dropped, and so are events not
newer than the displayed snapshot or than the last event applied to the
same row. Events newer than a fresh snapshot are replayed on top of it, so
the view always equals the last applied poll plus strictly newer pushes.

An event carries the row's ``updated_at``, stamped before the write commits.
A poll that starts inside that window sees the old row yet is versioned
after the stamp, so the event is dropped as stale. The view then lags until
the next poll, at most ``poll_interval`` later, returns the committed row.

Usage:
    async with SyncCoordinator("Guardian001", on_change=render) as sync:
        ...
    # tasks cancelled and subscription closed here
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType

from pydantic import ValidationError as SchemaError

from carelink.config import settings
from carelink.connections.lifecycle import connection_lifecycle
from carelink.connections.normalize import as_utc, normalize_connection
from carelink.errors import TransientGatewayError, ValidationError
from carelink.events import emit
from carelink.feed import ChangeFeed
from carelink.identifiers import normalize_guardian_id
from carelink.models.base import utcnow
from carelink.models.enums import ChangeType, ConnectionStatus
from carelink.schemas.connections import ChangeEvent, ConnectionRequest
from carelink.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

FetchPending = Callable[[str], Awaitable[list[ConnectionRequest]]]
ViewListener = Callable[["PendingView"], None]


@dataclass(frozen=True)
class PendingView:
    """Immutable snapshot handed to the UI layer."""

    guardian_id: str
    requests: tuple[ConnectionRequest, ...] = ()
    version: datetime | None = None

    @property
    def count(self) -> int:
        return len(self.requests)

    @property
    def ids(self) -> list[uuid.UUID]:
        return [r.id for r in self.requests]


@dataclass(frozen=True)
class _AppliedChange:
    change_type: ChangeType
    request: ConnectionRequest
    committed_at: datetime


class SyncCoordinator:
    """Maintains the pending-request view of one guardian."""

    def __init__(
        self,
        guardian_id: str,
        feed: ChangeFeed | None = None,
        fetch: FetchPending | None = None,
        *,
        poll_interval: float | None = None,
        reconnect_initial_delay: float | None = None,
        reconnect_max_delay: float | None = None,
        on_change: ViewListener | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._guardian_id = normalize_guardian_id(guardian_id)
        self._feed = feed
        self._fetch = fetch or connection_lifecycle.list_pending
        self._poll_interval = poll_interval or settings.sync.poll_interval
        self._reconnect_initial = reconnect_initial_delay or settings.sync.reconnect_initial_delay
        self._reconnect_max = reconnect_max_delay or settings.sync.reconnect_max_delay
        self._on_change = on_change
        self._clock = clock

        self._entries: dict[uuid.UUID, ConnectionRequest] = {}
        self._version: datetime | None = None
        self._applied: dict[uuid.UUID, _AppliedChange] = {}

        self._running = False
        self._poll_task: asyncio.Task[None] | None = None
        self._push_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    # ── Properties ───────────────────────────────────────────────────

    @property
    def guardian_id(self) -> str:
        return self._guardian_id

    @property
    def running(self) -> bool:
        return self._running

    @property
    def view(self) -> PendingView:
        ordered = sorted(self._entries.values(), key=lambda r: r.created_at, reverse=True)
        return PendingView(guardian_id=self._guardian_id, requests=tuple(ordered), version=self._version)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load the initial view, then start the poll and push tasks."""
        if self._running:
            return
        self._running = True
        await self._safe_refresh()

        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"pending-poll:{self._guardian_id}")
        if self._feed is not None:
            self._push_task = asyncio.create_task(self._push_loop(), name=f"pending-push:{self._guardian_id}")
        logger.info("Pending sync started for %s (poll every %.1fs)", self._guardian_id, self._poll_interval)

    async def close(self) -> None:
        """Cancel every task this coordinator owns. Safe to call twice."""
        self._running = False
        tasks = [t for t in (self._poll_task, self._push_task, self._refresh_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = self._push_task = self._refresh_task = None
        if tasks:
            logger.info("Pending sync stopped for %s", self._guardian_id)

    async def switch_guardian(self, guardian_id: str) -> None:
        """Tear down, forget the current view and restart for another guardian."""
        new_id = normalize_guardian_id(guardian_id)
        was_running = self._running
        await self.close()
        self._guardian_id = new_id
        self._entries.clear()
        self._applied.clear()
        self._version = None
        self._notify()
        if was_running:
            await self.start()

    async def __aenter__(self) -> SyncCoordinator:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ── Snapshot path ────────────────────────────────────────────────

    async def refresh(self) -> bool:
        """Fetch the full pending list and apply it. Returns False if it lost a race."""
        version = self._clock()
        requests = await self._fetch(self._guardian_id)
        return self.apply_snapshot(requests, version)

    def apply_snapshot(self, requests: list[ConnectionRequest], version: datetime) -> bool:
        """Replace the view with ``requests`` fetched at ``version``."""
        version = as_utc(version)
        if self._version is not None and version < self._version:
            logger.debug("Discarding snapshot %s older than displayed %s", version, self._version)
            return False

        self._version = version
        self._entries = {
            r.id: r
            for r in requests
            if r.status is ConnectionStatus.PENDING and r.guardian_id == self._guardian_id
        }
        # Pushes committed after the fetch started may be missing from it
        self._applied = {k: c for k, c in self._applied.items() if c.committed_at > version}
        for change in sorted(self._applied.values(), key=lambda c: c.committed_at):
            self._apply_change(change.change_type, change.request)

        self._notify()
        return True

    # ── Push path ────────────────────────────────────────────────────

    def apply_event(self, event: ChangeEvent) -> bool:
        """Apply one change event. Returns True if the view changed."""
        if event.guardian_id != self._guardian_id:
            return False
        try:
            request = normalize_connection(event.record)
            committed_at = as_utc(event.commit_timestamp)
        except (ValidationError, SchemaError) as exc:
            logger.warning("Ignoring malformed change event for %s: %s", self._guardian_id, exc)
            return False

        if self._version is not None and committed_at <= self._version:
            logger.debug("Stale %s event for %s (snapshot is newer)", event.change_type.value, request.id)
            return False
        previous = self._applied.get(request.id)
        if previous is not None and committed_at <= previous.committed_at:
            logger.debug("Duplicate or out-of-order %s event for %s", event.change_type.value, request.id)
            return False

        self._applied[request.id] = _AppliedChange(event.change_type, request, committed_at)
        changed = self._apply_change(event.change_type, request)
        if changed:
            self._notify()
        return changed

    def _apply_change(self, change_type: ChangeType, request: ConnectionRequest) -> bool:
        existing = self._entries.get(request.id)

        if change_type is ChangeType.DELETE or request.status is not ConnectionStatus.PENDING:
            if existing is None:
                return False
            del self._entries[request.id]
            return True

        if existing is None:
            self._entries[request.id] = request
            if change_type is ChangeType.UPDATE:
                # Insert was missed; fetch the joined blind-user fields
                self._request_refresh()
            return True

        if change_type is ChangeType.UPDATE:
            self._entries[request.id] = request.model_copy(update={"blind_user": existing.blind_user})
            return existing.updated_at != request.updated_at
        return False

    # ── Background tasks ─────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self._safe_refresh()

    async def _push_loop(self) -> None:
        """Consume the change feed, resubscribing with exponential backoff."""
        assert self._feed is not None
        delay = self._reconnect_initial
        recovering = False
        while True:
            try:
                async with self._feed.subscribe(self._guardian_id) as events:
                    if recovering:
                        logger.info("Resubscribed to change feed for %s", self._guardian_id)
                        await emit(SystemEvent(
                            event_type=EventType.SYNC_RESUBSCRIBED,
                            actor_id=self._guardian_id,
                            actor_role="guardian",
                            data={"guardian_id": self._guardian_id},
                            source_module="connections.sync",
                        ))
                        await self._safe_refresh()
                    delay = self._reconnect_initial
                    async for event in events:
                        self.apply_event(event)
                logger.warning("Change feed for %s ended", self._guardian_id)
            except TransientGatewayError as exc:
                logger.warning("Change feed for %s unavailable: %s", self._guardian_id, exc)
            except Exception:
                logger.exception("Change feed for %s failed; resubscribing", self._guardian_id)

            recovering = True
            logger.info("Resubscribing %s in %.1fs", self._guardian_id, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_max)

    async def _safe_refresh(self) -> None:
        try:
            await self.refresh()
        except TransientGatewayError as exc:
            logger.warning("Pending refresh failed for %s: %s", self._guardian_id, exc)
        except Exception:
            logger.exception("Unexpected error refreshing pending view for %s", self._guardian_id)

    def _request_refresh(self) -> None:
        if not self._running:
            return
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._safe_refresh())

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.view)
        except Exception:
            logger.exception("Pending view listener failed for %s", self._guardian_id)
