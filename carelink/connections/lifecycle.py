"""Connection lifecycle manager — the only writer of connection status.

Validates every transition against `connections.states`, serializes
concurrent decisions on the same request, and runs accept-and-link as a
two-step saga:

1. mark the request accepted and commit (the durable commit point);
2. point the blind user at the guardian in a separate unit of work.

Step 2 is a plain assignment, so it is safe to repeat. If it fails the
request stays accepted and `load_blind_user` repairs the link on the next
read.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carelink.accounts.service import (
    blind_user_exists,
    get_blind_user,
    guardian_exists,
    set_blind_user_guardian,
)
from carelink.config import settings
from carelink.connections.repository import ConnectionRepository, connection_repository
from carelink.connections.states import DECISION_TRIGGERS, TRANSITIONS
from carelink.db.engine import async_session_factory
from carelink.db.unit_of_work import unit_of_work
from carelink.errors import (
    InvalidTransition,
    NotRequestOwner,
    TransientGatewayError,
    UnknownBlindUser,
    UnknownGuardian,
    ValidationError,
)
from carelink.events import emit
from carelink.feed import ChangeFeed
from carelink.identifiers import normalize_blind_id, normalize_guardian_id
from carelink.models.enums import ChangeType, ConnectionStatus
from carelink.schemas.accounts import BlindUserInfo
from carelink.schemas.connections import ChangeEvent, ConnectionRequest
from carelink.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATUS_EVENTS: dict[ConnectionStatus, EventType] = {
    ConnectionStatus.ACCEPTED: EventType.CONNECTION_ACCEPTED,
    ConnectionStatus.REJECTED: EventType.CONNECTION_REJECTED,
    ConnectionStatus.REMOVED: EventType.CONNECTION_REMOVED,
}


class ConnectionLifecycle:
    """Request, decide and remove connections; keep blind users linked."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        repository: ConnectionRepository = connection_repository,
        feed: ChangeFeed | None = None,
        *,
        write_attempts: int | None = None,
        retry_delay: float | None = None,
        link_attempts: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._repository = repository
        self._feed = feed
        self._write_attempts = write_attempts or settings.lifecycle.write_retry_attempts
        self._retry_delay = settings.lifecycle.write_retry_delay if retry_delay is None else retry_delay
        self._link_attempts = link_attempts or settings.lifecycle.link_retry_attempts
        self._locks: dict[uuid.UUID, tuple[asyncio.Lock, int]] = {}

    def set_feed(self, feed: ChangeFeed | None) -> None:
        """Attach the change feed used to notify guardian views."""
        self._feed = feed

    # ── Commands ─────────────────────────────────────────────────────

    async def request_connection(self, blind_id: str, guardian_id: str) -> ConnectionRequest:
        """Create a pending request from a blind user to a guardian.

        Raises:
            ValidationError: Missing or malformed identifier.
            UnknownBlindUser / UnknownGuardian: Referenced account missing.
            DuplicateActiveRequest: Pair already pending or accepted.
        """
        blind_id = normalize_blind_id(blind_id)
        guardian_id = normalize_guardian_id(guardian_id)

        async with unit_of_work(self._session_factory) as db:
            if not await blind_user_exists(db, blind_id):
                raise UnknownBlindUser(blind_id)
            if not await guardian_exists(db, guardian_id):
                raise UnknownGuardian(guardian_id)
            request = await self._repository.create(db, blind_id, guardian_id)

        await self._publish(ChangeType.INSERT, request)
        await emit(SystemEvent(
            event_type=EventType.CONNECTION_REQUESTED,
            actor_id=blind_id,
            actor_role="blind_user",
            data={"request_id": str(request.id), "blind_id": blind_id, "guardian_id": guardian_id},
            source_module="connections.lifecycle",
        ))
        return request

    async def decide(
        self,
        request_id: uuid.UUID,
        decision: ConnectionStatus | str,
        guardian_id: str | None = None,
    ) -> ConnectionRequest:
        """Accept or reject a pending request.

        Args:
            request_id: The request to decide.
            decision: ``accepted`` or ``rejected``.
            guardian_id: Acting guardian; when given it must own the request.

        Raises:
            ValidationError: Decision is not accepted/rejected.
            NotFound: No such request.
            NotRequestOwner: Acting guardian is someone else.
            InvalidTransition: Request is no longer pending.
        """
        try:
            target = ConnectionStatus(decision)
        except ValueError as exc:
            raise ValidationError(f"Unknown decision: {decision!r}", field="decision") from exc
        if target not in DECISION_TRIGGERS:
            raise ValidationError(f"Decision must be accepted or rejected, got {target.value}", field="decision")

        actor = normalize_guardian_id(guardian_id) if guardian_id is not None else None
        request = await self._change_status(request_id, DECISION_TRIGGERS[target], target, actor)

        if target is ConnectionStatus.ACCEPTED:
            await self._link_after_accept(request)
        return request

    async def remove(self, request_id: uuid.UUID, guardian_id: str | None = None) -> ConnectionRequest:
        """Remove an accepted connection.

        The blind user's ``guardian_id`` is left as it is.
        """
        actor = normalize_guardian_id(guardian_id) if guardian_id is not None else None
        return await self._change_status(request_id, "remove", ConnectionStatus.REMOVED, actor)

    async def link_guardian(self, blind_id: str, guardian_id: str) -> bool:
        """Point a blind user at a guardian. Idempotent; True if it changed."""
        async with unit_of_work(self._session_factory) as db:
            return await set_blind_user_guardian(db, blind_id, guardian_id)

    # ── Queries ──────────────────────────────────────────────────────

    async def load_blind_user(self, blind_id: str) -> BlindUserInfo:
        """Load a blind user, repairing a link the accept saga left unfinished."""
        blind_id = normalize_blind_id(blind_id)
        async with unit_of_work(self._session_factory) as db:
            user = await get_blind_user(db, blind_id)
            if user is None:
                raise UnknownBlindUser(blind_id)
            if user.guardian_id is None:
                accepted = await self._repository.latest_accepted_for_blind_user(db, blind_id)
                if accepted is not None:
                    user.guardian_id = accepted.guardian_id
                    await db.flush()
                    logger.warning(
                        "Repaired guardian link on read: %s -> %s (request=%s)",
                        blind_id,
                        accepted.guardian_id,
                        accepted.id,
                    )
                    await emit(SystemEvent(
                        event_type=EventType.GUARDIAN_LINK_REPAIRED,
                        actor_id="system",
                        actor_role="system",
                        data={"blind_id": blind_id, "guardian_id": accepted.guardian_id, "request_id": str(accepted.id)},
                        source_module="connections.lifecycle",
                    ))
            return BlindUserInfo.model_validate(user)

    async def list_pending(self, guardian_id: str) -> list[ConnectionRequest]:
        guardian_id = normalize_guardian_id(guardian_id)
        async with unit_of_work(self._session_factory, readonly=True) as db:
            return await self._repository.list_pending_for_guardian(db, guardian_id)

    async def list_accepted(self, guardian_id: str) -> list[ConnectionRequest]:
        guardian_id = normalize_guardian_id(guardian_id)
        async with unit_of_work(self._session_factory, readonly=True) as db:
            return await self._repository.list_accepted_for_guardian(db, guardian_id)

    async def list_for_blind_user(self, blind_id: str) -> list[ConnectionRequest]:
        """Every request a blind user has made, newest first, with its status."""
        blind_id = normalize_blind_id(blind_id)
        async with unit_of_work(self._session_factory, readonly=True) as db:
            if not await blind_user_exists(db, blind_id):
                raise UnknownBlindUser(blind_id)
            return await self._repository.list_for_blind_user(db, blind_id)

    async def get_request(self, request_id: uuid.UUID, guardian_id: str | None = None) -> ConnectionRequest:
        """Load one request; with ``guardian_id`` it must be addressed to that guardian."""
        actor = normalize_guardian_id(guardian_id) if guardian_id is not None else None
        async with unit_of_work(self._session_factory, readonly=True) as db:
            request = await self._repository.get(db, request_id)
        if actor is not None and request.guardian_id != actor:
            raise NotRequestOwner(
                f"Request {request_id} is not addressed to {actor}",
                request_id=str(request_id),
                guardian_id=actor,
            )
        return request

    async def count_by_status(self, guardian_id: str, status: ConnectionStatus) -> int:
        guardian_id = normalize_guardian_id(guardian_id)
        async with unit_of_work(self._session_factory, readonly=True) as db:
            return await self._repository.count_by_guardian_and_status(db, guardian_id, status)

    # ── Internals ────────────────────────────────────────────────────

    async def _change_status(
        self,
        request_id: uuid.UUID,
        trigger: str,
        target: ConnectionStatus,
        actor: str | None,
    ) -> ConnectionRequest:
        async with self._request_lock(request_id):
            request = await self._with_retry(
                lambda retrying: self._transition_once(request_id, trigger, target, actor, retrying)
            )

        await self._publish(ChangeType.UPDATE, request)
        await emit(SystemEvent(
            event_type=_STATUS_EVENTS[target],
            actor_id=actor or request.guardian_id,
            actor_role="guardian",
            data={"request_id": str(request.id), "blind_id": request.blind_id, "guardian_id": request.guardian_id},
            source_module="connections.lifecycle",
        ))
        return request

    async def _transition_once(
        self,
        request_id: uuid.UUID,
        trigger: str,
        target: ConnectionStatus,
        actor: str | None,
        retrying: bool,
    ) -> ConnectionRequest:
        async with unit_of_work(self._session_factory) as db:
            current = await self._repository.get(db, request_id, for_update=True)
            if actor is not None and current.guardian_id != actor:
                raise NotRequestOwner(
                    f"Request {request_id} is not addressed to {actor}",
                    request_id=str(request_id),
                    guardian_id=actor,
                )
            if retrying and current.status is target:
                # An earlier attempt committed but its acknowledgement was lost
                logger.info("Retry found %s already %s", request_id, target.value)
                return current
            if trigger not in TRANSITIONS[current.status]:
                logger.warning(
                    "Rejected transition %s --%s--> %s (request=%s)",
                    current.status.value,
                    trigger,
                    target.value,
                    request_id,
                )
                raise InvalidTransition(current.status.value, target.value, request_id)
            updated = await self._repository.update_status(db, request_id, target)

        logger.info(
            "Connection transition: %s --%s--> %s (request=%s)",
            current.status.value,
            trigger,
            updated.status.value,
            request_id,
        )
        return updated

    @contextlib.asynccontextmanager
    async def _request_lock(self, request_id: uuid.UUID) -> AsyncGenerator[None, None]:
        """Serialize status changes of one request within this process."""
        lock, users = self._locks.get(request_id, (asyncio.Lock(), 0))
        self._locks[request_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[request_id]
            if users <= 1:
                del self._locks[request_id]
            else:
                self._locks[request_id] = (lock, users - 1)

    async def _with_retry(self, operation: Callable[[bool], Awaitable[T]]) -> T:
        """Run ``operation``, retrying only TransientGatewayError with backoff."""
        delay = self._retry_delay
        attempt = 1
        while True:
            try:
                return await operation(attempt > 1)
            except TransientGatewayError:
                if attempt >= self._write_attempts:
                    raise
                logger.warning("Transient write failure (attempt %d/%d), retrying in %.2fs",
                               attempt, self._write_attempts, delay)
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1

    async def _link_after_accept(self, request: ConnectionRequest) -> None:
        """Saga step 2. Failures are deferred to repair-on-read, never raised."""
        for attempt in range(1, self._link_attempts + 1):
            try:
                await self.link_guardian(request.blind_id, request.guardian_id)
            except (TransientGatewayError, UnknownBlindUser) as exc:
                logger.warning(
                    "Guardian link failed for %s (attempt %d/%d): %s",
                    request.blind_id,
                    attempt,
                    self._link_attempts,
                    exc,
                )
                continue
            await emit(SystemEvent(
                event_type=EventType.GUARDIAN_LINKED,
                actor_id=request.guardian_id,
                actor_role="guardian",
                data={"blind_id": request.blind_id, "guardian_id": request.guardian_id, "request_id": str(request.id)},
                source_module="connections.lifecycle",
            ))
            return

        await emit(SystemEvent(
            event_type=EventType.GUARDIAN_LINK_DEFERRED,
            actor_id="system",
            actor_role="system",
            data={"blind_id": request.blind_id, "guardian_id": request.guardian_id, "request_id": str(request.id)},
            source_module="connections.lifecycle",
        ))

    async def _publish(self, change_type: ChangeType, request: ConnectionRequest) -> None:
        """Best-effort change notification; the guardian view's poll covers misses."""
        if self._feed is None:
            return
        try:
            await self._feed.publish(ChangeEvent.from_request(change_type, request))
        except TransientGatewayError as exc:
            logger.warning("Change feed publish failed for %s: %s", request.id, exc)


# Module-level singleton
connection_lifecycle = ConnectionLifecycle()
