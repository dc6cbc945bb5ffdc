"""Connection repository — the sole writer of raw `connections` rows.

Every method takes the caller's AsyncSession and returns ConnectionRequest
domain objects. Transition legality is the lifecycle manager's concern;
this layer only reads, inserts and stamps rows.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from carelink.connections.normalize import normalize_connection
from carelink.connections.states import ACTIVE_STATUSES
from carelink.errors import DuplicateActiveRequest, NotFound
from carelink.models.base import utcnow
from carelink.models.connection import Connection
from carelink.models.enums import ConnectionStatus
from carelink.schemas.connections import ConnectionRequest

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


class ConnectionRepository:
    """Typed access to the connections table."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    # ── Writes ───────────────────────────────────────────────────────

    async def create(self, db: AsyncSession, blind_id: str, guardian_id: str) -> ConnectionRequest:
        """Insert a pending request for the pair.

        Raises:
            DuplicateActiveRequest: A pending or accepted request already
                exists, found either by the pre-check or by the partial
                unique index when a concurrent insert won the race.
        """
        existing = await self.find_active(db, blind_id, guardian_id)
        if existing is not None:
            raise DuplicateActiveRequest(blind_id, guardian_id, existing.status.value)

        now = self._clock()
        row = Connection(
            blind_id=blind_id,
            guardian_id=guardian_id,
            status=ConnectionStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        try:
            await db.flush()
        except IntegrityError as exc:
            logger.info("Active-pair index rejected %s -> %s", blind_id, guardian_id)
            raise DuplicateActiveRequest(blind_id, guardian_id) from exc

        logger.info("Connection request created: id=%s %s -> %s", row.id, blind_id, guardian_id)
        return normalize_connection(row)

    async def update_status(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        new_status: ConnectionStatus,
    ) -> ConnectionRequest:
        """Set ``status`` and stamp ``updated_at``. Raises NotFound."""
        row = await self._get_row(db, request_id)
        row.status = new_status.value
        row.updated_at = self._clock()
        await db.flush()
        return normalize_connection(row)

    # ── Reads ────────────────────────────────────────────────────────

    async def get(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> ConnectionRequest:
        """Load one request. ``for_update`` holds a row lock until commit."""
        return normalize_connection(await self._get_row(db, request_id, for_update=for_update))

    async def find_active(
        self,
        db: AsyncSession,
        blind_id: str,
        guardian_id: str,
    ) -> ConnectionRequest | None:
        """Return the pending or accepted request for the pair, if any."""
        result = await db.execute(
            select(Connection)
            .where(
                Connection.blind_id == blind_id,
                Connection.guardian_id == guardian_id,
                Connection.status.in_(_ACTIVE_VALUES),
            )
            .order_by(Connection.created_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return normalize_connection(row) if row is not None else None

    async def list_pending_for_guardian(self, db: AsyncSession, guardian_id: str) -> list[ConnectionRequest]:
        """Pending requests addressed to a guardian, newest first, with name/age/gender."""
        rows = await self._list_for_guardian(db, guardian_id, ConnectionStatus.PENDING)
        return [normalize_connection(row) for row in rows]

    async def list_accepted_for_guardian(self, db: AsyncSession, guardian_id: str) -> list[ConnectionRequest]:
        """Accepted connections of a guardian, newest first, with contact fields."""
        rows = await self._list_for_guardian(db, guardian_id, ConnectionStatus.ACCEPTED)
        return [normalize_connection(row, contact=True) for row in rows]

    async def list_for_blind_user(self, db: AsyncSession, blind_id: str) -> list[ConnectionRequest]:
        """Every request a blind user has made, newest first."""
        result = await db.execute(
            select(Connection)
            .where(Connection.blind_id == blind_id)
            .order_by(Connection.created_at.desc())
        )
        return [normalize_connection(row) for row in result.scalars().all()]

    async def latest_accepted_for_blind_user(self, db: AsyncSession, blind_id: str) -> ConnectionRequest | None:
        """Most recently accepted request of a blind user, if any."""
        result = await db.execute(
            select(Connection)
            .where(
                Connection.blind_id == blind_id,
                Connection.status == ConnectionStatus.ACCEPTED.value,
            )
            .order_by(Connection.updated_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return normalize_connection(row) if row is not None else None

    async def count_by_guardian_and_status(
        self,
        db: AsyncSession,
        guardian_id: str,
        status: ConnectionStatus,
    ) -> int:
        result = await db.execute(
            select(func.count(Connection.id)).where(
                Connection.guardian_id == guardian_id,
                Connection.status == status.value,
            )
        )
        return result.scalar() or 0

    # ── Internals ────────────────────────────────────────────────────

    async def _get_row(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Connection:
        stmt = select(Connection).where(Connection.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFound(f"Connection request {request_id} not found", request_id=str(request_id))
        return row

    async def _list_for_guardian(
        self,
        db: AsyncSession,
        guardian_id: str,
        status: ConnectionStatus,
    ) -> list[Connection]:
        result = await db.execute(
            select(Connection)
            .where(
                Connection.guardian_id == guardian_id,
                Connection.status == status.value,
            )
            .options(selectinload(Connection.blind_user))
            .order_by(Connection.created_at.desc())
        )
        return list(result.scalars().all())


# Module-level singleton
connection_repository = ConnectionRepository()
