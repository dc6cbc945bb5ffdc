"""Guardian dashboard statistics.

Counts come from simple filtered queries on the connections table; they are
not cached, so the dashboard is as fresh as its last request.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from carelink.connections.repository import ConnectionRepository, connection_repository
from carelink.models.enums import ConnectionStatus


async def get_guardian_stats(
    db: AsyncSession,
    guardian_id: str,
    repository: ConnectionRepository = connection_repository,
) -> dict[str, int]:
    """Get per-status connection counts for a guardian.

    Returns dict with: connected (accepted), pending, rejected, removed.
    """
    counts = {
        status: await repository.count_by_guardian_and_status(db, guardian_id, status)
        for status in ConnectionStatus
    }
    return {
        "connected": counts[ConnectionStatus.ACCEPTED],
        "pending": counts[ConnectionStatus.PENDING],
        "rejected": counts[ConnectionStatus.REJECTED],
        "removed": counts[ConnectionStatus.REMOVED],
    }
