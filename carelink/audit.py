"""Audit trail subscriber: every SystemEvent becomes one audit_log row.

The row shares the event's id, so delivering the same event twice leaves a
single entry. Registered for all events at startup. Failures are logged and
never reach the event bus.
"""

from __future__ import annotations

import logging

from carelink.db.engine import async_session_factory
from carelink.models.audit import AuditLog
from carelink.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


async def audit_on_event(event: SystemEvent) -> None:
    try:
        async with async_session_factory() as db:
            if await db.get(AuditLog, event.id) is not None:
                logger.debug("Audit entry %s already recorded", event.id)
                return
            db.add(AuditLog(
                id=event.id,
                event_type=event.event_type.value,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                data={**event.data, "source_module": event.source_module},
                created_at=event.timestamp,
                updated_at=event.timestamp,
            ))
            await db.commit()
    except Exception:
        logger.exception("Failed to persist audit event %s (actor=%s)", event.event_type.value, event.actor_id)
