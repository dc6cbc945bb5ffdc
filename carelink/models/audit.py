"""AuditLog model — immutable audit trail for every system event.

Every connection and account action emits a SystemEvent which is persisted
here. This table is append-only — no updates or deletes.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from carelink.models.base import Base, TimestampMixin


class AuditLog(TimestampMixin, Base):
    """Immutable audit trail entry."""

    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Event classification
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Context (null for system events)
    actor_id: Mapped[str | None] = mapped_column(String(100), comment="Guardian ID, blind ID, or 'system'")
    actor_role: Mapped[str | None] = mapped_column(String(50), comment="guardian, blind_user, system")

    # Event payload
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    def __repr__(self) -> str:
        return f"<AuditLog event={self.event_type} actor={self.actor_id}>"
