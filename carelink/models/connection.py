"""Connection model — one guardian / blind-user pairing request.

At most one pending or accepted row may exist per (blind_id, guardian_id);
the partial unique index enforces it at the database so concurrent
requests cannot both pass the application-level check.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carelink.models.base import Base, TimestampMixin
from carelink.models.enums import ConnectionStatus

if TYPE_CHECKING:
    from carelink.models.blind_user import BlindUser
    from carelink.models.guardian import Guardian

_ACTIVE_PREDICATE = text("status IN ('pending', 'accepted')")


class Connection(TimestampMixin, Base):
    """A connection request and its lifecycle status."""

    __tablename__ = "connections"
    __table_args__ = (
        Index(
            "uq_connections_active_pair",
            "blind_id",
            "guardian_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_connections_guardian_status", "guardian_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Foreign keys
    blind_id: Mapped[str] = mapped_column(
        String(20), ForeignKey("blind_users.blind_id"), nullable=False, index=True
    )
    guardian_id: Mapped[str] = mapped_column(
        String(20), ForeignKey("guardians.guardian_id"), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), default=ConnectionStatus.PENDING.value, nullable=False
    )

    # Relationships
    blind_user: Mapped[BlindUser] = relationship("BlindUser", back_populates="connections")
    guardian: Mapped[Guardian] = relationship("Guardian", back_populates="connections")

    def __repr__(self) -> str:
        return f"<Connection id={self.id} {self.blind_id}->{self.guardian_id} status={self.status}>"
