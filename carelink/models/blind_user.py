"""BlindUser model — the person asking a guardian to connect."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carelink.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from carelink.models.connection import Connection
    from carelink.models.guardian import Guardian


class BlindUser(TimestampMixin, Base):
    """A blind user account, identified by a sequential ``BLIND###`` id."""

    __tablename__ = "blind_users"

    blind_id: Mapped[str] = mapped_column(String(20), primary_key=True)

    # Profile
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    age: Mapped[int | None] = mapped_column(Integer)
    gender: Mapped[str | None] = mapped_column(String(20))

    # Contact
    phone: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(255))
    address: Mapped[str | None] = mapped_column(String(500))

    # Set by the connection lifecycle when a request is accepted
    guardian_id: Mapped[str | None] = mapped_column(
        String(20), ForeignKey("guardians.guardian_id"), index=True
    )

    # Relationships
    guardian: Mapped[Guardian | None] = relationship("Guardian", back_populates="blind_users")
    connections: Mapped[list[Connection]] = relationship("Connection", back_populates="blind_user")

    def __repr__(self) -> str:
        return f"<BlindUser id={self.blind_id} guardian={self.guardian_id}>"
