"""Guardian model — the account that reviews connection requests."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carelink.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from carelink.models.blind_user import BlindUser
    from carelink.models.connection import Connection


class Guardian(TimestampMixin, Base):
    """A guardian account, identified by a sequential ``Guardian###`` id."""

    __tablename__ = "guardians"

    guardian_id: Mapped[str] = mapped_column(String(20), primary_key=True)

    # Credentials
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, comment="Stored lower-case")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False, comment="PBKDF2-SHA256 iterations$salt$digest")

    # Written by the profile-completion flow, which lives outside this service
    # (documents go to blob storage). Kept so the table matches migration 001.
    profile_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20))
    address: Mapped[str | None] = mapped_column(String(500))
    aadhaar_url: Mapped[str | None] = mapped_column(String(1000))
    pan_url: Mapped[str | None] = mapped_column(String(1000))

    # Relationships
    blind_users: Mapped[list[BlindUser]] = relationship("BlindUser", back_populates="guardian")
    connections: Mapped[list[Connection]] = relationship("Connection", back_populates="guardian")

    def __repr__(self) -> str:
        return f"<Guardian id={self.guardian_id} profile_completed={self.profile_completed}>"
