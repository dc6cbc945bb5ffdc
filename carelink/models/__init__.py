"""SQLAlchemy ORM models for CareLink.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from carelink.models.audit import AuditLog
from carelink.models.base import Base
from carelink.models.blind_user import BlindUser
from carelink.models.connection import Connection
from carelink.models.enums import ChangeType, ConnectionStatus, Gender
from carelink.models.guardian import Guardian

__all__ = [
    # Base
    "Base",
    # Models
    "BlindUser",
    "Guardian",
    "Connection",
    "AuditLog",
    # Enums
    "ConnectionStatus",
    "ChangeType",
    "Gender",
]
