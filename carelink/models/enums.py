"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization.
"""

from __future__ import annotations

from enum import Enum


class ConnectionStatus(str, Enum):
    """Connection request lifecycle states."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    REMOVED = "removed"


class ChangeType(str, Enum):
    """Row-level change kinds delivered by the change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Gender(str, Enum):
    """Gender options offered at blind-user signup."""

    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
