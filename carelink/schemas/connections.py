"""Domain objects for connection requests and change-feed events.

These are the only shapes that leave the repository. ORM rows and raw feed
payloads are converted by `carelink.connections.normalize`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from carelink.models.enums import ChangeType, ConnectionStatus


class BlindUserSummary(BaseModel):
    """Public and contact fields of the requesting blind user."""

    blind_id: str
    name: str | None = None
    age: int | None = None
    gender: str | None = None

    # Contact fields, populated for accepted connections only
    phone: str | None = None
    email: str | None = None
    address: str | None = None

    model_config = {"frozen": True}


class ConnectionRequest(BaseModel):
    """A connection request as seen by guardians and blind users."""

    id: uuid.UUID
    blind_id: str
    guardian_id: str
    status: ConnectionStatus
    created_at: datetime
    updated_at: datetime
    blind_user: BlindUserSummary | None = None

    model_config = {"frozen": True}


class ChangeEvent(BaseModel):
    """Row-level change on the connections table, as pushed by the change feed.

    ``record`` is the raw new row (or old row for deletes) exactly as the
    feed delivers it; consumers normalize it before use.
    """

    change_type: ChangeType
    guardian_id: str
    record: dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: datetime

    model_config = {"frozen": True}

    @classmethod
    def from_request(cls, change_type: ChangeType, request: ConnectionRequest) -> ChangeEvent:
        """Build the event published after a committed write."""
        return cls(
            change_type=change_type,
            guardian_id=request.guardian_id,
            record=request.model_dump(mode="json", exclude={"blind_user"}),
            commit_timestamp=request.updated_at,
        )


class DecisionPayload(BaseModel):
    """Body of POST /connections/{id}/decision."""

    decision: ConnectionStatus
    guardian_id: str | None = None


class RemovePayload(BaseModel):
    """Body of POST /connections/{id}/remove."""

    guardian_id: str | None = None


class ConnectPayload(BaseModel):
    """Body of POST /connections."""

    blind_id: str
    guardian_id: str
