"""SystemEvent schema — the internal event type emitted by every action.

Subscribers (the audit logger, anything registered at startup) consume these
events asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Connection lifecycle
    CONNECTION_REQUESTED = "connection.requested"
    CONNECTION_ACCEPTED = "connection.accepted"
    CONNECTION_REJECTED = "connection.rejected"
    CONNECTION_REMOVED = "connection.removed"

    # Guardian linkage (accept saga, step 2)
    GUARDIAN_LINKED = "guardian.linked"
    GUARDIAN_LINK_DEFERRED = "guardian.link_deferred"
    GUARDIAN_LINK_REPAIRED = "guardian.link_repaired"

    # Accounts
    BLIND_USER_REGISTERED = "account.blind_registered"
    GUARDIAN_REGISTERED = "account.guardian_registered"

    # Sync
    SYNC_RESUBSCRIBED = "sync.resubscribed"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"


class SystemEvent(BaseModel):
    """Core event that flows through the CareLink system.

    Immutable once created. Consumed by:
    - audit_on_event → writes to audit_log table
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context
    actor_id: str | None = None
    actor_role: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
