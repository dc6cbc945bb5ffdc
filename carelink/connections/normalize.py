"""Normalization boundary for connection payloads.

The single place where untyped data (ORM rows, change-feed dicts, joined
relations that arrive either as an object or as a one-element list) is
converted into ConnectionRequest domain objects.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect

from carelink.errors import ValidationError
from carelink.identifiers import normalize_blind_id, normalize_guardian_id
from carelink.models.blind_user import BlindUser
from carelink.models.connection import Connection
from carelink.models.enums import ConnectionStatus
from carelink.schemas.connections import BlindUserSummary, ConnectionRequest

_PUBLIC_FIELDS = ("name", "age", "gender")
_CONTACT_FIELDS = ("phone", "email", "address")


def as_utc(value: datetime | str | None, field: str = "timestamp") -> datetime:
    """Parse ``value`` and return an aware UTC datetime; naive input is UTC."""
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Malformed {field}: {value!r}", field=field) from exc
    if not isinstance(value, datetime):
        raise ValidationError(f"Malformed {field}: {value!r}", field=field)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _status(value: Any) -> ConnectionStatus:
    try:
        return ConnectionStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown connection status: {value!r}", field="status") from exc


def _request_id(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Malformed request id: {value!r}", field="id") from exc


def summarize_blind_user(
    source: BlindUser | Mapping[str, Any] | list[Any] | None,
    blind_id: str,
    *,
    contact: bool = False,
) -> BlindUserSummary | None:
    """Build the BlindUserSummary attached to a request, or None if absent."""
    if isinstance(source, list):
        source = source[0] if source else None
    if source is None:
        return None

    fields = _PUBLIC_FIELDS + (_CONTACT_FIELDS if contact else ())
    if isinstance(source, Mapping):
        values = {name: source.get(name) for name in fields}
    else:
        values = {name: getattr(source, name) for name in fields}
    return BlindUserSummary(blind_id=blind_id, **values)


def normalize_connection(
    payload: Connection | Mapping[str, Any],
    *,
    contact: bool = False,
) -> ConnectionRequest:
    """Convert a connection row or raw payload into a ConnectionRequest.

    Args:
        payload: ORM row or dict (feed record, JSON body).
        contact: Include the blind user's contact fields when the joined
            relation is present.
    """
    if isinstance(payload, Connection):
        state = inspect(payload)
        joined = payload.blind_user if "blind_user" not in state.unloaded else None
        raw: Mapping[str, Any] = {
            "id": payload.id,
            "blind_id": payload.blind_id,
            "guardian_id": payload.guardian_id,
            "status": payload.status,
            "created_at": payload.created_at,
            "updated_at": payload.updated_at,
        }
    else:
        raw = payload
        joined = raw.get("blind_user", raw.get("blind_users"))

    blind_id = normalize_blind_id(raw.get("blind_id"))
    return ConnectionRequest(
        id=_request_id(raw.get("id")),
        blind_id=blind_id,
        guardian_id=normalize_guardian_id(raw.get("guardian_id")),
        status=_status(raw.get("status")),
        created_at=as_utc(raw.get("created_at"), "created_at"),
        updated_at=as_utc(raw.get("updated_at"), "updated_at"),
        blind_user=summarize_blind_user(joined, blind_id, contact=contact),
    )
