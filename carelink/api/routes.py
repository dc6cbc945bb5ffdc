"""JSON API for accounts, connection requests and the guardian dashboard.

Writes and single-user reads go through the lifecycle manager; the guardian
views use a request-scoped session and the repository directly.
"""
# ruff: noqa: B008

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from carelink import __version__
from carelink.accounts.service import AccountService, account_service
from carelink.connections.lifecycle import ConnectionLifecycle, connection_lifecycle
from carelink.connections.repository import connection_repository
from carelink.dashboard import get_guardian_stats
from carelink.db.engine import get_session
from carelink.identifiers import normalize_guardian_id
from carelink.schemas.accounts import BlindUserCreate, BlindUserInfo, GuardianCreate, GuardianInfo
from carelink.schemas.connections import ConnectionRequest, ConnectPayload, DecisionPayload, RemovePayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_lifecycle() -> ConnectionLifecycle:
    return connection_lifecycle


def get_accounts() -> AccountService:
    return account_service


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Verify the API is up."""
    return {"status": "ok", "service": "CareLink API", "version": __version__}


# ── Accounts ─────────────────────────────────────────────────────────


@router.post("/blind-users", response_model=BlindUserInfo, status_code=status.HTTP_201_CREATED, tags=["accounts"])
async def register_blind_user(
    form: BlindUserCreate,
    accounts: AccountService = Depends(get_accounts),
) -> BlindUserInfo:
    return await accounts.register_blind_user(form)


@router.get("/blind-users/{blind_id}", response_model=BlindUserInfo, tags=["accounts"])
async def get_blind_user(
    blind_id: str,
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
) -> BlindUserInfo:
    """Blind user profile; repairs an unfinished guardian link on the way."""
    return await lifecycle.load_blind_user(blind_id)


@router.post("/guardians", response_model=GuardianInfo, status_code=status.HTTP_201_CREATED, tags=["accounts"])
async def register_guardian(
    form: GuardianCreate,
    accounts: AccountService = Depends(get_accounts),
) -> GuardianInfo:
    return await accounts.register_guardian(form)


@router.get("/guardians/{guardian_id}", response_model=GuardianInfo, tags=["accounts"])
async def get_guardian(
    guardian_id: str,
    accounts: AccountService = Depends(get_accounts),
) -> GuardianInfo:
    return await accounts.get_guardian_info(normalize_guardian_id(guardian_id))


# ── Connection requests ──────────────────────────────────────────────


@router.post(
    "/connections",
    response_model=ConnectionRequest,
    status_code=status.HTTP_201_CREATED,
    tags=["connections"],
)
async def request_connection(
    payload: ConnectPayload,
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
) -> ConnectionRequest:
    return await lifecycle.request_connection(payload.blind_id, payload.guardian_id)


@router.get("/connections/{request_id}", response_model=ConnectionRequest, tags=["connections"])
async def get_connection(
    request_id: uuid.UUID,
    guardian_id: str | None = None,
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
) -> ConnectionRequest:
    """One request; pass ``guardian_id`` to check it is addressed to that guardian."""
    return await lifecycle.get_request(request_id, guardian_id=guardian_id)


@router.get("/blind-users/{blind_id}/connections", response_model=list[ConnectionRequest], tags=["connections"])
async def list_blind_user_connections(
    blind_id: str,
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
) -> list[ConnectionRequest]:
    """Requests a blind user has sent, newest first, so the app can show their status."""
    return await lifecycle.list_for_blind_user(blind_id)


@router.post("/connections/{request_id}/decision", response_model=ConnectionRequest, tags=["connections"])
async def decide_connection(
    request_id: uuid.UUID,
    payload: DecisionPayload,
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
) -> ConnectionRequest:
    return await lifecycle.decide(request_id, payload.decision, guardian_id=payload.guardian_id)


@router.post("/connections/{request_id}/remove", response_model=ConnectionRequest, tags=["connections"])
async def remove_connection(
    request_id: uuid.UUID,
    payload: RemovePayload,
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
) -> ConnectionRequest:
    return await lifecycle.remove(request_id, guardian_id=payload.guardian_id)


# ── Guardian views ───────────────────────────────────────────────────


@router.get(
    "/guardians/{guardian_id}/connections/pending",
    response_model=list[ConnectionRequest],
    tags=["guardian"],
)
async def list_pending(guardian_id: str, db: AsyncSession = Depends(get_session)) -> list[ConnectionRequest]:
    return await connection_repository.list_pending_for_guardian(db, normalize_guardian_id(guardian_id))


@router.get(
    "/guardians/{guardian_id}/connections/accepted",
    response_model=list[ConnectionRequest],
    tags=["guardian"],
)
async def list_accepted(guardian_id: str, db: AsyncSession = Depends(get_session)) -> list[ConnectionRequest]:
    return await connection_repository.list_accepted_for_guardian(db, normalize_guardian_id(guardian_id))


@router.get("/guardians/{guardian_id}/stats", tags=["guardian"])
async def guardian_stats(guardian_id: str, db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    gid = normalize_guardian_id(guardian_id)
    stats = await get_guardian_stats(db, gid)
    return {"guardian_id": gid, **stats}
