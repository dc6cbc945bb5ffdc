"""Account service — registration and lookups for blind users and guardians.

Identifiers are allocated sequentially (``BLIND001``, ``Guardian001``) from
the highest existing identifier. Two concurrent signups can compute the same
next id; the primary key rejects the loser and allocation is retried in a
fresh unit of work.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import InstrumentedAttribute

from carelink.config import settings
from carelink.db.engine import async_session_factory
from carelink.db.unit_of_work import unit_of_work
from carelink.errors import DuplicateAccount, TransientGatewayError, UnknownBlindUser, UnknownGuardian, ValidationError
from carelink.events import emit
from carelink.identifiers import BLIND_PREFIX, GUARDIAN_PREFIX, next_identifier
from carelink.models.blind_user import BlindUser
from carelink.models.guardian import Guardian
from carelink.schemas.accounts import BlindUserCreate, BlindUserInfo, GuardianCreate, GuardianInfo
from carelink.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


# ── Row-level helpers (caller owns the session) ──────────────────────


async def get_blind_user(db: AsyncSession, blind_id: str) -> BlindUser | None:
    return await db.get(BlindUser, blind_id)


async def get_guardian(db: AsyncSession, guardian_id: str) -> Guardian | None:
    return await db.get(Guardian, guardian_id)


async def blind_user_exists(db: AsyncSession, blind_id: str) -> bool:
    result = await db.execute(select(BlindUser.blind_id).where(BlindUser.blind_id == blind_id))
    return result.scalar_one_or_none() is not None


async def guardian_exists(db: AsyncSession, guardian_id: str) -> bool:
    result = await db.execute(select(Guardian.guardian_id).where(Guardian.guardian_id == guardian_id))
    return result.scalar_one_or_none() is not None


async def set_blind_user_guardian(db: AsyncSession, blind_id: str, guardian_id: str) -> bool:
    """Point a blind user at a guardian.

    Plain assignment, safe to repeat. Returns True if the value changed.

    Raises:
        UnknownBlindUser: No such blind user.
    """
    user = await get_blind_user(db, blind_id)
    if user is None:
        raise UnknownBlindUser(blind_id)
    if user.guardian_id == guardian_id:
        return False
    user.guardian_id = guardian_id
    await db.flush()
    return True


async def _last_identifier(db: AsyncSession, column: InstrumentedAttribute[str]) -> str | None:
    """Highest identifier in ``column`` (longest first, so 1000 sorts after 999)."""
    result = await db.execute(
        select(column).order_by(func.length(column).desc(), column.desc()).limit(1)
    )
    return result.scalar_one_or_none()


def hash_password(password: str, iterations: int | None = None) -> str:
    """PBKDF2-SHA256 hash encoded as ``iterations$salt$digest`` (base64)."""
    rounds = iterations or settings.accounts.password_hash_iterations
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return "$".join([
        str(rounds),
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    ])


# ── Service ──────────────────────────────────────────────────────────


class AccountService:
    """Registers accounts and allocates their sequential identifiers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        max_id_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._max_id_attempts = max_id_attempts

    async def register_blind_user(self, form: BlindUserCreate) -> BlindUserInfo:
        name = form.name.strip()
        if not name:
            raise ValidationError("name is required", field="name")

        for attempt in range(1, self._max_id_attempts + 1):
            try:
                async with unit_of_work(self._session_factory) as db:
                    blind_id = next_identifier(BLIND_PREFIX, await _last_identifier(db, BlindUser.blind_id))
                    user = BlindUser(
                        blind_id=blind_id,
                        name=name,
                        age=form.age,
                        gender=form.gender.value,
                        phone=form.phone,
                        email=form.email,
                        address=form.address,
                    )
                    db.add(user)
                    await db.flush()
                    info = BlindUserInfo.model_validate(user)
            except IntegrityError:
                logger.warning("Blind id collision on attempt %d, reallocating", attempt)
                continue

            logger.info("Blind user registered: %s", info.blind_id)
            await emit(SystemEvent(
                event_type=EventType.BLIND_USER_REGISTERED,
                actor_id=info.blind_id,
                actor_role="blind_user",
                data={"blind_id": info.blind_id},
                source_module="accounts.service",
            ))
            return info

        raise TransientGatewayError("Could not allocate a blind user id, please retry")

    async def register_guardian(self, form: GuardianCreate) -> GuardianInfo:
        name = form.name.strip()
        email = form.email.strip().lower()
        if not name or not email or not form.password.strip():
            raise ValidationError("All fields are required")
        domain = settings.accounts.guardian_email_domain
        if domain and not email.endswith(f"@{domain}"):
            raise ValidationError(f"Email must end with @{domain}", field="email")

        for attempt in range(1, self._max_id_attempts + 1):
            try:
                async with unit_of_work(self._session_factory) as db:
                    taken = await db.execute(select(Guardian.guardian_id).where(func.lower(Guardian.email) == email))
                    if taken.scalar_one_or_none() is not None:
                        raise DuplicateAccount("Email already registered. Please login instead.", field="email")

                    guardian_id = next_identifier(
                        GUARDIAN_PREFIX, await _last_identifier(db, Guardian.guardian_id)
                    )
                    guardian = Guardian(
                        guardian_id=guardian_id,
                        name=name,
                        email=email,
                        password_hash=hash_password(form.password),
                        profile_completed=False,
                    )
                    db.add(guardian)
                    await db.flush()
                    info = GuardianInfo.model_validate(guardian)
            except IntegrityError:
                # Either the id or the email lost a race; the next pass tells them apart
                logger.warning("Guardian insert collided on attempt %d, retrying", attempt)
                continue

            logger.info("Guardian registered: %s", info.guardian_id)
            await emit(SystemEvent(
                event_type=EventType.GUARDIAN_REGISTERED,
                actor_id=info.guardian_id,
                actor_role="guardian",
                data={"guardian_id": info.guardian_id},
                source_module="accounts.service",
            ))
            return info

        raise TransientGatewayError("Could not allocate a guardian id, please retry")

    async def get_guardian_info(self, guardian_id: str) -> GuardianInfo:
        async with unit_of_work(self._session_factory, readonly=True) as db:
            guardian = await get_guardian(db, guardian_id)
            if guardian is None:
                raise UnknownGuardian(guardian_id)
            return GuardianInfo.model_validate(guardian)


# Module-level singleton
account_service = AccountService()
