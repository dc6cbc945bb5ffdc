"""Unit-of-work helper that commits on success and translates outages.

Connectivity failures from the driver become TransientGatewayError so the
lifecycle layer can decide whether to retry. Every other exception passes
through untouched after the session rolls back.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carelink.errors import TransientGatewayError

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)


@contextlib.asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    readonly: bool = False,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session; commit on clean exit unless ``readonly``."""
    try:
        async with session_factory() as db:
            yield db
            if not readonly:
                await db.commit()
    except TRANSIENT_DB_ERRORS as exc:
        logger.warning("Database unavailable: %s", exc)
        raise TransientGatewayError("Database unavailable, please retry", error=str(exc)) from exc
