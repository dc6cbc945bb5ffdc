"""FastAPI application entry point — wires everything together.

Usage:
    python -m carelink.main

Starts the API with database, event system and audit logging.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from carelink import __version__
from carelink.api.errors import register_exception_handlers
from carelink.api.routes import router
from carelink.audit import audit_on_event
from carelink.config import settings
from carelink.connections.lifecycle import connection_lifecycle
from carelink.db.engine import db_lifespan, redis_client
from carelink.events import emit_nowait, start_event_system, stop_event_system, subscribe, unsubscribe
from carelink.feed import RedisChangeFeed
from carelink.schemas.events import EventType, SystemEvent

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting CareLink (env=%s)", settings.environment)

    # 1. Database + Redis
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Change feed for guardian views
        connection_lifecycle.set_feed(RedisChangeFeed(redis_client))

        # 3. Audit subscriber receives every event
        subscribe(audit_on_event)
        await start_event_system()
        logger.info("Event system started")

        await emit_nowait(SystemEvent(
            event_type=EventType.SYSTEM_STARTUP,
            actor_id="system",
            actor_role="system",
            data={"version": __version__, "environment": settings.environment},
            source_module="main",
        ))

        try:
            yield
        finally:
            await emit_nowait(SystemEvent(
                event_type=EventType.SYSTEM_SHUTDOWN,
                actor_id="system",
                actor_role="system",
                source_module="main",
            ))
            await stop_event_system()
            unsubscribe(audit_on_event)
            connection_lifecycle.set_feed(None)
            logger.info("CareLink stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="CareLink API",
        description="Guardian / blind-user connection requests",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "carelink.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
    )
