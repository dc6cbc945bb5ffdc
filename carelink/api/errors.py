"""Exception handlers mapping domain errors to JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from carelink.errors import CarelinkError, InvalidTransition
from carelink.events import emit
from carelink.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


async def carelink_error_handler(request: Request, exc: CarelinkError) -> JSONResponse:
    """Domain errors keep their message; state is left unchanged by the service."""
    if isinstance(exc, InvalidTransition):
        logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    await emit(SystemEvent(
        event_type=EventType.SYSTEM_ERROR,
        actor_id="system",
        actor_role="system",
        data={"method": request.method, "path": request.url.path, "error": type(exc).__name__},
        source_module="api",
    ))
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred.", "error": "InternalError"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CarelinkError, carelink_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
