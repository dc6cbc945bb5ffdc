"""Error taxonomy for connection and account operations.

Every error carries a human-readable message plus a context dict, the HTTP
status the API layer maps it to, and whether the write path may retry it.
Only TransientGatewayError is retryable.
"""

from __future__ import annotations

from typing import Any


class CarelinkError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def code(self) -> str:
        """Stable machine-readable name, e.g. ``DuplicateActiveRequest``."""
        return type(self).__name__


class ValidationError(CarelinkError):
    """Missing required field or malformed identifier. Raised before any I/O."""

    status_code = 422


class NotFound(CarelinkError):
    """No connection request with the given id."""

    status_code = 404


class UnknownBlindUser(NotFound):
    """Referenced blind user does not exist."""

    def __init__(self, blind_id: str) -> None:
        super().__init__(f"Blind user {blind_id} not found", blind_id=blind_id)


class UnknownGuardian(NotFound):
    """Referenced guardian does not exist."""

    def __init__(self, guardian_id: str) -> None:
        super().__init__(f"Guardian {guardian_id} not found", guardian_id=guardian_id)


class DuplicateActiveRequest(CarelinkError):
    """A pending or accepted request already exists for the pair."""

    status_code = 409

    def __init__(self, blind_id: str, guardian_id: str, status: str | None = None) -> None:
        if status == "accepted":
            message = f"{blind_id} is already connected to {guardian_id}"
        else:
            message = f"A connection request from {blind_id} to {guardian_id} is already pending"
        super().__init__(message, blind_id=blind_id, guardian_id=guardian_id, status=status)


class DuplicateAccount(CarelinkError):
    """An account with the same unique attribute already exists."""

    status_code = 409


class InvalidTransition(CarelinkError):
    """Requested status change is not allowed from the current status."""

    status_code = 409

    def __init__(self, current: str, target: str, request_id: Any = None) -> None:
        super().__init__(
            f"Invalid transition: {current} -> {target}",
            current=current,
            target=target,
            request_id=str(request_id) if request_id is not None else None,
        )
        self.current = current
        self.target = target


class NotRequestOwner(CarelinkError):
    """Acting guardian is not the guardian the request was addressed to."""

    status_code = 403


class TransientGatewayError(CarelinkError):
    """Database or change feed unavailable. Safe to retry."""

    status_code = 503
    retryable = True
