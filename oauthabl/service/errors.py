from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Client or user credentials missing or wrong (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Referenced client, user, session or code does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate username or email at registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Backing store failed or returned something unusable (500)."""
    status_code = 500
    error_code = "server_error"


class PartialWriteError(ServerError):
    """A multi-key write stopped midway; applied steps are not rolled back."""

    def __init__(
        self,
        message: str,
        *,
        completed_steps: List[str],
        failed_step: str,
    ) -> None:
        super().__init__(
            message,
            detail={"completed_steps": list(completed_steps), "failed_step": failed_step},
        )
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "PartialWriteError",
]
