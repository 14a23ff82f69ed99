from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure of a directory, session, linking or authorization operation.

    The HTTP layer renders each one as an error envelope using the class's
    status_code and stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - upstream_error (502)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthRequiredError(AuthenticationError):
    """No valid session accompanies the request (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientRoleError(ForbiddenError):
    """Authenticated user lacks the required role (403)."""
    pass


class AccountDeactivatedError(ForbiddenError):
    """Authenticated user has been deactivated by an administrator (403)."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class MisconfiguredError(ServerError):
    """A required binding (store, OAuth credentials) is missing (500)."""
    error_code = "misconfigured"


class UpstreamError(ServiceError):
    """An external identity provider failed; never retried here (502)."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthRequiredError",
    "ForbiddenError",
    "InsufficientRoleError",
    "AccountDeactivatedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "MisconfiguredError",
    "UpstreamError",
]
