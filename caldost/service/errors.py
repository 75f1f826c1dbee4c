from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - unavailable (503)
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
    """Missing or malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials, token or session (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Bearer token failed signature, claim or expiry checks."""
    pass


class AccessLinkInvalidError(AuthenticationError):
    """Access grant absent, expired or not matching.

    Also raised for unknown complaints on the grant path so an unauthenticated
    caller cannot discover which complaint numbers exist.
    """

    def __init__(self) -> None:
        super().__init__("access link expired or invalid")


class AuthorizationError(ServiceError):
    """Access denied (403). The message never says which check failed."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "access denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """State conflict, e.g. updating a closed complaint or a duplicate record (409)."""
    status_code = 409
    error_code = "conflict"


class TransientError(ServiceError):
    """Secret store or persistence I/O failure (503). Not retried here."""
    status_code = 503
    error_code = "unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "AccessLinkInvalidError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "TransientError",
    "ServerError",
]
