from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
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


class InvalidOrExpiredTokenError(ValidationError):
    """Password reset token is unknown, used or expired (400)."""

    def __init__(self, message: str = "invalid or expired reset token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Subclasses exist so callers and logs can tell failures apart; the client
    only ever sees the generic message.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthenticatedError(AuthenticationError):
    """Access credential missing, malformed, tampered or expired."""


class IdentityNotFoundError(AuthenticationError):
    """Credential was valid but its subject no longer exists."""


class RefreshRevokedError(AuthenticationError):
    """Refresh credential does not match the value stored for the identity."""


class InvalidCredentialsError(AuthenticationError):
    """Unknown identity or wrong password at login."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ThrottledError(RateLimitedError):
    """Raised by a rate limiter; carries the seconds until the window resets."""

    def __init__(
        self,
        retry_after: int,
        message: str = "too many requests, please try again later",
        **kwargs,
    ) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EmailDeliveryError(ServerError):
    """Outbound email could not be handed to the mail server."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "UnauthenticatedError",
    "IdentityNotFoundError",
    "RefreshRevokedError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ThrottledError",
    "ServerError",
    "EmailDeliveryError",
]
