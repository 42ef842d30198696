"""Error taxonomy for the security core.

Every error carries the HTTP status it maps to and a client-safe message.
Anything diagnostic belongs in the server log, never in ``message``.
"""

from datetime import datetime
from typing import Any


class ServiceError(Exception):
    """Base class for errors rendered directly to API clients."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials."""

    status_code = 401
    default_message = "Authentication required"


class InvalidCredentialsError(AuthenticationError):
    default_message = "Invalid username or password"


class InvalidTokenError(AuthenticationError):
    default_message = "Invalid token"


class TokenExpiredError(AuthenticationError):
    default_message = "Token has expired"


class SessionNotFoundError(AuthenticationError):
    """The session row is gone. The client must clear credentials."""

    default_message = "Session has been terminated"
    redirect_to = "/auth/terminated"

    def __init__(self, message: str | None = None, **extra: Any):
        extra.setdefault("redirect_to", self.redirect_to)
        super().__init__(message, **extra)


class SessionExpiredError(SessionNotFoundError):
    default_message = "Session has expired"


class AuthorizationError(ServiceError):
    status_code = 403
    default_message = "Admin access required"


class EmailNotVerifiedError(AuthorizationError):
    default_message = "Please verify your email address before logging in"


class BanEnforcedError(AuthorizationError):
    """The user is under an active ban."""

    def __init__(self, reason: str | None, expires_at: datetime | None):
        self.reason = reason
        self.expires_at = expires_at
        super().__init__(
            f"Your account has been banned. Reason: {reason or 'No reason provided'}",
            banned=True,
            ban_reason=reason,
            ban_expires_at=expires_at.isoformat() if expires_at else None,
        )


class RateLimitExceededError(ServiceError):
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None):
        self.retry_after = max(1, retry_after)
        super().__init__(message, retry_after=self.retry_after)

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 409
    default_message = "Conflict"


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class StoreError(ServiceError):
    """Backing store failure. The original exception is chained, not exposed."""

    status_code = 500
    default_message = "Internal server error"
