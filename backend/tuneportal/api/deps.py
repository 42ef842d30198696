"""Shared FastAPI dependencies: authentication gates and rate limiting."""

import logging
from collections.abc import Callable

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.api.cookies import set_auth_cookie
from tuneportal.core.config import settings
from tuneportal.core.database import get_db
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityEventType, Severity
from tuneportal.services.authenticator import AuthContext, Authenticator, AuthPolicy
from tuneportal.services.errors import AuthorizationError, RateLimitExceededError
from tuneportal.services.rate_limiter import RateLimiter, RateLimitRule
from tuneportal.services.security_log import get_security_logger

logger = logging.getLogger(__name__)


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta.from_request(request)


def extract_token(request: Request) -> str | None:
    """Auth cookie first, then an ``Authorization: Bearer`` header."""
    token = request.cookies.get(settings.auth_cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def extract_session_id(request: Request) -> str | None:
    return request.cookies.get(settings.session_cookie_name)


def require_user(policy: AuthPolicy = AuthPolicy.STATEFUL) -> Callable:
    """Dependency factory: authenticate the request under ``policy``.

    A reissued token is attached to the outgoing response as a cookie.
    """

    async def dependency(
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_db),
    ) -> AuthContext:
        context = await Authenticator(db).authenticate(
            extract_token(request),
            extract_session_id(request),
            policy=policy,
            request_meta=RequestMeta.from_request(request),
        )
        if context.refreshed_token:
            set_auth_cookie(response, context.refreshed_token)
        return context

    return dependency


def require_admin(
    policy: AuthPolicy = AuthPolicy.STATEFUL, sensitive: bool = False
) -> Callable:
    """Dependency factory: authenticate, then require the admin role.

    Non-admin attempts are logged as ``unauthorized_access`` before the 403;
    admitted requests are logged as ``api_access``, or as
    ``sensitive_data_access`` when the route exposes other users' details.
    """

    async def dependency(
        request: Request,
        context: AuthContext = Depends(require_user(policy)),
    ) -> AuthContext:
        meta = RequestMeta.from_request(request)
        security_logger = get_security_logger()
        if not context.principal.is_admin:
            logger.warning(
                f"Non-admin user {context.principal.username} attempted {request.url.path}"
            )
            await security_logger.record(
                SecurityEventType.UNAUTHORIZED_ACCESS,
                Severity.WARNING,
                user_id=context.user_id,
                request_meta=meta,
                details={"endpoint": request.url.path, "required_role": "admin"},
            )
            raise AuthorizationError()

        await security_logger.log_api_access(context.user_id, meta, sensitive=sensitive)
        return context

    return dependency


def rate_limit(rule: Callable[[], RateLimitRule]) -> Callable:
    """Dependency factory: count the request against ``rule()`` and 429 when over.

    ``rule`` is resolved per request so configuration changes apply immediately.
    """

    async def dependency(
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_db),
    ) -> None:
        if not settings.rate_limit_enabled:
            return

        meta = RequestMeta.from_request(request)
        current = rule()
        result = await RateLimiter(db).check_rule(meta.ip_address, current, request_meta=meta)
        if not result.allowed:
            raise RateLimitExceededError(result.retry_after_seconds)

        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)

    return dependency
