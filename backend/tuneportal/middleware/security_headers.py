"""Security headers applied to every response."""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from tuneportal.core.config import settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds browser hardening headers. Auth responses are never cacheable."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.url.path.startswith(("/api/auth", "/api/admin")):
            response.headers["Cache-Control"] = "no-store"

        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        if settings.cookie_secure or forwarded_proto == "https" or request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response
