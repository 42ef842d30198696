"""Middleware module for TunePortal backend."""

from tuneportal.middleware.security_headers import SecurityHeadersMiddleware

__all__ = ["SecurityHeadersMiddleware"]
