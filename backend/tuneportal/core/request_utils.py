"""Request utility functions for client identification."""

import ipaddress
import logging
from dataclasses import dataclass

from fastapi import Request

from tuneportal.core.config import settings

logger = logging.getLogger(__name__)

_MAX_USER_AGENT_LENGTH = 255


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """Get the client IP address from a request.

    Forwarding headers (X-Forwarded-For, X-Real-IP) are only honoured when the
    direct peer is listed in TRUSTED_PROXY_IPS; otherwise a client could pick
    its own rate-limit bucket by spoofing them.
    """
    direct_ip = request.client.host if request.client else None
    trusted = settings.trusted_proxy_ip_set

    if direct_ip and direct_ip in trusted:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
            if _is_valid_ip(client_ip):
                return client_ip
            logger.warning(f"Invalid IP in X-Forwarded-For header: {client_ip}")

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if direct_ip:
        return direct_ip

    return "unknown"


def get_user_agent(request: Request) -> str:
    return (request.headers.get("User-Agent") or "unknown")[:_MAX_USER_AGENT_LENGTH]


@dataclass(frozen=True)
class RequestMeta:
    """Request metadata attached to security events."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    path: str | None = None
    method: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMeta":
        return cls(
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            path=request.url.path,
            method=request.method,
        )

