"""Persistent fixed-window rate limiter.

Counters live in ``rate_limit_counters`` so every worker process shares them
and limits survive restarts. Each check is a single upsert-and-increment
statement; there is no read-then-write window for concurrent requests to slip
through.

Windows are aligned to wall-clock multiples of ``window_ms``. A client can
therefore spend up to ``2 * limit`` requests across a window boundary.
"""

import logging
import time
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.core.config import settings
from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import RateLimitCounter, SecurityEventType, Severity
from tuneportal.services.errors import StoreError
from tuneportal.services.security_log import get_security_logger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """A named limit: at most ``limit`` requests per ``window_seconds``."""

    action: str
    limit: int
    window_seconds: int

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: int  # epoch ms at which the current window ends
    ms_before_next: int

    @property
    def retry_after_seconds(self) -> int:
        return max(1, -(-self.ms_before_next // 1000))


def login_rule() -> RateLimitRule:
    return RateLimitRule("login", settings.login_rate_limit, settings.login_rate_window_seconds)


def verify_email_rule() -> RateLimitRule:
    return RateLimitRule(
        "verify_email", settings.verify_email_rate_limit, settings.verify_email_rate_window_seconds
    )


def register_rule() -> RateLimitRule:
    return RateLimitRule(
        "register", settings.register_rate_limit, settings.register_rate_window_seconds
    )


def resend_verification_rule() -> RateLimitRule:
    return RateLimitRule(
        "resend_verification",
        settings.resend_verification_rate_limit,
        settings.resend_verification_rate_window_seconds,
    )


def password_reset_request_rule() -> RateLimitRule:
    return RateLimitRule(
        "password_reset_request",
        settings.password_reset_rate_limit,
        settings.password_reset_rate_window_seconds,
    )


def password_reset_rule() -> RateLimitRule:
    return RateLimitRule(
        "password_reset",
        settings.password_reset_rate_limit,
        settings.password_reset_rate_window_seconds,
    )


def window_start_for(now_ms: int, window_ms: int) -> int:
    return (now_ms // window_ms) * window_ms


class RateLimiter:
    """Fixed-window counters keyed by (ip, action, window start)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _upsert(self, ip_address: str, action: str, window_start: int, window_ms: int):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            insert = pg_insert
        elif dialect == "sqlite":
            insert = sqlite_insert
        else:
            raise StoreError(f"Unsupported database dialect for rate limiting: {dialect}")

        stmt = insert(RateLimitCounter).values(
            ip_address=ip_address,
            action=action,
            window_start_ms=window_start,
            window_ms=window_ms,
            count=1,
        )
        return stmt.on_conflict_do_update(
            index_elements=["ip_address", "action", "window_start_ms"],
            set_={"count": RateLimitCounter.count + 1},
        ).returning(RateLimitCounter.count)

    async def check_and_increment(
        self,
        ip_address: str,
        action: str,
        limit: int,
        window_ms: int,
        now_ms: int | None = None,
        request_meta: RequestMeta | None = None,
    ) -> RateLimitResult:
        """Count one request and decide whether it is allowed.

        Raises StoreError if the counter cannot be updated; callers must treat
        that as a denial.
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        window_start = window_start_for(now_ms, window_ms)
        reset_time = window_start + window_ms

        try:
            result = await self.session.execute(
                self._upsert(ip_address, action, window_start, window_ms)
            )
            count = result.scalar_one()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Rate limit store failure for {action} from {ip_address}: {e}")
            raise StoreError() from e

        allowed = count <= limit
        outcome = RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_time=reset_time,
            ms_before_next=reset_time - now_ms,
        )

        if not allowed:
            logger.info(
                f"Rate limit exceeded for {action} from {ip_address} ({count}/{limit})",
                extra={"ip_address": ip_address, "action": action},
            )

        await get_security_logger().record(
            SecurityEventType.RATE_LIMIT_CHECK if allowed else SecurityEventType.RATE_LIMIT_EXCEEDED,
            Severity.INFO if allowed else Severity.WARNING,
            request_meta=request_meta or RequestMeta(ip_address=ip_address),
            details={
                "action": action,
                "outcome": "allowed" if allowed else "denied",
                "count": count,
                "limit": limit,
                "window_ms": window_ms,
            },
        )
        return outcome

    async def check_rule(
        self,
        ip_address: str,
        rule: RateLimitRule,
        request_meta: RequestMeta | None = None,
    ) -> RateLimitResult:
        return await self.check_and_increment(
            ip_address, rule.action, rule.limit, rule.window_ms, request_meta=request_meta
        )

    async def cleanup_expired_windows(self, now_ms: int | None = None) -> int:
        """Delete counters whose window has ended."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        result = await self.session.execute(
            delete(RateLimitCounter).where(
                RateLimitCounter.window_start_ms + RateLimitCounter.window_ms <= now_ms
            )
        )
        await self.session.commit()
        return result.rowcount or 0
