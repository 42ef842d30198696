"""Periodic background maintenance for security tables."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tuneportal.core.config import settings
from tuneportal.services.rate_limiter import RateLimiter
from tuneportal.services.security_log import SecurityLogService
from tuneportal.services.session_store import SessionStore

logger = logging.getLogger(__name__)


async def purge_expired_sessions(db: AsyncSession) -> int:
    return await SessionStore(db).cleanup_expired()


async def purge_stale_rate_limit_windows(db: AsyncSession) -> int:
    return await RateLimiter(db).cleanup_expired_windows()


async def purge_old_security_events(db: AsyncSession) -> int:
    events, alerts = await SecurityLogService(db).cleanup_old_events(
        settings.security_log_retention_days
    )
    return events + alerts


async def run_periodically(
    name: str,
    job: Callable[[AsyncSession], Awaitable[int]],
    interval_seconds: float,
    session_factory: async_sessionmaker,
) -> None:
    """Run ``job`` every ``interval_seconds`` until cancelled.

    Errors are logged and the loop keeps going.
    """
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            async with session_factory() as db:
                removed = await job(db)
            if removed > 0:
                logger.info(f"{name}: removed {removed} row(s)")
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception(f"{name} failed")


def maintenance_jobs() -> list[tuple[str, Callable[[AsyncSession], Awaitable[int]], int]]:
    return [
        ("Session cleanup", purge_expired_sessions, settings.session_cleanup_interval_seconds),
        (
            "Rate limit window cleanup",
            purge_stale_rate_limit_windows,
            settings.rate_limit_cleanup_interval_seconds,
        ),
        (
            "Security log retention",
            purge_old_security_events,
            settings.security_log_cleanup_interval_seconds,
        ),
    ]
