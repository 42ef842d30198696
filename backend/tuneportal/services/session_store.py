"""Session store - server-side login sessions, revocable independently of tokens."""

import logging
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.core.config import settings
from tuneportal.models import User, UserSession

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Opaque, unguessable session reference (256 bits)."""
    return secrets.token_urlsafe(32)


class SessionStore:
    """CRUD for the ``sessions`` table.

    Writes commit immediately so that a revocation is visible to every other
    request as soon as the call returns.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=settings.session_ttl_days)

    async def create_session(
        self,
        user_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Insert a session row with a fixed TTL and return its id."""
        now = datetime.now(UTC)
        row = UserSession(
            id=generate_session_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.add(row)
        await self.session.commit()
        logger.debug(f"Created session for user {user_id}")
        return row.id

    async def get(self, session_id: str) -> UserSession | None:
        """Return the session row regardless of expiry."""
        result = await self.session.execute(
            select(UserSession).where(UserSession.id == session_id)
        )
        return result.scalar_one_or_none()

    async def get_active(self, session_id: str) -> UserSession | None:
        result = await self.session.execute(
            select(UserSession).where(
                UserSession.id == session_id,
                UserSession.expires_at > datetime.now(UTC),
            )
        )
        return result.scalar_one_or_none()

    async def is_active(self, session_id: str) -> bool:
        """True iff the row exists and has not expired."""
        return await self.get_active(session_id) is not None

    async def touch(self, session_id: str) -> None:
        await self.session.execute(
            update(UserSession)
            .where(UserSession.id == session_id)
            .values(last_activity_at=datetime.now(UTC))
        )
        await self.session.commit()

    async def delete(self, session_id: str) -> bool:
        """Delete one session. Returns False if it did not exist."""
        result = await self.session.execute(
            delete(UserSession).where(UserSession.id == session_id)
        )
        await self.session.commit()
        return (result.rowcount or 0) > 0

    async def delete_all_for_user(self, user_id: int) -> int:
        """Delete every session owned by ``user_id`` in one statement.

        Idempotent. A session created concurrently is either removed here or
        committed afterwards, in which case the per-request ban and session
        checks still reject it.
        """
        result = await self.session.execute(
            delete(UserSession).where(UserSession.user_id == user_id)
        )
        await self.session.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} session(s) for user {user_id}")
        return deleted

    async def count_for_user(self, user_id: int, active_only: bool = True) -> int:
        query = select(func.count(UserSession.id)).where(UserSession.user_id == user_id)
        if active_only:
            query = query.where(UserSession.expires_at > datetime.now(UTC))
        result = await self.session.execute(query)
        return result.scalar() or 0

    async def list_active(self, limit: int = 100) -> list[tuple[UserSession, User]]:
        """Active sessions joined with their owners, most recently used first."""
        result = await self.session.execute(
            select(UserSession, User)
            .join(User, User.id == UserSession.user_id)
            .where(UserSession.expires_at > datetime.now(UTC))
            .order_by(UserSession.last_activity_at.desc(), UserSession.created_at.desc())
            .limit(limit)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def cleanup_expired(self) -> int:
        """Purge sessions past their expiry. Returns the number removed."""
        result = await self.session.execute(
            delete(UserSession).where(UserSession.expires_at <= datetime.now(UTC))
        )
        await self.session.commit()
        return result.rowcount or 0
