"""Ban enforcer - per-user bans with optional expiry."""

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.models import User
from tuneportal.services.errors import BanEnforcedError, NotFoundError
from tuneportal.services.termination import TerminationService

logger = logging.getLogger(__name__)

PERMANENT = "permanent"

_DURATION_PATTERN = re.compile(r"^(\d{1,4})_(minute|hour|day|week|month)s?$")
_UNIT_DELTAS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}


def parse_ban_duration(duration: str) -> timedelta | None:
    """Parse ``"permanent"`` or ``"<n>_<unit>"`` (e.g. ``"7_days"``).

    Returns None for a permanent ban. Raises ValueError for anything else,
    including a zero count.
    """
    token = duration.strip().lower()
    if token == PERMANENT:
        return None
    match = _DURATION_PATTERN.match(token)
    if match is None:
        raise ValueError(f"Invalid ban duration: {duration!r}")
    count = int(match.group(1))
    if count <= 0:
        raise ValueError(f"Ban duration must be positive: {duration!r}")
    return _UNIT_DELTAS[match.group(2)] * count


def ban_termination_reason(reason: str) -> str:
    return f"Account banned: {reason}"


def ban_in_effect(user: User, now: datetime | None = None) -> bool:
    """Soft expiry: a lapsed ban stays recorded but no longer blocks."""
    if not user.is_banned:
        return False
    if user.ban_expires_at is None:
        return True
    return user.ban_expires_at > (now or datetime.now(UTC))


@dataclass(frozen=True)
class BanResult:
    user_id: int
    username: str
    expires_at: datetime | None
    sessions_deleted: int


class BanEnforcer:
    """Applies, lifts and checks bans. Ban state is read fresh on every check."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.terminations = TerminationService(session)

    async def _get_user(self, user_id: int) -> User:
        result = await self.session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def ban_user(
        self,
        target_user_id: int,
        reason: str,
        duration: str,
        banned_by: int,
    ) -> BanResult:
        """Ban a user and terminate every session they hold.

        Raises ValueError for an unparseable duration and NotFoundError for an
        unknown user. The ban fields are committed before the sessions are
        deleted so a login racing the ban is caught by the ban check. The
        termination record carries the ban reason to the user's next poll.
        """
        delta = parse_ban_duration(duration)
        user = await self._get_user(target_user_id)

        now = datetime.now(UTC)
        user.is_banned = True
        user.ban_reason = reason
        user.ban_expires_at = now + delta if delta is not None else None
        user.banned_by = banned_by
        user.banned_at = now
        await self.session.commit()

        terminated = await self.terminations.terminate_user_sessions(
            user.id, banned_by, ban_termination_reason(reason)
        )
        logger.info(
            f"User {user.username} banned by {banned_by} until "
            f"{user.ban_expires_at.isoformat() if user.ban_expires_at else 'permanent'}"
        )
        return BanResult(
            user_id=user.id,
            username=user.username,
            expires_at=user.ban_expires_at,
            sessions_deleted=terminated.terminated_count,
        )

    async def unban_user(self, target_user_id: int, unbanned_by: int) -> User:
        user = await self._get_user(target_user_id)
        user.is_banned = False
        user.ban_reason = None
        user.ban_expires_at = None
        user.banned_by = None
        user.banned_at = None
        await self.session.commit()
        logger.info(f"User {user.username} unbanned by {unbanned_by}")
        return user

    async def is_banned(self, user_id: int) -> bool:
        return ban_in_effect(await self._get_user(user_id))

    def check(self, user: User) -> None:
        """Raise BanEnforcedError if ``user`` is under a ban in effect."""
        if ban_in_effect(user):
            raise BanEnforcedError(user.ban_reason, user.ban_expires_at)
