"""Termination broadcaster - admin "log out everywhere".

There is no push channel. Affected clients find out on their next request
(a 401 carrying ``redirect_to``) or by polling the session-status endpoint.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from tuneportal.models import SessionTermination, User
from tuneportal.services.errors import NotFoundError
from tuneportal.services.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_TERMINATION_REASON = "Administrative action"


@dataclass(frozen=True)
class TerminationResult:
    terminated_count: int
    user_id: int


@dataclass(frozen=True)
class SessionStatus:
    terminated: bool
    reason: str | None


class TerminationService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.sessions = SessionStore(session)

    async def terminate_session(
        self,
        session_id: str,
        terminated_by: int,
        reason: str | None = None,
    ) -> TerminationResult:
        """Terminate every session belonging to the owner of ``session_id``."""
        row = await self.sessions.get(session_id)
        if row is None:
            raise NotFoundError("Session not found")
        return await self.terminate_user_sessions(row.user_id, terminated_by, reason)

    async def terminate_user_sessions(
        self,
        user_id: int,
        terminated_by: int,
        reason: str | None = None,
    ) -> TerminationResult:
        deleted = await self.sessions.delete_all_for_user(user_id)

        record = SessionTermination(
            user_id=user_id,
            terminated_by=terminated_by,
            terminated_at=datetime.now(UTC),
            reason=reason or DEFAULT_TERMINATION_REASON,
            sessions_terminated=deleted,
            acknowledged=False,
        )
        self.session.add(record)
        await self.session.commit()

        logger.info(f"Terminated {deleted} session(s) for user {user_id} (by {terminated_by})")
        return TerminationResult(terminated_count=deleted, user_id=user_id)

    async def get_termination_reason(self, user_id: int) -> str:
        """Human-readable reason for the user's most recent termination."""
        admin = aliased(User)
        result = await self.session.execute(
            select(SessionTermination, admin.username)
            .outerjoin(admin, admin.id == SessionTermination.terminated_by)
            .where(SessionTermination.user_id == user_id)
            .order_by(SessionTermination.terminated_at.desc(), SessionTermination.id.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return DEFAULT_TERMINATION_REASON

        record, admin_name = row
        reason = record.reason or DEFAULT_TERMINATION_REASON
        when = record.terminated_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        return f"{reason} (by {admin_name or 'an administrator'} at {when})"

    async def session_status(
        self,
        user_id: int,
        session_live: bool,
        session_started_at: datetime | None = None,
    ) -> SessionStatus:
        """Poll result for a client; acknowledges the newest pending record.

        A pending record older than the caller's current session belongs to an
        earlier login and is acknowledged without reporting a termination.
        """
        result = await self.session.execute(
            select(SessionTermination)
            .where(
                SessionTermination.user_id == user_id,
                SessionTermination.acknowledged.is_(False),
            )
            .order_by(SessionTermination.terminated_at.desc(), SessionTermination.id.desc())
            .limit(1)
        )
        pending = result.scalar_one_or_none()

        if pending is not None:
            pending.acknowledged = True
            await self.session.commit()
            superseded = (
                session_live
                and session_started_at is not None
                and session_started_at > pending.terminated_at
            )
            if not superseded:
                return SessionStatus(terminated=True, reason=pending.reason)

        if not session_live:
            return SessionStatus(terminated=True, reason="No active session")
        return SessionStatus(terminated=False, reason=None)
