"""Request authentication pipeline.

One request moves through::

    Unauthenticated -> TokenPresent -> TokenVerified -> (SessionLive) -> BanClear -> Authorized

and any step may short-circuit by raising one of the errors in
``tuneportal.services.errors``. Whether the session step runs is an explicit
per-route ``AuthPolicy``.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.core.request_utils import RequestMeta
from tuneportal.models import SecurityEventType, Severity, User, UserSession
from tuneportal.services.auth import (
    AuthService,
    Principal,
    decode_token,
    needs_refresh,
    principal_from_claims,
    refresh_token,
)
from tuneportal.services.ban import BanEnforcer
from tuneportal.services.errors import (
    AuthenticationError,
    BanEnforcedError,
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    StoreError,
)
from tuneportal.services.security_log import get_security_logger
from tuneportal.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class AuthPolicy(str, enum.Enum):
    """How much a route trusts the bearer token on its own."""

    # Signed token plus ban check. For high-frequency reads.
    STATELESS = "stateless"
    # Token, live session row, and ban check. For anything an admin must be
    # able to revoke immediately.
    STATEFUL = "stateful"


@dataclass
class AuthContext:
    """Result of a successful authentication, threaded into handlers."""

    principal: Principal
    user: User
    session_id: str | None
    session: UserSession | None = None
    refreshed_token: str | None = None

    @property
    def user_id(self) -> int:
        return self.principal.id


class Authenticator:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.auth_service = AuthService(session)
        self.sessions = SessionStore(session)
        self.bans = BanEnforcer(session)

    async def authenticate(
        self,
        token: str | None,
        session_id: str | None,
        policy: AuthPolicy = AuthPolicy.STATEFUL,
        request_meta: RequestMeta | None = None,
    ) -> AuthContext:
        if not token:
            raise AuthenticationError()

        claims = decode_token(token)
        principal = principal_from_claims(claims)

        try:
            session_row = None
            if policy == AuthPolicy.STATEFUL:
                session_row = await self._require_live_session(session_id, principal)

            user = await self.auth_service.get_user_by_id(principal.id)
            if user is None:
                raise InvalidTokenError()

            try:
                self.bans.check(user)
            except BanEnforcedError:
                await get_security_logger().record(
                    SecurityEventType.BANNED_ACCESS_ATTEMPT,
                    Severity.WARNING,
                    user_id=user.id,
                    request_meta=request_meta,
                    details={"ban_reason": user.ban_reason},
                )
                raise

            if session_row is not None:
                await self.sessions.touch(session_row.id)
        except SQLAlchemyError as e:
            logger.error(f"Authentication store failure for user {principal.id}: {e}")
            raise StoreError() from e

        # Role and identity come from the user row once it is loaded; a token
        # minted before a role change is reissued with current claims.
        current = Principal.from_user(user)
        refreshed = None
        if current != principal or needs_refresh(claims):
            refreshed = refresh_token(current)

        return AuthContext(
            principal=current,
            user=user,
            session_id=session_id if policy == AuthPolicy.STATEFUL else None,
            session=session_row,
            refreshed_token=refreshed,
        )

    async def _require_live_session(
        self, session_id: str | None, principal: Principal
    ) -> UserSession:
        if not session_id:
            raise SessionNotFoundError()

        row = await self.sessions.get(session_id)
        if row is None or row.user_id != principal.id:
            raise SessionNotFoundError()

        if row.expires_at <= datetime.now(UTC):
            await self.sessions.delete(row.id)
            raise SessionExpiredError()
        return row
