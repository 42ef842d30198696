"""Tests for the request authentication pipeline."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from tuneportal.models import Role, SecurityEvent, UserSession
from tuneportal.services.auth import Principal, issue_token, verify_token
from tuneportal.services.authenticator import Authenticator, AuthPolicy
from tuneportal.services.ban import BanEnforcer
from tuneportal.services.errors import (
    AuthenticationError,
    BanEnforcedError,
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    StoreError,
    TokenExpiredError,
)
from tuneportal.services.session_store import SessionStore


class TestStatefulPolicy:
    """Token, live session and ban check."""

    @pytest.mark.asyncio
    async def test_valid_token_and_session(self, db_session, regular_user, create_login_session):
        session_id = await create_login_session(regular_user)
        token = issue_token(Principal.from_user(regular_user))

        context = await Authenticator(db_session).authenticate(token, session_id)

        assert context.user_id == regular_user.id
        assert context.principal.username == "driver"
        assert context.session_id == session_id
        assert context.session.id == session_id
        assert context.refreshed_token is None

    @pytest.mark.asyncio
    async def test_missing_token(self, db_session):
        with pytest.raises(AuthenticationError):
            await Authenticator(db_session).authenticate(None, "whatever")

    @pytest.mark.asyncio
    async def test_expired_token(self, db_session, regular_user, create_login_session):
        session_id = await create_login_session(regular_user)
        token = issue_token(Principal.from_user(regular_user), expires_delta=timedelta(seconds=-1))
        with pytest.raises(TokenExpiredError):
            await Authenticator(db_session).authenticate(token, session_id)

    @pytest.mark.asyncio
    async def test_missing_session(self, db_session, regular_user):
        token = issue_token(Principal.from_user(regular_user))
        with pytest.raises(SessionNotFoundError) as exc_info:
            await Authenticator(db_session).authenticate(token, None)
        assert exc_info.value.extra["redirect_to"] == "/auth/terminated"

    @pytest.mark.asyncio
    async def test_deleted_session_is_rejected_despite_valid_token(
        self, db_session, regular_user, create_login_session
    ):
        session_id = await create_login_session(regular_user)
        token = issue_token(Principal.from_user(regular_user))
        await SessionStore(db_session).delete(session_id)

        with pytest.raises(SessionNotFoundError):
            await Authenticator(db_session).authenticate(token, session_id)

    @pytest.mark.asyncio
    async def test_session_of_another_user(
        self, db_session, regular_user, admin_user, create_login_session
    ):
        admin_session = await create_login_session(admin_user)
        token = issue_token(Principal.from_user(regular_user))

        with pytest.raises(SessionNotFoundError):
            await Authenticator(db_session).authenticate(token, admin_session)

    @pytest.mark.asyncio
    async def test_expired_session_is_deleted(self, db_session, regular_user, create_login_session):
        session_id = await create_login_session(regular_user)
        await db_session.execute(
            update(UserSession)
            .where(UserSession.id == session_id)
            .values(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        await db_session.commit()
        token = issue_token(Principal.from_user(regular_user))

        with pytest.raises(SessionExpiredError):
            await Authenticator(db_session).authenticate(token, session_id)
        assert await SessionStore(db_session).get(session_id) is None

    @pytest.mark.asyncio
    async def test_deleted_user(self, db_session):
        token = issue_token(
            Principal(id=9999, username="ghost", email="ghost@example.com", role=Role.USER)
        )
        with pytest.raises(InvalidTokenError):
            await Authenticator(db_session).authenticate(token, None, policy=AuthPolicy.STATELESS)

    @pytest.mark.asyncio
    async def test_banned_user_is_rejected_and_logged(
        self, db_session, regular_user, admin_user, create_login_session
    ):
        token = issue_token(Principal.from_user(regular_user))
        await BanEnforcer(db_session).ban_user(regular_user.id, "Abuse", "1_day", admin_user.id)
        # A session created after the ban still does not get through
        session_id = await create_login_session(regular_user)

        with pytest.raises(BanEnforcedError):
            await Authenticator(db_session).authenticate(token, session_id)

        events = (
            await db_session.execute(
                select(SecurityEvent).where(SecurityEvent.event_type == "banned_access_attempt")
            )
        ).scalars().all()
        assert len(events) == 1
        assert events[0].user_id == regular_user.id

    @pytest.mark.asyncio
    async def test_store_failure(self, db_session, regular_user, create_login_session):
        session_id = await create_login_session(regular_user)
        token = issue_token(Principal.from_user(regular_user))
        failure = OperationalError("SELECT", {}, Exception("connection reset"))

        with patch.object(db_session, "execute", AsyncMock(side_effect=failure)):
            with pytest.raises(StoreError):
                await Authenticator(db_session).authenticate(token, session_id)


class TestStatelessPolicy:
    @pytest.mark.asyncio
    async def test_no_session_needed(self, db_session, regular_user):
        token = issue_token(Principal.from_user(regular_user))
        context = await Authenticator(db_session).authenticate(
            token, None, policy=AuthPolicy.STATELESS
        )
        assert context.user_id == regular_user.id
        assert context.session_id is None
        assert context.session is None

    @pytest.mark.asyncio
    async def test_ban_still_enforced(self, db_session, regular_user, admin_user):
        token = issue_token(Principal.from_user(regular_user))
        await BanEnforcer(db_session).ban_user(regular_user.id, "Abuse", "permanent", admin_user.id)

        with pytest.raises(BanEnforcedError):
            await Authenticator(db_session).authenticate(token, None, policy=AuthPolicy.STATELESS)


class TestTokenRefresh:
    """Principals are rebuilt from the user row and reissued when stale."""

    @pytest.mark.asyncio
    async def test_token_near_expiry_is_reissued(
        self, db_session, regular_user, create_login_session
    ):
        session_id = await create_login_session(regular_user)
        token = issue_token(Principal.from_user(regular_user), expires_delta=timedelta(minutes=30))

        context = await Authenticator(db_session).authenticate(token, session_id)

        assert context.refreshed_token is not None
        assert verify_token(context.refreshed_token) == context.principal

    @pytest.mark.asyncio
    async def test_role_change_is_picked_up(self, db_session, regular_user):
        token = issue_token(Principal.from_user(regular_user))
        regular_user.role = Role.ADMIN
        await db_session.commit()

        context = await Authenticator(db_session).authenticate(
            token, None, policy=AuthPolicy.STATELESS
        )

        assert context.principal.is_admin
        assert verify_token(context.refreshed_token).role == Role.ADMIN
