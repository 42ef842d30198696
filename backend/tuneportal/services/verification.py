"""Single-use email verification and password reset tokens."""

import hashlib
import logging
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.core.config import settings
from tuneportal.models import TokenPurpose, User, VerificationToken
from tuneportal.services.auth import AuthService
from tuneportal.services.errors import ValidationError
from tuneportal.services.mailer import MailMessage, get_mail_sender
from tuneportal.services.session_store import SessionStore

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


class VerificationService:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose == TokenPurpose.EMAIL_VERIFICATION:
            return timedelta(hours=settings.email_verification_ttl_hours)
        return timedelta(minutes=settings.password_reset_ttl_minutes)

    async def issue(self, user: User, purpose: TokenPurpose) -> str:
        """Create a token for ``user``, invalidating earlier unused ones."""
        now = datetime.now(UTC)
        await self.session.execute(
            update(VerificationToken)
            .where(
                VerificationToken.user_id == user.id,
                VerificationToken.purpose == purpose,
                VerificationToken.used_at.is_(None),
            )
            .values(used_at=now)
        )

        raw_token = secrets.token_urlsafe(32)
        self.session.add(
            VerificationToken(
                user_id=user.id,
                purpose=purpose,
                token_hash=hash_token(raw_token),
                expires_at=now + self._ttl(purpose),
            )
        )
        await self.session.commit()
        return raw_token

    async def redeem(self, raw_token: str, purpose: TokenPurpose) -> User:
        """Consume a token and return its user.

        The same generic ValidationError covers unknown, expired and reused
        tokens.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(VerificationToken)
            .where(
                VerificationToken.token_hash == hash_token(raw_token),
                VerificationToken.purpose == purpose,
                VerificationToken.used_at.is_(None),
                VerificationToken.expires_at > now,
            )
            .values(used_at=now)
            .returning(VerificationToken.user_id)
            .execution_options(synchronize_session=False)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            await self.session.rollback()
            raise ValidationError("Invalid or expired token")

        user = (
            await self.session.execute(select(User).where(User.id == user_id))
        ).scalar_one()
        await self.session.commit()
        return user

    async def send_verification_email(self, user: User) -> None:
        token = await self.issue(user, TokenPurpose.EMAIL_VERIFICATION)
        link = f"{settings.frontend_url}/auth/verify-email?token={token}"
        await get_mail_sender().send(
            MailMessage(
                to=user.email,
                subject="Verify your email address",
                body=f"Hello {user.username},\n\nConfirm your email address: {link}\n",
            )
        )

    async def verify_email(self, raw_token: str) -> User:
        user = await self.redeem(raw_token, TokenPurpose.EMAIL_VERIFICATION)
        user.email_verified = True
        await self.session.commit()
        logger.info(f"Email verified for user {user.username}")
        return user

    async def resend_verification(self, email: str) -> User | None:
        """Send a fresh verification link to an unverified account, if any."""
        user = await AuthService(self.session).get_user_by_email(email)
        if user is None or user.email_verified:
            return None
        await self.send_verification_email(user)
        return user

    async def request_password_reset(self, email: str) -> User | None:
        """Email a reset link if the address belongs to a user."""
        user = await AuthService(self.session).get_user_by_email(email)
        if user is None:
            return None

        token = await self.issue(user, TokenPurpose.PASSWORD_RESET)
        link = f"{settings.frontend_url}/auth/reset-password?token={token}"
        await get_mail_sender().send(
            MailMessage(
                to=user.email,
                subject="Reset your password",
                body=(
                    f"Hello {user.username},\n\nReset your password: {link}\n"
                    f"The link expires in {settings.password_reset_ttl_minutes} minutes.\n"
                ),
            )
        )
        return user

    async def reset_password(self, raw_token: str, new_password: str) -> tuple[User, int]:
        """Set a new password and revoke every session. Returns (user, sessions_revoked)."""
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )

        user = await self.redeem(raw_token, TokenPurpose.PASSWORD_RESET)
        await AuthService(self.session).set_password(user, new_password)
        revoked = await SessionStore(self.session).delete_all_for_user(user.id)
        return user, revoked
