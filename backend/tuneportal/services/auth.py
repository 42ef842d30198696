"""Credential and token service.

Passwords are hashed with Argon2id. Access tokens are HS256 JWTs carrying the
principal's identity claims; verifying one is a pure function of the signing
secret and the clock.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jwt.exceptions import PyJWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tuneportal.core.config import settings
from tuneportal.models import Role, User
from tuneportal.services.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

# Verified against when the username is unknown so both failure paths cost the same
_DUMMY_HASH = ph.hash("tuneportal-dummy-password")

_REQUIRED_CLAIMS = ("sub", "id", "username", "email", "role", "exp")


@dataclass(frozen=True)
class Principal:
    """Authenticated identity, derived only from a verified token."""

    id: int
    username: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(id=user.id, username=user.username, email=user.email, role=user.role)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
        }


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        return ph.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def issue_token(principal: Principal, expires_delta: timedelta | None = None) -> str:
    """Sign an access token for ``principal``."""
    now = datetime.now(UTC)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_token_expire_minutes)
    payload = {
        "sub": str(principal.id),
        **principal.to_dict(),
        "type": "access",
        "iat": now,
        "exp": now + expires_delta,
        "jti": secrets.token_hex(16),
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return str(token)


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a token's signature, expiry and claim set."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": list(_REQUIRED_CLAIMS)},
        )
    except jwt.ExpiredSignatureError as e:
        raise TokenExpiredError() from e
    except PyJWTError as e:
        logger.debug(f"Token rejected: {e}")
        raise InvalidTokenError() from e

    if payload.get("type") != "access":
        raise InvalidTokenError()
    return payload


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    try:
        principal = Principal(
            id=int(claims["id"]),
            username=str(claims["username"]),
            email=str(claims["email"]),
            role=Role(claims["role"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidTokenError() from e
    if str(principal.id) != str(claims.get("sub")):
        raise InvalidTokenError()
    return principal


def verify_token(token: str) -> Principal:
    """Verify a token and return the principal it carries. Performs no I/O."""
    return principal_from_claims(decode_token(token))


def needs_refresh(claims: dict[str, Any], now: datetime | None = None) -> bool:
    """True when the token expires within the configured refresh window."""
    now = now or datetime.now(UTC)
    expires_at = datetime.fromtimestamp(int(claims["exp"]), UTC)
    return expires_at - now < timedelta(minutes=settings.jwt_refresh_window_minutes)


def refresh_token(principal: Principal) -> str:
    """Issue a fresh token for an already-verified principal."""
    return issue_token(principal)


class AuthService:
    """Service for user credential operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user_by_id(self, user_id: int) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_username(self, username: str) -> User | None:
        result = await self.session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        role: Role = Role.USER,
        email_verified: bool = False,
    ) -> User:
        """Create a new user account."""
        if await self.get_user_by_username(username) is not None:
            raise ConflictError("Username is already taken")
        if await self.get_user_by_email(email) is not None:
            raise ConflictError("Email is already registered")

        user = User(
            username=username,
            email=email.lower(),
            password_hash=hash_password(password),
            role=role,
            email_verified=email_verified,
        )
        self.session.add(user)
        await self.session.commit()
        await self.session.refresh(user)

        logger.info(f"Created user: {username} ({role.value})")
        return user

    async def authenticate(self, username: str, password: str) -> User:
        """Authenticate a user and return the user object.

        Raises InvalidCredentialsError for both "user not found" and
        "wrong password" to prevent user enumeration.
        """
        user = await self.get_user_by_username(username)

        if user is None:
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentialsError()

        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError()

        return user

    async def record_login(self, user: User, ip_address: str) -> None:
        user.last_login_at = datetime.now(UTC)
        user.last_login_ip = ip_address
        await self.session.commit()

    async def set_password(self, user: User, new_password: str) -> None:
        user.password_hash = hash_password(new_password)
        await self.session.commit()
        logger.info(f"Password changed for user: {user.username}")

    async def set_role(self, user_id: int, role: Role) -> tuple[User, Role]:
        """Change a user's role. Returns the user and the previous role."""
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")

        previous = user.role
        user.role = role
        await self.session.commit()
        logger.info(f"Role for user {user.username} changed: {previous.value} -> {role.value}")
        return user, previous
