"""Pytest configuration and fixtures for backend tests.

Database handling:
- TEST_DATABASE_URL is used when set (e.g. a disposable PostgreSQL database)
- Otherwise each test gets a fresh SQLite file under pytest's tmp_path
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment variables before importing app modules
_IMPORT_DB_DIR = tempfile.mkdtemp(prefix="tuneportal-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_IMPORT_DB_DIR}/import.db"
)
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-with-enough-length-0123456789"
os.environ["SECURITY_LOG_TIMEOUT_SECONDS"] = "5"
os.environ["ALERT_WEBHOOK_URL"] = ""

TEST_PASSWORD = "correct-horse-battery"


def _database_url(tmp_path: Path) -> str:
    explicit_url = os.environ.get("TEST_DATABASE_URL")
    if explicit_url:
        return explicit_url
    return f"sqlite+aiosqlite:///{tmp_path}/tuneportal_test.db"


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a database engine with all tables for one test."""
    from tuneportal.core.database import Base
    from tuneportal.models import BaseModel  # noqa: F401  (registers all tables)

    engine = create_async_engine(_database_url(tmp_path), poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to the test engine, also used by the security logger."""
    from tuneportal.services.security_log import SecurityEventLogger

    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    security_logger = SecurityEventLogger.get_instance()
    security_logger.set_db_session_factory(factory)

    yield factory

    # Let forwarded webhook alerts finish before the engine goes away
    for task in list(security_logger._alert_tasks):
        await task
    security_logger.set_db_session_factory(None)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database override."""
    from tuneportal.core.database import get_db
    from tuneportal.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# --- Test Factories ---


@pytest.fixture
def user_factory(db_session):
    """Factory for creating committed test users."""
    from tuneportal.models import Role, User
    from tuneportal.services.auth import hash_password

    counter = {"n": 0}

    async def _create_user(
        username: str | None = None,
        email: str | None = None,
        password: str = TEST_PASSWORD,
        role: Role = Role.USER,
        email_verified: bool = True,
        **kwargs,
    ) -> User:
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        user = User(
            username=username,
            email=email or f"{username}@example.com",
            password_hash=hash_password(password),
            role=role,
            email_verified=email_verified,
            **kwargs,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest_asyncio.fixture
async def regular_user(user_factory):
    return await user_factory(username="driver", credits=25)


@pytest_asyncio.fixture
async def admin_user(user_factory):
    from tuneportal.models import Role

    return await user_factory(username="tuneadmin", role=Role.ADMIN)


@pytest.fixture
def create_login_session(db_session):
    """Create a live session row for a user and return its id."""
    from tuneportal.services.session_store import SessionStore

    async def _create(user, ip_address: str = "127.0.0.1") -> str:
        return await SessionStore(db_session).create_session(user.id, ip_address, "pytest")

    return _create


@pytest.fixture
def authenticate_as(async_client, create_login_session):
    """Put a fresh token and session for ``user`` into the client's cookie jar.

    Returns the session id.
    """
    from tuneportal.core.config import settings
    from tuneportal.services.auth import Principal, issue_token

    async def _authenticate(user) -> str:
        session_id = await create_login_session(user)
        async_client.cookies.clear()
        async_client.cookies.set(settings.auth_cookie_name, issue_token(Principal.from_user(user)))
        async_client.cookies.set(settings.session_cookie_name, session_id)
        return session_id

    return _authenticate


@pytest.fixture
def mail_outbox():
    """Capture outgoing mail for the duration of a test."""
    from tuneportal.services.mailer import LoggingMailSender, get_mail_sender, set_mail_sender

    previous = get_mail_sender()
    sender = LoggingMailSender()
    set_mail_sender(sender)
    yield sender.sent
    set_mail_sender(previous)


def cookie_header(user, session_id: str | None = None, token: str | None = None) -> dict:
    """Explicit Cookie header for acting as ``user`` without touching the client's jar."""
    from tuneportal.core.config import settings
    from tuneportal.services.auth import Principal, issue_token

    cookies = [f"{settings.auth_cookie_name}={token or issue_token(Principal.from_user(user))}"]
    if session_id:
        cookies.append(f"{settings.session_cookie_name}={session_id}")
    return {"Cookie": "; ".join(cookies)}
