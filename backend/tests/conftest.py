# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Base, User, UserRole
from auth import AuthService
from database import get_db_session
from lifecycle_engine import Actor
from main import app
from policy_config import set_policy


@pytest.fixture(autouse=True)
def reset_policy():
    """Every test starts from the built-in policy tables"""
    set_policy(None)
    yield
    set_policy(None)


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def admin_actor():
    return Actor(actor_id="admin-1", role="administrator")


@pytest.fixture
def operator_actor():
    return Actor(actor_id="op-1", role="operator")


@pytest.fixture
def user_actor():
    return Actor(actor_id="user-1", role="user")


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db_session, email: str, password: str, role: UserRole, name: str) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=name,
        password_hash=AuthService.hash_password(password),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a requester with the plain `user` role"""
    return await _make_user(db_session, "testuser@itsm.dev", "TestPassword123!", UserRole.USER, "Test User")


@pytest_asyncio.fixture
async def operator_user(db_session):
    return await _make_user(db_session, "operator@itsm.dev", "OperatorPass123!", UserRole.OPERATOR, "Operator")


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await _make_user(db_session, "admin@itsm.dev", "AdminPassword123!", UserRole.ADMINISTRATOR, "Admin User")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}


def days_ago(days: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
