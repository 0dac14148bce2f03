"""
tests/conftest.py
Shared fixtures: a fresh SQLite database per test, an in-memory Redis
stand-in, an ASGI test client, and one user per role.
"""

import os
import tempfile
from datetime import date, timedelta
from decimal import Decimal

# Settings are read at import time, so the environment comes first
_TMP = tempfile.mkdtemp(prefix="marketplace_test_")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/test.db"
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-client-secret")
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["RESEND_API_KEY"] = ""
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, build_sessionmaker, get_db
from config.redis_client import get_redis
from config.settings import settings
from main import app
from shared.models.models import (
    Category,
    ProviderProfile,
    Service,
    ServiceStatus,
    User,
    UserRole,
    Wallet,
)
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "password123"


# ── Redis ─────────────────────────────────────────────────────

class FakeRedis:
    """In-memory subset of the redis.asyncio API used by the app."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.store)

    async def incr(self, key):
        self.store[key] = str(int(self.store.get(key, 0)) + 1)
        return int(self.store[key])

    async def expire(self, key, seconds):
        return key in self.store

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def ping(self):
        return True


# ── Database ──────────────────────────────────────────────────

@pytest.fixture
async def engine():
    test_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
async def client(session_factory, redis):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user_id=str(user.id), role=user.role.value, email=user.email)
    return {"Authorization": f"Bearer {token}"}


def future_date(days: int = 3) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


# ── Users ─────────────────────────────────────────────────────

@pytest.fixture
async def client_user(db) -> User:
    user = User(
        name="Asha Client",
        email="client@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=UserRole.CLIENT,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def other_client(db) -> User:
    user = User(
        name="Ravi Other",
        email="other@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=UserRole.CLIENT,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def provider_user(db) -> User:
    user = User(
        name="Priya Provider",
        email="provider@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=UserRole.PROVIDER,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def provider_profile(db, provider_user) -> ProviderProfile:
    profile = ProviderProfile(
        user_id=provider_user.id,
        bio="Ten years of experience",
        specialty="Deep cleaning",
        address="12 Market Road",
    )
    db.add(profile)
    db.add(Wallet(
        user_id=provider_user.id,
        balance=Decimal("0.00"),
        pending_balance=Decimal("0.00"),
        total_earned=Decimal("0.00"),
        total_withdrawn=Decimal("0.00"),
    ))
    await db.commit()
    return profile


async def make_provider(db, email: str, name: str = "Second Provider"):
    """A provider user with a profile and an empty wallet."""
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(TEST_PASSWORD),
        role=UserRole.PROVIDER,
    )
    db.add(user)
    await db.flush()
    profile = ProviderProfile(user_id=user.id)
    db.add(profile)
    db.add(Wallet(user_id=user.id))
    await db.commit()
    return user, profile


@pytest.fixture
async def admin_user(db) -> User:
    user = User(
        name="Admin",
        email="admin@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=UserRole.ADMIN,
    )
    db.add(user)
    await db.commit()
    return user


# ── Catalogue ─────────────────────────────────────────────────

@pytest.fixture
async def category(db) -> Category:
    cat = Category(name="Home Cleaning", description="Cleaning services")
    db.add(cat)
    await db.commit()
    return cat


@pytest.fixture
async def service(db, provider_profile, category) -> Service:
    svc = Service(
        provider_id=provider_profile.id,
        category_id=category.id,
        title="Deep Clean",
        description="Full apartment deep clean",
        price=Decimal("100.00"),
        duration=120,
        status=ServiceStatus.ACTIVE,
    )
    db.add(svc)
    await db.commit()
    return svc
