"""Pytest configuration and shared fixtures: in-memory SQLite, simulated clock, auth services."""

import os
from collections.abc import Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test DB and secrets before app imports so config/engine use them
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef-0123456789")
os.environ.setdefault("APP_ENV", "test")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.responses import Response

import campus_auth.models  # noqa: F401 - so all models are registered
from campus_auth.config import CookieSecuritySettings, settings
from campus_auth.core.auth import hash_password
from campus_auth.core.cache import MemoryCache
from campus_auth.core.fingerprint import ClientContext, FingerprintGenerator
from campus_auth.core.rate_limit import RateLimiter
from campus_auth.db.base import Base
from campus_auth.db.session import build_engine, get_db
from campus_auth.models.user import User
from campus_auth.services.cookie_manager import CookieManager
from campus_auth.services.crypto import CookieCipher
from campus_auth.services.monitoring import EventTracker
from campus_auth.services.token_store import AuthTokenStore

SECRET = settings.secret_key
ENCRYPTION_KEY = bytes(range(32))
T0 = 1_767_225_600  # 2026-01-01 00:00:00 UTC
COOKIE_NAME = "campus_auth"


class FakeClock:
    """Injectable clock; tests move time forward with advance()."""

    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def cookie_from(response: Response, name: str = COOKIE_NAME) -> str | None:
    """Value of the last Set-Cookie for name ('' when the cookie is being deleted)."""
    value = None
    for header in response.headers.getlist("set-cookie"):
        if header.startswith(f"{name}="):
            value = header.split(";", 1)[0][len(name) + 1:].strip('"')
    return value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def session_maker():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def test_user(session_maker) -> User:
    """Create a user via DB (committed)."""
    async with session_maker() as session:
        user = User(email="test@test.com", password_hash=hash_password("password123"))
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest.fixture
def cache(clock) -> MemoryCache:
    return MemoryCache(clock=clock)


@pytest.fixture
def rate_limiter(cache, clock) -> RateLimiter:
    return RateLimiter(cache, max_attempts=5, window_seconds=300, clock=clock)


@pytest.fixture
def token_store(session_maker) -> AuthTokenStore:
    return AuthTokenStore(session_maker)


@pytest.fixture
def make_manager(token_store, cache, rate_limiter, clock) -> Callable[..., CookieManager]:
    """Build a CookieManager; keyword overrides go to CookieSecuritySettings."""

    def _make(**overrides) -> CookieManager:
        return CookieManager(
            store=token_store,
            cache=cache,
            cipher=CookieCipher(ENCRYPTION_KEY),
            fingerprints=FingerprintGenerator(SECRET),
            rate_limiter=rate_limiter,
            tracker=EventTracker(),
            config=CookieSecuritySettings(**overrides),
            secret_key=SECRET,
            clock=clock,
        )

    return _make


@pytest.fixture
def manager(make_manager) -> CookieManager:
    return make_manager()


@pytest.fixture
def ctx() -> ClientContext:
    return ClientContext(
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
        accept_language="en-US,en;q=0.5",
        ip="203.0.113.7",
        is_https=True,
    )


@pytest_asyncio.fixture
async def client(session_maker, cache, clock):
    """AsyncClient against the app wired to the test DB, memory cache and simulated clock."""
    from campus_auth.main import app, configure_services

    configure_services(app, session_maker, cache, clock=clock)

    async def _get_test_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="https://test") as ac:
        yield ac
    app.dependency_overrides.clear()
