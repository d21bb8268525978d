"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import eventrelay.models  # noqa: F401  registers all tables on Base.metadata
from eventrelay.config import get_settings
from eventrelay.database import Base
from eventrelay.utils import rate_limiter
from eventrelay.services import enrichment


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Isolate each test from .env and from settings cached by a previous test."""
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("ENRICHMENT_URL", "")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    monkeypatch.setenv("INTERNAL_API_KEY", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _fresh_rate_limits(monkeypatch):
    """Rate-limit and enrichment singletons are process-wide; reset them per test."""
    monkeypatch.setattr(rate_limiter, "_memory_limiter", rate_limiter.RateLimiter())
    monkeypatch.setattr(rate_limiter, "_reputation_tracker", rate_limiter.IpReputationTracker())
    monkeypatch.setattr(rate_limiter, "_redis_limiter", None)
    monkeypatch.setattr(enrichment, "_dispatcher", None)


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("eventrelay.utils.redis_client.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.pipeline = MagicMock()
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def fake_dispatcher():
    """Enrichment dispatcher stand-in that records jobs instead of running them."""
    dispatcher = MagicMock()
    dispatcher.dispatch = MagicMock()
    return dispatcher


@pytest.fixture
def app(session_factory):
    """Application wired to the in-memory database. Lifespan (workers) is not run."""
    from eventrelay.database import get_db
    from eventrelay.main import create_app

    with patch("eventrelay.main.configure_structured_logging"):
        application = create_app()

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _override_get_db
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def internal_headers(monkeypatch):
    """Headers for internal/management routes, with INTERNAL_API_KEY configured."""
    monkeypatch.setenv("INTERNAL_API_KEY", "internal-test-key")
    get_settings.cache_clear()
    return {"X-Internal-Key": "internal-test-key", "X-Tenant-ID": "t1"}
