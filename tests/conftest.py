"""
Test infrastructure for the Posts API.

Strategy
--------
- SQLite in-memory via aiosqlite eliminates the need for a running Postgres
  instance in CI, keeping the suite fast and self-contained.
- StaticPool forces all async tasks to share the same in-memory database
  connection, which is required because SQLite in-memory databases are
  connection-scoped; a new connection would see an empty database.
- The app's get_db dependency is overridden so every test-time request uses
  the test session factory rather than the production one.
- All tables are created fresh before each test and dropped after.
- Redis is disabled by default (``cache._redis = None``); the CacheManager
  treats that as a permanent miss.  Tests that exercise cache-aside
  behaviour request the ``fake_redis`` fixture, which installs an
  ``AsyncMock`` specced on ``redis.asyncio.Redis`` with dict-backed side
  effects for the calls CacheManager makes.
"""
import fnmatch
from unittest.mock import AsyncMock

import pytest_asyncio
import redis.asyncio
import redis.exceptions
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.cache import cache
from app.middleware import install_query_counter

# ---------------------------------------------------------------------------
# Test database engine — SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Dependency override — replace production get_db with the test session factory
# ---------------------------------------------------------------------------

async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


# ---------------------------------------------------------------------------
# In-memory Redis double
# ---------------------------------------------------------------------------

def make_redis_double() -> AsyncMock:
    """
    ``AsyncMock`` specced on ``redis.asyncio.Redis`` whose get / set /
    delete / scan_iter calls are backed by a dict.

    Extra attributes for assertions: ``store``, ``ttls`` (``ex`` per key),
    ``deleted`` (every key passed to DELETE) and ``fail`` (when True every
    call raises ``redis.exceptions.ConnectionError``).
    """
    client = AsyncMock(spec=redis.asyncio.Redis)
    client.store = {}
    client.ttls = {}
    client.deleted = []
    client.fail = False

    def check() -> None:
        if client.fail:
            raise redis.exceptions.ConnectionError("redis is down")

    async def ping():
        check()
        return True

    async def get(key):
        check()
        return client.store.get(key)

    async def set_(key, value, ex=None):
        check()
        client.store[key] = value
        client.ttls[key] = ex
        return True

    async def delete(*keys):
        check()
        client.deleted.extend(keys)
        removed = 0
        for key in keys:
            if client.store.pop(key, None) is not None:
                removed += 1
            client.ttls.pop(key, None)
        return removed

    async def scan_iter(match="*", **kwargs):
        check()
        for key in list(client.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    client.ping.side_effect = ping
    client.get.side_effect = get
    client.set.side_effect = set_
    client.delete.side_effect = delete
    client.scan_iter.side_effect = scan_iter
    return client


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    cache._redis = None
    cache.reset_stats()
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    cache._redis = None


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """
    Yield a live AsyncSession for tests that call the service layer
    directly (e.g. seeding data, asserting ORM state).
    """
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis() -> AsyncMock:
    """Install a Redis double on the cache singleton for the duration of a test."""
    fake = make_redis_double()
    cache._redis = fake
    yield fake
    cache._redis = None


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    """
    Yield an httpx.AsyncClient wired to the FastAPI app via ASGITransport.

    The lifespan is not run, so Redis stays whatever the test configured
    (disabled unless ``fake_redis`` was requested).
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
