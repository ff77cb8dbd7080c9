"""
Test infrastructure.

Strategy
--------
- SQLite in-memory via aiosqlite, shared through StaticPool so every
  session (post store, job queue) sees the same database.
- Tables are created before and dropped after each test.
- Redis is replaced by ``InMemoryRedis``, a small stand-in that honours
  the handful of commands ``CacheManager`` issues (GET, SET EX, DELETE,
  SCAN, PING) and can be switched "down" to exercise degraded paths.
- The app is built with ``create_app(container=...)`` so the test
  container, not the production one, serves requests.  httpx's
  ASGITransport does not run the lifespan, so the worker pool is never
  started implicitly; tests drive it with ``run_once``.
- StaticPool shares one connection, so concurrent claim races are
  exercised on ``file_session_factory`` (a file-backed database) instead.
"""
import asyncio
import fnmatch
import time
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from posthub.cache import CacheManager
from posthub.config import Settings
from posthub.container import build_container
from posthub.database import Base, make_session_factory
from posthub.main import create_app
from posthub.middleware import install_query_counter

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = make_session_factory(engine_test)

test_settings = Settings(
    APP_ENV="test",
    NOTIFICATION_DELAY=0.0,
    JOB_MAX_ATTEMPTS=3,
    JOB_BACKOFF_BASE=1.0,
    JOB_BACKOFF_MAX=8.0,
    JOB_TIMEOUT=1.0,
    WORKER_CONCURRENCY=2,
    QUEUE_POLL_INTERVAL=0.01,
    JOB_ENQUEUE_TIMEOUT=0.2,
)


class ManualClock:
    """Hand-cranked clock for queue backoff and lease expiry."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSocket:
    """Records frames sent to a client; can fail or stall on demand."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self.delay = delay

    async def send_json(self, data) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    def events(self) -> list[str]:
        return [m["event"] for m in self.sent]


class InMemoryRedis:
    """Just enough of ``redis.asyncio.Redis`` for ``CacheManager``."""

    def __init__(self) -> None:
        self.data: dict[str, tuple[str, float | None]] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("connection refused")

    def _live(self, key: str) -> str | None:
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self.data[key]
            return None
        return value

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self._live(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.data[key] = (value, time.monotonic() + ex if ex else None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    async def scan_iter(self, match: str = "*"):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match) and self._live(key) is not None:
                yield key

    async def aclose(self) -> None:
        pass


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest_asyncio.fixture
async def cache(fake_redis: InMemoryRedis) -> CacheManager:
    manager = CacheManager("redis://test", client=fake_redis)
    await manager.connect()
    return manager


@pytest_asyncio.fixture
async def container(cache: CacheManager):
    built = build_container(test_settings, async_session_test, cache=cache)
    yield built
    await built.gateway.close()


@pytest_asyncio.fixture
async def async_client(container) -> AsyncClient:
    app = create_app(test_settings, container=container)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """
    Session factory on a file-backed SQLite database.

    Unlike the shared in-memory engine, every session here gets its own
    connection, so concurrent claims really race each other.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()
