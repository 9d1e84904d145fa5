"""
Shared pytest configuration.

Every test gets its own file-backed SQLite database (foreign keys on), a
fake BGG behind httpx.MockTransport and a fake clock, so nothing touches
the network or waits for real time.
"""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from playsync.database import Base, enable_sqlite_foreign_keys
from playsync.services.bgg.client import BGGApiClient
from playsync.services.bgg.rate_limiter import RateLimiter
from playsync.services.dedup import DeduplicationResolver, KeyedLock

from bgg_fakes import FakeBGG
from factories import Factory


class FakeClock:
    """Monotonic clock whose sleep() only advances time and records the delay."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        # Ensure models are imported so Base.metadata includes all tables
        from playsync.models import board_game, play, user  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def factory(session):
    return Factory(session)


@pytest.fixture
def reload(session):
    """Fetch a fresh copy of a row, overwriting whatever the test session had cached."""

    async def _reload(model, pk):
        res = await session.execute(select(model).where(model.id == pk).execution_options(populate_existing=True))
        return res.scalar_one_or_none()

    return _reload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_bgg():
    return FakeBGG()


@pytest.fixture
def make_client(clock):
    def _make(handler, min_interval: float = 0.0, **kwargs) -> BGGApiClient:
        limiter = RateLimiter(min_interval=min_interval, wait_timeout=300.0, clock=clock, sleep=clock.sleep)
        return BGGApiClient(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            rate_limiter=limiter,
            sleep=clock.sleep,
            jitter=lambda low, high: 0.0,
            **kwargs,
        )

    return _make


@pytest.fixture
def bgg_client(make_client, fake_bgg):
    return make_client(fake_bgg.handler)


@pytest.fixture
def resolver():
    return DeduplicationResolver(locks=KeyedLock())
