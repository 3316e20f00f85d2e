"""
Test configuration and fixtures.
Uses a throwaway SQLite file per test and fakeredis for Redis. Mocks all external services.
"""
import uuid
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from leadrelay.config import Settings, build_queue_configs
from leadrelay.database import Base
from leadrelay.services.job_queue import JobQueue
from leadrelay.services.job_repository import SqlAlchemyJobRepository

import leadrelay.models  # noqa: F401 - registers tables on Base.metadata


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class ManualClock:
    """Datetime clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ManualTimer:
    """Epoch-seconds clock for Redis-side components (rate limiter, caches)."""

    def __init__(self, start: float = 1_772_452_800.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite file database; each session gets its own connection like a real pool."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    """Isolated fakeredis server per test."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def timer():
    return ManualTimer()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_env="test",
        credential_encryption_key="test-credential-secret",
        retry_jitter=0.0,
        whatsapp_phone_number_id="1234567890",
    )


@pytest.fixture
def queue_configs(settings):
    return build_queue_configs(settings)


@pytest.fixture
def job_queue(session_factory, queue_configs, clock, redis):
    return JobQueue(SqlAlchemyJobRepository(session_factory), queue_configs, redis=redis, clock=clock)


@pytest.fixture
def sample_user_id():
    return str(uuid.UUID("11111111-1111-1111-1111-111111111111"))


@pytest.fixture
def container(settings, redis, session_factory):
    from leadrelay.services.container import ServiceContainer

    return ServiceContainer.build(settings, redis, session_factory, senders={})


@pytest.fixture
async def client(container, settings):
    """HTTP client against the app with a test container; lifespan is not run."""
    from unittest.mock import patch

    from httpx import ASGITransport, AsyncClient

    with patch("leadrelay.main.configure_structured_logging"), \
            patch("leadrelay.main.get_settings", return_value=settings):
        from leadrelay.main import create_app
        app = create_app()
    app.state.container = container

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
