"""pytest fixtures for genqueue tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- db_url: SQLite file database by default, PostgreSQL testcontainer when
  GENQUEUE_TEST_POSTGRES=1
- session_factory: Function-scoped session factory over freshly created tables
- uow_factory: Function-scoped UnitOfWork factory
- settings: Test settings
"""

import os

# Must be set before genqueue.app is imported (it builds Settings at import time)
os.environ["APP_ENV"] = "test"
os.environ["TZ"] = "UTC"

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from genqueue import models  # noqa: E402, F401
from genqueue.core.config import Settings  # noqa: E402
from genqueue.core.database import setup_db_session  # noqa: E402
from genqueue.uow import create_uow_factory  # noqa: E402

USE_POSTGRES = os.environ.get("GENQUEUE_TEST_POSTGRES") == "1"
ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container (only when GENQUEUE_TEST_POSTGRES=1)."""
    if not USE_POSTGRES:
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_genqueue",
    ) as container:
        yield container


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def db_url(postgres_container, tmp_path) -> str:
    """Database URL for one test.

    SQLite uses a file (not :memory:) so concurrent sessions share one database.
    """
    if postgres_container is not None:
        return postgres_container.get_connection_url(driver="psycopg")
    return f"sqlite+aiosqlite:///{tmp_path / 'genqueue_test.db'}"


@pytest.fixture
def settings(db_url) -> Settings:
    return Settings(
        APP_ENV="test",
        DATABASE_URL=db_url,
        ADMIN_API_TOKEN=ADMIN_TOKEN,
        REPLICATE_API_TOKEN="",
        STALE_AFTER_MINUTES=30,
        AVERAGE_JOB_SECONDS=30,
        PROVIDER_TIMEOUT_SECONDS=600,
        VIDEO_DEFAULT_MAX_CONCURRENT=3,
        IMAGE_DEFAULT_MAX_CONCURRENT=999,
        UNKNOWN_MODEL_MAX_CONCURRENT=1,
        DISPATCHER_ENABLED=False,
    )  # type: ignore[call-arg]


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_url) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over empty tables, dropped again after the test."""
    factory = setup_db_session(db_url, pool_size=20)
    engine = factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for repository-level tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture
async def grant(uow_factory):
    """Credit tickets to a user: await grant(user_id, amount)."""

    async def _grant(user_id: int, amount: int):
        async with await uow_factory() as uow:
            return await uow.ticket_accounts.grant(user_id, amount)

    return _grant


@pytest_asyncio.fixture
async def set_limit(uow_factory, settings):
    """Configure a model's maximum: await set_limit(model_id, max_concurrent)."""
    from genqueue.services.concurrency_limiter import ConcurrencyLimiter

    async def _set(model_id: str, max_concurrent: int):
        async with await uow_factory() as uow:
            return await ConcurrencyLimiter(uow, settings).set_limit(model_id, max_concurrent)

    return _set


@pytest_asyncio.fixture
async def account(uow_factory):
    """Read a user's ticket account fresh from the database."""

    async def _account(user_id: int):
        async with await uow_factory() as uow:
            return await uow.ticket_accounts.get_by_user(user_id)

    return _account


@pytest_asyncio.fixture
async def limit_row(uow_factory):
    """Read a model's concurrency limit row fresh from the database."""

    async def _limit(model_id: str):
        async with await uow_factory() as uow:
            return await uow.concurrency_limits.get(model_id)

    return _limit


@pytest_asyncio.fixture
async def queue_item(uow_factory):
    """Read a queue item fresh from the database."""

    async def _item(item_id: int):
        async with await uow_factory() as uow:
            return await uow.queue_items.get_by_id(item_id)

    return _item
