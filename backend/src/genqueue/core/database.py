"""Database session factory setup."""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def setup_db_session(db_url: str, pool_size: int = 200) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database URL (postgresql+psycopg://... in production,
            sqlite+aiosqlite:///... for local runs and tests)
        pool_size: Maximum number of connections in the pool (default: 200)

    Returns:
        Async session factory for creating database sessions
    """
    engine_kwargs: dict = {
        "pool_pre_ping": True,  # Verify connections before using
        "echo": False,  # Don't log SQL queries (use structlog instead)
    }
    if not db_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = pool_size
        engine_kwargs["max_overflow"] = 0  # No overflow beyond pool_size

    engine = create_async_engine(db_url, **engine_kwargs)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory


def dialect_insert(session: AsyncSession, entity):
    """Build an INSERT that supports ON CONFLICT clauses for the session's backend.

    PostgreSQL is the production database; SQLite backs local runs and tests.
    Both dialects expose on_conflict_do_nothing() / on_conflict_do_update().
    """
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(entity)
    return pg_insert(entity)
