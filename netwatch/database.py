"""
Database setup using SQLAlchemy (asyncio extension).

We create:
- an AsyncEngine bound to the DATABASE_URL from config
- a SessionLocal factory for storage sessions
- a Base class to declare ORM models

The probing engine runs on the event loop, so every database call goes
through the async driver (aiosqlite by default) instead of blocking it.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from netwatch.config import settings


def make_engine(url: str) -> AsyncEngine:
    """
    Build an async engine for `url`.

    In-memory SQLite needs a single shared connection, otherwise every
    session would see its own empty database.
    """
    in_memory = url.startswith("sqlite") and (":memory:" in url or url.endswith("://"))
    if in_memory:
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_async_engine(url, echo=False)


def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: the engine keeps using rows after the session closes
    return async_sessionmaker(
        bind=bind,
        autoflush=False,
        expire_on_commit=False,
    )


# Engine: the core connection to the DB (SQLite by default)
engine = make_engine(settings.database_url)

# Session factory: each storage call gets its own session
SessionLocal = make_sessionmaker(engine)

# Base class for all ORM models
Base = declarative_base()


async def create_all(bind: AsyncEngine = engine) -> None:
    """Create tables if they do not exist yet (no-op otherwise)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
