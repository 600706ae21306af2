"""
CardGuard — Database Layer
Async SQLAlchemy (aiosqlite by default, asyncpg for PostgreSQL).
All ORM models import Base from here.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from cardguard.config import settings

Base = declarative_base()


# ---------------------------------------------------------------------------
# Engine & Session
# ---------------------------------------------------------------------------
def build_engine(url: str = None) -> AsyncEngine:
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        # SQLite has no server-side pool to size
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=False,
    )


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ---------------------------------------------------------------------------
# Startup helper
# ---------------------------------------------------------------------------
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that are registered on Base.  Idempotent."""
    from cardguard.models import models  # noqa: F401  registers tables

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
