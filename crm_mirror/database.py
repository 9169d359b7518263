"""Async database engine and session factory for the mirror store."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .models import Base

# Seconds a SQLite connection waits on a locked database: a running sync
# writes pages while status polls read.
SQLITE_BUSY_TIMEOUT = 30


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    connect_args = {"timeout": SQLITE_BUSY_TIMEOUT} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=echo, connect_args=connect_args)


engine = build_engine(settings.database_url, echo=settings.echo_sql)
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create any missing mirror tables. Existing tables are left untouched."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """FastAPI dependency that yields an async session."""
    async with async_session_factory() as session:
        yield session
