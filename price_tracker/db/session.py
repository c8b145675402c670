"""Async engine and session factory."""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from price_tracker.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)
