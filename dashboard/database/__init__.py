from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from dashboard.config import settings
from typing import AsyncGenerator
from contextlib import asynccontextmanager


def _connect_args() -> dict:
    """
    asyncpg connection arguments: finite connect wait, per-statement timeout, optional TLS.
    """
    args = {
        "timeout": settings.db_pool_timeout,
        "server_settings": {
            "statement_timeout": str(settings.db_statement_timeout_ms),
            "application_name": "affine-dashboard",
        },
    }
    if settings.db_ssl:
        args["ssl"] = "require"
    return args


# Read-only engine, nothing here writes to the results table.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_overflow,
    pool_pre_ping=True,
    pool_reset_on_return="rollback",
    pool_timeout=settings.db_pool_timeout,
    pool_recycle=900,
    pool_use_lifo=True,
    connect_args=_connect_args(),
)

SessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


async def get_db_session():
    async with SessionLocal() as session:
        yield session


def pool_status() -> dict:
    """
    Snapshot of the connection pool for health checks.
    """
    pool = engine.pool
    return {
        "size": pool.size(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
        "checked_in": pool.checkedin(),
    }
