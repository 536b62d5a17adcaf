"""Database module for the remote progress ledger.

Async engine and session factory, plus a transaction helper that returns a
Result instead of raising.
"""
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from core.config import settings
from core.errors import AppError, Err, Ok, Result, StorageErrorMapper

T = TypeVar("T")

SessionFactory = async_sessionmaker[AsyncSession]


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    engine_kwargs = {"echo": echo}
    if "sqlite" not in database_url:
        engine_kwargs.update({
            "pool_pre_ping": True,
            "pool_size": 5,
            "max_overflow": 10,
        })
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.LOG_SQL)
AsyncSessionLocal = build_session_factory(engine)

Base = declarative_base()

_db_mapper = StorageErrorMapper("database", origin="database")


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create the ledger tables if they do not exist yet."""
    # Imported for its side effect of registering tables on Base.metadata
    import models.progress  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def execute_transaction(
    session_factory: SessionFactory,
    operation: Callable[[AsyncSession], Awaitable[T]],
) -> Result[T, AppError]:
    """Run ``operation`` inside one transaction.

    Everything the operation writes is committed together or rolled back
    together; driver errors come back as ``Err``.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                value = await operation(session)
            return Ok(value)
    except Exception as e:
        return Err(_db_mapper.map_exception(e))
