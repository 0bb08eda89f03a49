"""Database engine, session factory and transaction scope.

Services receive an ``async_sessionmaker`` and open one short
transaction per state change through :func:`transaction`; reads use a
plain session.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from cardvault.infrastructure.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# Objects stay readable after commit; services return them to the API layer
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session and run the block inside a single transaction.

    The transaction commits when the block exits normally and rolls back
    when it raises.

    Args:
        session_factory: Factory producing sessions.

    Yields:
        AsyncSession bound to the open transaction.
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
