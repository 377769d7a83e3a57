from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from app.core.config import settings

from typing import AsyncIterator
import logging


Base = declarative_base()


connection_string = str(settings.postgres.connection_string)

# Test runs hop between event loops; pooled async connections must not outlive one
_engine_kwargs = {"poolclass": NullPool} if settings.app.is_testing else {"pool_pre_ping": True}

engine = create_async_engine(
    connection_string,
    echo=False,
    **_engine_kwargs,
)

async_session_maker = async_sessionmaker(
    engine,
    expire_on_commit=False,
)


logger = logging.getLogger(__name__)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Session rolled back due to error: {e}")
            raise


async def create_all() -> None:
    """Create every table known to ``Base`` (local runs and tests)."""
    import app.core.db.schemas  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all() -> None:
    import app.core.db.schemas  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
