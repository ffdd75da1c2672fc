import asyncio
import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from hologen.config import get_settings
from hologen.models.base import Base

logger = logging.getLogger(__name__)


def create_engine_for(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool limits only apply to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, future=True)
    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_size=5,
        max_overflow=0,  # Queue instead of exceeding the connection limit
        pool_pre_ping=True,
        pool_recycle=300,
        pool_timeout=30,
    )


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return create_engine_for(settings.database_url, echo=settings.database_echo)


@lru_cache
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize database with retry logic for connection failures."""
    max_retries = 5
    retry_delay = 2  # seconds

    for attempt in range(max_retries):
        try:
            await create_tables(get_engine())
            return
        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(
                    f"DB connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                    f"Retrying in {retry_delay} seconds..."
                )
                await asyncio.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts")
                raise

