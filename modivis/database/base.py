"""Export log storage: async engine, session factory and table setup."""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from modivis.config import get_settings


logger = logging.getLogger(__name__)

settings = get_settings()

# SQLite through aiosqlite unless DATABASE_URL says otherwise
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.MODIVIS_DEBUG,
    future=True,
)

AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base()


async def create_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Create the export log tables on ``bind`` (the app engine by default)."""
    # Registers ExportRecord on Base.metadata
    import modivis.models  # noqa: F401

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Export tables ready on {target.url.render_as_string(hide_password=True)}")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one database session per request."""
    async with AsyncSessionLocal() as session:
        yield session
