from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .models import Base
from .settings import DATABASE_URL

db_engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables() -> None:
    """Create the runs/leases tables when they are missing."""
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
