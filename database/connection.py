"""Database connection configuration."""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False, pool_pre_ping=True)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_session_factory(url: str, **engine_kwargs):
    """Build a session factory bound to its own engine (used for alternate stores and tests)."""
    other_engine = create_async_engine(url, echo=False, **engine_kwargs)
    return sessionmaker(other_engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind=None):
    """Create all tables on the given engine (defaults to the application engine)."""
    from .models import Base
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connection."""
    await engine.dispose()
