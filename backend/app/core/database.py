from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    pass


def new_session_factory(database_url: str | None = None):
    """Build an engine plus session factory.

    Celery tasks call this per run because every task drives its own event loop.
    """
    db_engine = create_async_engine(database_url or settings.database_url, pool_pre_ping=True)
    return db_engine, async_sessionmaker(db_engine, expire_on_commit=False)


engine, async_session_factory = new_session_factory()


async def init_models(db_engine=None) -> None:
    # Import models so every table is registered on Base.metadata
    import app.models  # noqa: F401

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with async_session_factory() as session:
        yield session
