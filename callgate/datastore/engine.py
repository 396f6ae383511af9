"""
Database engine lifecycle for the SQL structured tier.

init_db() must run before get_session_factory(); close_db() disposes of the
engine at teardown.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from callgate.datastore.models import Base

engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(
    database_url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an engine and a session factory bound to it."""
    db_engine = create_async_engine(database_url, echo=echo)
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    return db_engine, factory


async def create_tables(db_engine: AsyncEngine) -> None:
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(database_url: str, echo: bool = False) -> None:
    """Open the process-wide engine and make sure the schema exists."""
    global engine, AsyncSessionLocal
    if engine is not None:
        raise RuntimeError("Database already initialized. Call close_db() first.")

    engine, AsyncSessionLocal = build_session_factory(database_url, echo)
    await create_tables(engine)


async def close_db() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for the structured tier, which opens one session per operation."""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
