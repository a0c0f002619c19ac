import functools

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from basecore.settings import get_settings


@functools.lru_cache()
def get_engine():
    """
    Get SQLAlchemy async engine (cached).

    This function lazily initializes the engine to avoid import-time side effects.
    The engine is created using DATABASE_URL from settings.
    """
    settings = get_settings()
    return create_async_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=False)


@functools.lru_cache()
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Get SQLAlchemy async sessionmaker (cached).

    Sessions keep loaded attributes after commit so handlers can log and
    return them without another round trip.
    """
    engine = get_engine()
    return async_sessionmaker(engine, autoflush=False, expire_on_commit=False)


async def get_db():
    """
    Dependency generator for FastAPI to get database session.

    Yields a database session and ensures it's closed after use.
    """
    SessionLocal = get_sessionmaker()
    async with SessionLocal() as db:
        yield db


def insert_ignore(session: AsyncSession, table):
    """
    Build an INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    Callers add `.values(...)` and `.on_conflict_do_nothing(...)`. Used
    wherever concurrent writers may race to create the same row.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"insert_ignore is not supported for dialect {dialect!r}")
