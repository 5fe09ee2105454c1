"""Async engine, session factory and schema checks."""

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from chatsync.core.config import settings
from chatsync.core.exceptions import ConfigurationError


class Base(DeclarativeBase):
    pass


# Composite indexes the live queries depend on, keyed by table.
REQUIRED_INDEXES = {
    "turns": {"ix_turns_conversation_created"},
    "conversations": {"ix_conversations_owner_updated"},
}

engine = create_async_engine(settings.database_url, echo=settings.debug)
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables and indexes that do not exist yet."""
    # Register the mapped classes on Base.metadata
    import chatsync.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _missing_indexes(sync_conn) -> list[str]:
    inspector = inspect(sync_conn)
    missing = []
    for table, names in REQUIRED_INDEXES.items():
        if not inspector.has_table(table):
            missing.extend(sorted(names))
            continue
        present = {ix["name"] for ix in inspector.get_indexes(table)}
        missing.extend(sorted(names - present))
    return missing


async def verify_indexes(bind: AsyncEngine | None = None) -> None:
    """Raise ConfigurationError if a composite index the queries need is absent."""
    async with (bind or engine).connect() as conn:
        missing = await conn.run_sync(_missing_indexes)
    if missing:
        raise ConfigurationError(
            "Missing required index(es): " + ", ".join(missing)
            + ". Run init_db() or create them in the database."
        )
