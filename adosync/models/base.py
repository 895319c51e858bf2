"""Database base configuration"""

import logging
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from adosync.config import settings
from adosync.errors import ConfigurationError

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (what we store and compare against)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_sqlite_foreign_keys(dbapi_conn, _record):
    # Connection deletes rely on ON DELETE CASCADE, which SQLite ignores by default.
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite gets foreign key enforcement turned on."""
    engine = create_async_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


engine = make_engine(settings.database_url)

SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def dialect_insert(db: AsyncSession, model):
    """INSERT construct with ON CONFLICT support for the session's dialect."""
    name = db.get_bind().dialect.name
    if name == "sqlite":
        return sqlite_insert(model)
    if name == "postgresql":
        return pg_insert(model)
    raise ConfigurationError(f"Upserts are not supported on the {name} dialect")


async def get_db():
    """Get database session"""
    async with SessionLocal() as db:
        yield db


_SYNC_MAPPING_UNIQUE_INDEXES = [
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_ado_sync_mappings_external "
    "ON ado_sync_mappings(connection_id, entity_type, external_item_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_ado_sync_mappings_internal "
    "ON ado_sync_mappings(connection_id, entity_type, internal_entity_id)",
]


async def _ensure_sync_mapping_unique_indexes(bind: AsyncEngine):
    """
    Schema hardening for databases created before the table carried its constraints:
    the cross-reference upsert needs a unique index on each side of the pairing.
    """
    for sql in _SYNC_MAPPING_UNIQUE_INDEXES:
        try:
            async with bind.begin() as conn:
                await conn.exec_driver_sql(sql)
        except Exception as e:
            # Existing duplicate rows prevent the index; surface it but keep starting.
            logger.error(f"Failed to create unique index on ado_sync_mappings: {e}")


async def init_db(bind: AsyncEngine | None = None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import adosync.models  # noqa: F401  (import for side-effects)

    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await _ensure_sync_mapping_unique_indexes(bind)
