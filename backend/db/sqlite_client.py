"""
SQLite Client for the scoped memory graph and connector permissions.

This module owns the storage layer:
- Entities, observations and relations, partitioned by (user_id, project_id)
- Cached prose summaries, one per scope
- Per-connector permission levels and per-user settings (vacation mode)

Case-insensitive uniqueness is enforced by expression indexes so that
find-or-create can be an atomic insert-or-ignore instead of read-then-write.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    event,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship

from config import load_config
from .migration_runner import apply_pending_migrations

logger = logging.getLogger(__name__)

Base = declarative_base()


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Naive UTC datetime; all DateTime columns store naive UTC."""
    return utc_now().replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class MemoryEntity(Base):
    """A named node (person, organization, concept, ...) in one scope.

    ``entity_type`` is a free-form label and is never validated against a
    fixed set.
    """

    __tablename__ = "memory_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    project_id = Column(String(128), nullable=True)
    name = Column(Text, nullable=False)
    entity_type = Column(String(128), nullable=False, default="concept")
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)

    observations = relationship(
        "MemoryObservation",
        back_populates="entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MemoryObservation(Base):
    """An atomic fact owned by one entity."""

    __tablename__ = "memory_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(
        Integer,
        ForeignKey("memory_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    observation = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    # True when the user explicitly asked for this fact to be remembered.
    is_user_edit = Column(
        Boolean, nullable=False, default=False, server_default=text("0")
    )

    entity = relationship("MemoryEntity", back_populates="observations")


class MemoryRelation(Base):
    """A typed, directed edge between two entities of the same scope."""

    __tablename__ = "memory_relations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    project_id = Column(String(128), nullable=True)
    from_entity_id = Column(
        Integer, ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False
    )
    to_entity_id = Column(
        Integer, ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False
    )
    relation_type = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)


class MemorySummary(Base):
    """Cached prose digest of a scope's graph.

    The counts are the graph size at generation time; staleness is derived
    by comparing them with live counts.
    """

    __tablename__ = "memory_summaries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    project_id = Column(String(128), nullable=True)
    summary = Column(Text, nullable=False)
    generated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    entity_count = Column(Integer, nullable=False, default=0)
    observation_count = Column(Integer, nullable=False, default=0)


class ConnectorPermission(Base):
    """Stored permission level of one user for one connector."""

    __tablename__ = "connector_permissions"

    user_id = Column(String(128), primary_key=True)
    connector = Column(String(64), primary_key=True)
    permission_level = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)


class UserSettings(Base):
    """Per-user safety settings.

    ``permission_level`` is the legacy global level used when a connector has
    no record of its own. ``vacation_mode_until`` forces read-only while it
    lies in the future.
    """

    __tablename__ = "user_settings"

    user_id = Column(String(128), primary_key=True)
    permission_level = Column(Integer, nullable=True)
    vacation_mode_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)


class SchemaMigration(Base):
    """Applied schema migration records."""

    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(DateTime, default=utc_now_naive, nullable=False)
    checksum = Column(String(128), nullable=False)


# Expression indexes that SQLAlchemy metadata cannot express portably.
# COALESCE folds the general scope (NULL project) into one bucket so that
# uniqueness also holds there.
_SCOPE_INDEX_STATEMENTS = (
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_memory_entities_scope_name "
    "ON memory_entities(user_id, COALESCE(project_id, ''), LOWER(name))",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_memory_observations_entity_text "
    "ON memory_observations(entity_id, LOWER(observation))",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_memory_relations_scope_edge "
    "ON memory_relations(user_id, COALESCE(project_id, ''), "
    "from_entity_id, to_entity_id, LOWER(relation_type))",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_memory_summaries_scope "
    "ON memory_summaries(user_id, COALESCE(project_id, ''))",
    "CREATE INDEX IF NOT EXISTS idx_memory_entities_scope "
    "ON memory_entities(user_id, project_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_relations_scope "
    "ON memory_relations(user_id, project_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_relations_from "
    "ON memory_relations(from_entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_relations_to "
    "ON memory_relations(to_entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_observations_user_edit "
    "ON memory_observations(is_user_edit)",
)


def _enable_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client shared by every scope.

    The client is scope-agnostic; scoped behaviour lives in the graph
    manager, summary cache, user-edit ledger and permission store, which all
    borrow sessions from here.
    """

    def __init__(self, database_url: str, busy_timeout_sec: float = 30.0):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_graph.db"
            busy_timeout_sec: How long a connection waits on a locked database.
        """
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"timeout": busy_timeout_sec},
        )
        event.listen(self.engine.sync_engine, "connect", _enable_sqlite_pragmas)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self) -> None:
        """Create tables, apply pending SQL migrations, then build scope indexes."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        applied = await apply_pending_migrations(self.database_url)
        if applied:
            logger.info("Applied schema migrations: %s", ", ".join(applied))
        async with self.engine.begin() as conn:
            await conn.run_sync(self._setup_scope_indexes)
        logger.info("Memory database ready at %s", self.database_url)

    @staticmethod
    def _setup_scope_indexes(connection) -> None:
        for statement in _SCOPE_INDEX_STATEMENTS:
            connection.execute(text(statement))

    async def ping(self) -> bool:
        """Round-trip a trivial query; storage errors propagate."""
        async with self.session() as session:
            result = await session.execute(select(1))
            return result.scalar_one() == 1

    async def close(self):
        """Dispose of the engine and its pooled connections."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager (one unit of work)."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        config = load_config()
        if not config.database.url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _sqlite_client = SQLiteClient(
            config.database.url, busy_timeout_sec=config.database.busy_timeout_sec
        )
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
