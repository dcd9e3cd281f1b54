"""Database connection, session management and schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storage_server.clock import now_ms
from storage_server.config import settings
from storage_server.models import Base, MigrationRecord

logger = logging.getLogger(__name__)

# Ordered (migration_id, statements). Each runs at most once per database.
# Tables themselves come from the ORM metadata; these only fix up old rows.
MIGRATIONS: list[tuple[str, list[str]]] = [
    (
        "2025-01-16-compression-algorithm",
        [
            "UPDATE blob_records SET compression_algorithm = 'NONE' "
            "WHERE compression_algorithm IS NULL",
        ],
    ),
    (
        "2025-02-01-created-at",
        [
            "UPDATE blob_records SET created_at = 0 WHERE created_at IS NULL",
        ],
    ),
]


def create_engine(database_url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Build an async engine, defaulting to the configured database."""
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.database_echo if echo is None else echo,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_engine()

async_session_factory = create_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> int:
    """Create tables and apply pending migrations.

    Returns the number of migrations applied by this call.
    """
    bind = bind or engine
    if bind.dialect.name == "sqlite" and bind.url.database not in (None, "", ":memory:"):
        Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)

    async with bind.begin() as conn:
        if bind.dialect.name == "sqlite":
            await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.run_sync(Base.metadata.create_all)

    applied = 0
    async with create_session_factory(bind)() as session:
        result = await session.execute(select(MigrationRecord.migration_id))
        done = set(result.scalars().all())

        for migration_id, statements in MIGRATIONS:
            if migration_id in done:
                continue
            for statement in statements:
                await session.execute(text(statement))
            session.add(MigrationRecord(migration_id=migration_id, applied_at=now_ms()))
            await session.commit()
            applied += 1

    if applied:
        logger.info("Applied %d schema migration(s)", applied)
    return applied
