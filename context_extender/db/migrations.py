"""Forward-only schema migrations.

Each migration creates the tables it owns and records itself in
``schema_versions``. Migrations run in order, each in its own immediate
transaction that re-reads the recorded version first, so two processes opening
a fresh database at the same time apply every step exactly once.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Connection, func, insert, inspect, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from context_extender.core.errors import SchemaMismatchError
from context_extender.core.timeutils import utc_now
from context_extender.db.database import BEGIN_IMMEDIATE, BEGIN_MODE, Base
from context_extender.db.models import SchemaVersionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    tables: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "create_sessions", ("sessions",)),
    Migration(2, "create_events", ("events",)),
    Migration(3, "create_messages", ("messages",)),
    Migration(4, "create_import_history", ("import_history",)),
    Migration(5, "create_compiled_transcripts", ("compiled_transcripts",)),
)

LATEST_VERSION = MIGRATIONS[-1].version


def _create_tables(sync_conn: Connection, names: Sequence[str]) -> None:
    tables = [Base.metadata.tables[name] for name in names]
    Base.metadata.create_all(sync_conn, tables=tables)


async def _recorded_version(conn: AsyncConnection) -> int:
    result = await conn.execute(
        select(func.coalesce(func.max(SchemaVersionRecord.version), 0))
    )
    return int(result.scalar_one())


async def current_version(engine: AsyncEngine) -> int:
    """Highest applied migration, 0 for an empty database."""
    async with engine.connect() as conn:
        exists = await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).has_table(SchemaVersionRecord.__tablename__)
        )
        if not exists:
            return 0
        return await _recorded_version(conn)


async def run_migrations(
    engine: AsyncEngine,
    migrations: Sequence[Migration] = MIGRATIONS,
    now: datetime | None = None,
) -> list[int]:
    """Bring the schema up to date.

    Args:
        engine: Engine created by ``create_engine``.
        migrations: Ordered migrations to apply.
        now: Timestamp recorded for applied steps.

    Returns:
        Versions applied by this call, in order.

    Raises:
        SchemaMismatchError: The database records a version newer than
            the newest migration known to this build.
    """
    latest = migrations[-1].version if migrations else 0
    applied: list[int] = []

    async with engine.connect() as conn:
        conn = await conn.execution_options(**{BEGIN_MODE: BEGIN_IMMEDIATE})

        async with conn.begin():
            await conn.run_sync(_create_tables, (SchemaVersionRecord.__tablename__,))
            found = await _recorded_version(conn)
        if found > latest:
            raise SchemaMismatchError(found, latest)

        for migration in migrations:
            async with conn.begin():
                found = await _recorded_version(conn)
                if found > latest:
                    raise SchemaMismatchError(found, latest)
                if found >= migration.version:
                    continue
                await conn.run_sync(_create_tables, migration.tables)
                await conn.execute(
                    insert(SchemaVersionRecord).values(
                        version=migration.version,
                        name=migration.name,
                        applied_at=now or utc_now(),
                    )
                )
            applied.append(migration.version)
            logger.info(f"Applied migration {migration.version} ({migration.name})")

    return applied
