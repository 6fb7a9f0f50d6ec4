"""Tests for schema migrations and connection setup."""

from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import insert, select

from context_extender.core.errors import SchemaMismatchError
from context_extender.db.migrations import (
    LATEST_VERSION,
    MIGRATIONS,
    current_version,
    run_migrations,
)
from context_extender.db.models import SchemaVersionRecord
from context_extender.db.store import Store


class TestMigrations:
    """Tests for the numbered migration runner."""

    @pytest.mark.asyncio
    async def test_fresh_store_is_fully_migrated(self, store: Store) -> None:
        assert await current_version(store.engine) == LATEST_VERSION
        async with store.engine.connect() as conn:
            rows = (await conn.execute(select(SchemaVersionRecord.version))).scalars().all()
        assert sorted(rows) == [m.version for m in MIGRATIONS]

    @pytest.mark.asyncio
    async def test_rerun_applies_nothing(self, store: Store) -> None:
        assert await run_migrations(store.engine) == []

    @pytest.mark.asyncio
    async def test_reopen_keeps_data(self, db_path: Path) -> None:
        first = await Store.open(db_path)
        from context_extender.models.sessions import Session

        now = datetime(2024, 1, 1, tzinfo=UTC)
        await first.create_session(Session(id="keep", created_at=now, updated_at=now))
        await first.close()

        second = await Store.open(db_path)
        try:
            assert (await second.get_session("keep")).id == "keep"
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_newer_schema_rejected(self, db_path: Path) -> None:
        store = await Store.open(db_path)
        async with store.engine.begin() as conn:
            await conn.execute(
                insert(SchemaVersionRecord).values(
                    version=LATEST_VERSION + 1, name="future", applied_at=datetime.now(UTC)
                )
            )
        await store.close()

        with pytest.raises(SchemaMismatchError) as exc_info:
            await Store.open(db_path)
        assert exc_info.value.found == LATEST_VERSION + 1
        assert exc_info.value.supported == LATEST_VERSION

    @pytest.mark.asyncio
    async def test_empty_database_version_zero(self, temp_dir: Path) -> None:
        from context_extender.db.database import create_engine

        engine = create_engine(temp_dir / "empty.db")
        try:
            assert await current_version(engine) == 0
        finally:
            await engine.dispose()


class TestConnectionPragmas:
    """Tests for per-connection SQLite settings."""

    @pytest.mark.asyncio
    async def test_wal_and_foreign_keys(self, store: Store) -> None:
        async with store.engine.connect() as conn:
            journal = (await conn.exec_driver_sql("PRAGMA journal_mode")).scalar_one()
            foreign_keys = (await conn.exec_driver_sql("PRAGMA foreign_keys")).scalar_one()
            busy = (await conn.exec_driver_sql("PRAGMA busy_timeout")).scalar_one()
        assert str(journal).lower() == "wal"
        assert foreign_keys == 1
        assert busy >= 30000

    @pytest.mark.asyncio
    async def test_memory_store(self) -> None:
        store = await Store.open(":memory:")
        try:
            assert await current_version(store.engine) == LATEST_VERSION
        finally:
            await store.close()
