import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import DateTime, event
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

# Execution option read by the "begin" listener to choose the SQLite BEGIN flavour.
BEGIN_MODE = "sqlite_begin_mode"
BEGIN_IMMEDIATE = "IMMEDIATE"
BEGIN_DEFERRED = "DEFERRED"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime column stored as naive UTC and loaded as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


def database_url(path: Path | str) -> str:
    return f"sqlite+aiosqlite:///{path}"


def create_engine(path: Path | str, busy_timeout: float = 30.0) -> AsyncEngine:
    """Create an async engine for a SQLite file with single-writer pragmas.

    Args:
        path: Database file, or ``":memory:"`` for a private in-memory store.
        busy_timeout: Seconds a writer waits for the lock before failing.

    Returns:
        Engine whose connections run in WAL mode with foreign keys enforced.
    """
    kwargs: dict[str, Any] = {"echo": False, "connect_args": {"timeout": busy_timeout}}
    if str(path) == MEMORY_DATABASE:
        kwargs["poolclass"] = StaticPool
    else:
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url(path), **kwargs)
    _install_sqlite_listeners(engine, busy_timeout)
    logger.debug(f"Engine created for {path}")
    return engine


def _install_sqlite_listeners(engine: AsyncEngine, busy_timeout: float) -> None:
    pragmas = (
        "PRAGMA journal_mode=WAL",
        "PRAGMA foreign_keys=ON",
        "PRAGMA synchronous=NORMAL",
        f"PRAGMA busy_timeout={int(busy_timeout * 1000)}",
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        # Take BEGIN away from the driver so the "begin" listener controls it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            for pragma in pragmas:
                cursor.execute(pragma)
        finally:
            cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Connection) -> None:
        mode = conn.get_execution_options().get(BEGIN_MODE, BEGIN_DEFERRED)
        conn.exec_driver_sql(f"BEGIN {mode}")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
