"""Transactional datastore for sessions, events, messages and transcripts.

``Store`` owns the engine. Every multi-step unit of work runs inside
``Store.transaction()`` (``BEGIN IMMEDIATE``, one writer at a time) or
``Store.reader()`` (``BEGIN DEFERRED``) and talks to a ``StoreTransaction``.
The single-operation methods on ``Store`` open their own transaction.

Driver failures never escape as SQLAlchemy exceptions: they are wrapped in
``StoreIOError`` at this boundary, and the transaction is rolled back.
"""

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from context_extender.core.errors import (
    AlreadyExistsError,
    ContextExtenderError,
    InvalidTransitionError,
    NotFoundError,
    PayloadInvalidError,
    SequenceConflictError,
    SessionTerminalError,
    StoreIOError,
)
from context_extender.core.timeutils import ensure_utc, utc_now
from context_extender.db.database import (
    BEGIN_DEFERRED,
    BEGIN_IMMEDIATE,
    BEGIN_MODE,
    create_engine,
    create_session_factory,
)
from context_extender.db.migrations import run_migrations
from context_extender.db.models import (
    CompiledTranscriptRecord,
    EventRecord,
    ImportHistoryRecord,
    MessageRecord,
    SessionRecord,
)
from context_extender.models.common import ImportRecord, StoreStats
from context_extender.models.events import Event, EventType, Message, MessageRole
from context_extender.models.sessions import Session, SessionFilter, SessionStatus
from context_extender.models.transcripts import CompiledTranscript

logger = logging.getLogger(__name__)

_ROLE_EVENT_TYPES = {
    MessageRole.USER: EventType.USER_PROMPT,
    MessageRole.ASSISTANT: EventType.CLAUDE_RESPONSE,
}


def _to_session(record: SessionRecord) -> Session:
    return Session(
        id=record.id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        status=SessionStatus(record.status),
        ended_at=record.ended_at,
        metadata=dict(record.metadata_ or {}),
    )


def _to_event(record: EventRecord) -> Event:
    return Event(
        id=record.id,
        session_id=record.session_id,
        event_type=EventType(record.event_type),
        timestamp=record.timestamp,
        sequence_num=record.sequence_num,
        data=record.data,
    )


def _to_message(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        session_id=record.session_id,
        event_id=record.event_id,
        role=MessageRole(record.role),
        content=record.content,
        timestamp=record.timestamp,
        token_count=record.token_count,
        model_label=record.model_label,
        metadata=dict(record.metadata_ or {}),
    )


class StoreTransaction:
    """Operations bound to one open database transaction."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # Sessions

    async def create_session(self, session: Session) -> Session:
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(session.id, "new", session.status.value)
        if await self._db.get(SessionRecord, session.id) is not None:
            raise AlreadyExistsError("session", session.id)
        record = SessionRecord(
            id=session.id,
            created_at=ensure_utc(session.created_at),
            updated_at=ensure_utc(session.updated_at),
            ended_at=session.ended_at,
            status=session.status.value,
            metadata_=dict(session.metadata),
        )
        self._db.add(record)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            raise AlreadyExistsError("session", session.id) from exc
        return _to_session(record)

    async def find_session(self, session_id: str) -> Session | None:
        record = await self._db.get(SessionRecord, session_id)
        return _to_session(record) if record is not None else None

    async def get_session(self, session_id: str) -> Session:
        session = await self.find_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def update_session(self, session: Session) -> Session:
        """Persist metadata changes of an existing session.

        The stored status is re-read in this transaction and must match the
        requested one. Terminal statuses are reached only through
        ``terminate_session``, which stores the compiled transcript with them.
        """
        record = await self._db.get(SessionRecord, session.id)
        if record is None:
            raise NotFoundError("session", session.id)

        current = SessionStatus(record.status)
        if session.status != current:
            raise InvalidTransitionError(session.id, current.value, session.status.value)

        record.metadata_ = dict(session.metadata)
        record.updated_at = max(record.updated_at, ensure_utc(session.updated_at))
        await self._db.flush()
        return _to_session(record)

    async def terminate_session(
        self,
        session: Session,
        transcript: CompiledTranscript,
        compiled_at: datetime | None = None,
    ) -> Session:
        """Move an active session to a terminal status and store its transcript.

        Both writes land in this transaction, so a terminal session always has
        a compiled transcript.

        Raises:
            NotFoundError: The session does not exist.
            InvalidTransitionError: The stored session is already terminal or
                the requested status is not terminal.
            PayloadInvalidError: The transcript belongs to another session.
        """
        record = await self._db.get(SessionRecord, session.id)
        if record is None:
            raise NotFoundError("session", session.id)

        current = SessionStatus(record.status)
        if current.is_terminal or not session.status.is_terminal:
            raise InvalidTransitionError(session.id, current.value, session.status.value)
        if transcript.metadata.session_id != session.id:
            raise PayloadInvalidError(
                f"transcript for {transcript.metadata.session_id} "
                f"cannot close session {session.id}"
            )

        record.status = session.status.value
        record.ended_at = ensure_utc(session.ended_at) if session.ended_at else None
        record.metadata_ = dict(session.metadata)
        record.updated_at = max(record.updated_at, ensure_utc(session.updated_at))
        await self._db.flush()
        await self.save_compiled_transcript(transcript, compiled_at)
        return _to_session(record)

    async def list_sessions(self, criteria: SessionFilter | None = None) -> list[Session]:
        criteria = criteria or SessionFilter()
        stmt = select(SessionRecord)
        if criteria.status is not None:
            stmt = stmt.where(SessionRecord.status == criteria.status.value)
        if criteria.created_after is not None:
            stmt = stmt.where(SessionRecord.created_at >= criteria.created_after)
        if criteria.created_before is not None:
            stmt = stmt.where(SessionRecord.created_at < criteria.created_before)

        column = getattr(SessionRecord, criteria.order_by)
        if criteria.descending:
            stmt = stmt.order_by(column.desc(), SessionRecord.id.desc())
        else:
            stmt = stmt.order_by(column.asc(), SessionRecord.id.asc())
        if criteria.limit is not None:
            stmt = stmt.limit(criteria.limit)
        if criteria.offset:
            stmt = stmt.offset(criteria.offset)

        result = await self._db.execute(stmt)
        return [_to_session(record) for record in result.scalars()]

    async def delete_session(self, session_id: str) -> None:
        """Delete a session; events, messages and its transcript cascade."""
        if await self._db.get(SessionRecord, session_id) is None:
            raise NotFoundError("session", session_id)
        await self._db.execute(delete(SessionRecord).where(SessionRecord.id == session_id))

    async def find_stale_sessions(self, cutoff: datetime) -> list[Session]:
        """Active sessions whose last activity is strictly before ``cutoff``."""
        last_event = (
            select(func.max(EventRecord.timestamp))
            .where(EventRecord.session_id == SessionRecord.id)
            .correlate(SessionRecord)
            .scalar_subquery()
        )
        activity = func.coalesce(last_event, SessionRecord.updated_at)
        stmt = (
            select(SessionRecord)
            .where(SessionRecord.status == SessionStatus.ACTIVE.value)
            .where(activity < ensure_utc(cutoff))
            .order_by(SessionRecord.created_at, SessionRecord.id)
        )
        result = await self._db.execute(stmt)
        return [_to_session(record) for record in result.scalars()]

    # Events

    async def insert_event(self, event: Event) -> Event:
        """Append an event, enforcing terminal-session and density rules.

        Raises:
            NotFoundError: The session does not exist.
            SessionTerminalError: The session is not active or already ended.
            SequenceConflictError: ``sequence_num`` is not exactly MAX+1, or
                a session_start event is placed anywhere but first.
        """
        record = await self._db.get(SessionRecord, event.session_id)
        if record is None:
            raise NotFoundError("session", event.session_id)
        if record.status != SessionStatus.ACTIVE.value:
            raise SessionTerminalError(event.session_id, record.status)
        if await self.latest_event(event.session_id, (EventType.SESSION_END,)) is not None:
            raise SessionTerminalError(event.session_id, "ended")

        expected = await self.max_sequence(event.session_id) + 1
        if event.sequence_num != expected:
            raise SequenceConflictError(event.session_id, event.sequence_num, expected)
        if (event.event_type == EventType.SESSION_START) != (expected == 1):
            raise SequenceConflictError(event.session_id, event.sequence_num)

        timestamp = ensure_utc(event.timestamp)
        row = EventRecord(
            session_id=event.session_id,
            event_type=event.event_type.value,
            timestamp=timestamp,
            sequence_num=event.sequence_num,
            data=event.data,
        )
        self._db.add(row)
        record.updated_at = max(record.updated_at, timestamp)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            raise SequenceConflictError(event.session_id, event.sequence_num) from exc
        return _to_event(row)

    async def insert_event_batch(self, events: Iterable[Event]) -> list[Event]:
        """Insert events in order, keeping their sequence numbers."""
        return [await self.insert_event(event) for event in events]

    async def get_events_by_session(self, session_id: str) -> list[Event]:
        result = await self._db.execute(
            select(EventRecord)
            .where(EventRecord.session_id == session_id)
            .order_by(EventRecord.sequence_num)
        )
        return [_to_event(record) for record in result.scalars()]

    async def latest_event(
        self, session_id: str, event_types: Sequence[EventType] | None = None
    ) -> Event | None:
        stmt = select(EventRecord).where(EventRecord.session_id == session_id)
        if event_types:
            stmt = stmt.where(EventRecord.event_type.in_([t.value for t in event_types]))
        stmt = stmt.order_by(EventRecord.sequence_num.desc()).limit(1)
        record = (await self._db.execute(stmt)).scalars().first()
        return _to_event(record) if record is not None else None

    async def max_sequence(self, session_id: str) -> int:
        result = await self._db.execute(
            select(func.coalesce(func.max(EventRecord.sequence_num), 0)).where(
                EventRecord.session_id == session_id
            )
        )
        return int(result.scalar_one())

    async def last_event_time(self, session_id: str) -> datetime | None:
        latest = await self.latest_event(session_id)
        return latest.timestamp if latest is not None else None

    async def delete_event(self, event_id: int) -> None:
        """Delete one event; its derived message cascades."""
        if await self._db.get(EventRecord, event_id) is None:
            raise NotFoundError("event", event_id)
        await self._db.execute(delete(EventRecord).where(EventRecord.id == event_id))

    # Messages

    async def insert_message(self, message: Message) -> Message:
        event = await self._db.get(EventRecord, message.event_id)
        if event is None:
            raise NotFoundError("event", message.event_id)
        if event.session_id != message.session_id:
            raise PayloadInvalidError(
                f"event {message.event_id} belongs to session {event.session_id}, "
                f"not {message.session_id}"
            )
        if event.event_type != _ROLE_EVENT_TYPES[message.role].value:
            raise PayloadInvalidError(
                f"{message.role} message cannot derive from a {event.event_type} event"
            )

        row = MessageRecord(
            session_id=message.session_id,
            event_id=message.event_id,
            role=message.role.value,
            content=message.content,
            timestamp=ensure_utc(message.timestamp),
            token_count=message.token_count,
            model_label=message.model_label,
            metadata_=dict(message.metadata),
        )
        self._db.add(row)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            raise AlreadyExistsError("message for event", message.event_id) from exc
        return _to_message(row)

    async def get_messages_by_session(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]:
        """Messages in conversation order; ``limit`` keeps the most recent N."""
        stmt = select(MessageRecord).where(MessageRecord.session_id == session_id)
        if limit is None:
            stmt = stmt.order_by(MessageRecord.timestamp, MessageRecord.id)
            result = await self._db.execute(stmt)
            return [_to_message(record) for record in result.scalars()]

        stmt = stmt.order_by(MessageRecord.timestamp.desc(), MessageRecord.id.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return [_to_message(record) for record in reversed(result.scalars().all())]

    async def search_messages(self, text: str, limit: int = 50) -> list[Message]:
        """Case-insensitive literal substring search over message content."""
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.content.icontains(text, autoescape=True))
            .order_by(MessageRecord.timestamp, MessageRecord.id)
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return [_to_message(record) for record in result.scalars()]

    # Compiled transcripts

    async def save_compiled_transcript(
        self, transcript: CompiledTranscript, compiled_at: datetime | None = None
    ) -> None:
        session_id = transcript.metadata.session_id
        session = await self._db.get(SessionRecord, session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        if session.status == SessionStatus.ACTIVE.value:
            raise InvalidTransitionError(session_id, session.status, "compiled")

        record = await self._db.get(CompiledTranscriptRecord, session_id)
        if record is None:
            record = CompiledTranscriptRecord(session_id=session_id)
            self._db.add(record)
        record.compiled_at = ensure_utc(compiled_at or utc_now())
        record.format_version = transcript.export.format_version
        record.data = transcript.to_json()
        await self._db.flush()

    async def get_compiled_transcript(self, session_id: str) -> CompiledTranscript:
        record = await self._db.get(CompiledTranscriptRecord, session_id)
        if record is None:
            raise NotFoundError("compiled transcript", session_id)
        return CompiledTranscript.model_validate_json(record.data)

    async def has_compiled_transcript(self, session_id: str) -> bool:
        return await self._db.get(CompiledTranscriptRecord, session_id) is not None

    # Import history

    async def record_import(self, record: ImportRecord) -> ImportRecord:
        if await self._find_import(record.source_path) is not None:
            raise AlreadyExistsError("import", record.source_path)
        self._db.add(
            ImportHistoryRecord(
                source_path=record.source_path,
                content_digest=record.content_digest,
                imported_at=ensure_utc(record.imported_at),
                event_count=record.event_count,
            )
        )
        await self._db.flush()
        return record

    async def get_import(self, source_path: str) -> ImportRecord:
        row = await self._find_import(source_path)
        if row is None:
            raise NotFoundError("import", source_path)
        return ImportRecord(
            source_path=row.source_path,
            content_digest=row.content_digest,
            imported_at=row.imported_at,
            event_count=row.event_count,
        )

    async def _find_import(self, source_path: str) -> ImportHistoryRecord | None:
        result = await self._db.execute(
            select(ImportHistoryRecord).where(ImportHistoryRecord.source_path == source_path)
        )
        return result.scalars().first()

    # Statistics

    async def _count(self, model: Any) -> int:
        result = await self._db.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())

    async def stats(self) -> StoreStats:
        bounds = await self._db.execute(
            select(func.min(SessionRecord.created_at), func.max(SessionRecord.updated_at))
        )
        oldest, newest = bounds.one()
        return StoreStats(
            session_count=await self._count(SessionRecord),
            event_count=await self._count(EventRecord),
            message_count=await self._count(MessageRecord),
            import_count=await self._count(ImportHistoryRecord),
            compiled_count=await self._count(CompiledTranscriptRecord),
            oldest_record=oldest,
            newest_record=newest,
        )


class Store:
    """Single-file SQLite datastore."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = create_session_factory(engine)

    @classmethod
    async def open(cls, path: Path | str, busy_timeout: float = 30.0) -> "Store":
        """Open (creating if needed) and migrate the datastore at ``path``."""
        try:
            engine = create_engine(path, busy_timeout)
        except OSError as exc:
            raise StoreIOError(f"cannot open database at {path}: {exc}") from exc

        try:
            applied = await run_migrations(engine)
        except SQLAlchemyError as exc:
            await engine.dispose()
            raise StoreIOError(f"cannot migrate database at {path}: {exc}") from exc
        except ContextExtenderError:
            await engine.dispose()
            raise
        if applied:
            logger.debug(f"Migrated {path} to version {applied[-1]}")
        return cls(engine)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def close(self) -> None:
        await self._engine.dispose()

    async def __aenter__(self) -> "Store":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def _unit(self, mode: str, commit: bool) -> AsyncIterator[StoreTransaction]:
        async with self._session_factory() as db:
            try:
                await db.connection(execution_options={BEGIN_MODE: mode})
                yield StoreTransaction(db)
                if commit:
                    await db.commit()
                else:
                    await db.rollback()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise StoreIOError(str(exc)) from exc
            except Exception:
                await db.rollback()
                raise

    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        """Write transaction (``BEGIN IMMEDIATE``), committed on clean exit."""
        return self._unit(BEGIN_IMMEDIATE, commit=True)

    def reader(self) -> AbstractAsyncContextManager[StoreTransaction]:
        """Read-only snapshot (``BEGIN DEFERRED``)."""
        return self._unit(BEGIN_DEFERRED, commit=False)

    # Single-operation shortcuts

    async def create_session(self, session: Session) -> Session:
        async with self.transaction() as tx:
            return await tx.create_session(session)

    async def get_session(self, session_id: str) -> Session:
        async with self.reader() as tx:
            return await tx.get_session(session_id)

    async def find_session(self, session_id: str) -> Session | None:
        async with self.reader() as tx:
            return await tx.find_session(session_id)

    async def update_session(self, session: Session) -> Session:
        async with self.transaction() as tx:
            return await tx.update_session(session)

    async def terminate_session(
        self,
        session: Session,
        transcript: CompiledTranscript,
        compiled_at: datetime | None = None,
    ) -> Session:
        async with self.transaction() as tx:
            return await tx.terminate_session(session, transcript, compiled_at)

    async def list_sessions(self, criteria: SessionFilter | None = None) -> list[Session]:
        async with self.reader() as tx:
            return await tx.list_sessions(criteria)

    async def delete_session(self, session_id: str) -> None:
        async with self.transaction() as tx:
            await tx.delete_session(session_id)

    async def find_stale_sessions(self, cutoff: datetime) -> list[Session]:
        async with self.reader() as tx:
            return await tx.find_stale_sessions(cutoff)

    async def insert_event(self, event: Event) -> Event:
        async with self.transaction() as tx:
            return await tx.insert_event(event)

    async def insert_event_batch(self, events: Iterable[Event]) -> list[Event]:
        async with self.transaction() as tx:
            return await tx.insert_event_batch(events)

    async def get_events_by_session(self, session_id: str) -> list[Event]:
        async with self.reader() as tx:
            return await tx.get_events_by_session(session_id)

    async def latest_event(
        self, session_id: str, event_types: Sequence[EventType] | None = None
    ) -> Event | None:
        async with self.reader() as tx:
            return await tx.latest_event(session_id, event_types)

    async def max_sequence(self, session_id: str) -> int:
        async with self.reader() as tx:
            return await tx.max_sequence(session_id)

    async def last_event_time(self, session_id: str) -> datetime | None:
        async with self.reader() as tx:
            return await tx.last_event_time(session_id)

    async def delete_event(self, event_id: int) -> None:
        async with self.transaction() as tx:
            await tx.delete_event(event_id)

    async def insert_message(self, message: Message) -> Message:
        async with self.transaction() as tx:
            return await tx.insert_message(message)

    async def get_messages_by_session(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]:
        async with self.reader() as tx:
            return await tx.get_messages_by_session(session_id, limit)

    async def search_messages(self, text: str, limit: int = 50) -> list[Message]:
        async with self.reader() as tx:
            return await tx.search_messages(text, limit)

    async def save_compiled_transcript(
        self, transcript: CompiledTranscript, compiled_at: datetime | None = None
    ) -> None:
        async with self.transaction() as tx:
            await tx.save_compiled_transcript(transcript, compiled_at)

    async def get_compiled_transcript(self, session_id: str) -> CompiledTranscript:
        async with self.reader() as tx:
            return await tx.get_compiled_transcript(session_id)

    async def has_compiled_transcript(self, session_id: str) -> bool:
        async with self.reader() as tx:
            return await tx.has_compiled_transcript(session_id)

    async def record_import(self, record: ImportRecord) -> ImportRecord:
        async with self.transaction() as tx:
            return await tx.record_import(record)

    async def get_import(self, source_path: str) -> ImportRecord:
        async with self.reader() as tx:
            return await tx.get_import(source_path)

    async def stats(self) -> StoreStats:
        async with self.reader() as tx:
            return await tx.stats()
