from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from context_extender.db.database import Base, UTCDateTime


class SchemaVersionRecord(Base):
    """One applied schema migration."""

    __tablename__ = "schema_versions"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime)


class SessionRecord(Base):
    """Database model for captured sessions."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    events: Mapped[list["EventRecord"]] = relationship(
        "EventRecord", back_populates="session", passive_deletes=True
    )


class EventRecord(Base):
    """Database model for events within a session."""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence_num"),
        CheckConstraint("sequence_num >= 1", name="ck_events_sequence_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("sessions.id", ondelete="CASCADE")
    )
    event_type: Mapped[str] = mapped_column(String, index=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    sequence_num: Mapped[int] = mapped_column(Integer)
    data: Mapped[str] = mapped_column(Text, default="")

    session: Mapped[SessionRecord] = relationship("SessionRecord", back_populates="events")


class MessageRecord(Base):
    """Database model for user/assistant messages derived from events."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant')", name="ck_messages_role"),
        Index("ix_messages_session_order", "session_id", "timestamp", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("sessions.id", ondelete="CASCADE")
    )
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), unique=True
    )
    role: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    token_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_label: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)


class ImportHistoryRecord(Base):
    """Database model for ingested host transcript files."""

    __tablename__ = "import_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_path: Mapped[str] = mapped_column(String, unique=True)
    content_digest: Mapped[str] = mapped_column(String)
    imported_at: Mapped[datetime] = mapped_column(UTCDateTime)
    event_count: Mapped[int] = mapped_column(Integer, default=0)


class CompiledTranscriptRecord(Base):
    """Database model for the compiled transcript of a terminal session."""

    __tablename__ = "compiled_transcripts"

    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True
    )
    compiled_at: Mapped[datetime] = mapped_column(UTCDateTime)
    format_version: Mapped[str] = mapped_column(String)
    data: Mapped[str] = mapped_column(Text)
