from datetime import datetime
from typing import cast

from pydantic import BaseModel, Field

from context_extender.models.events import EventType, MessageRole
from context_extender.models.sessions import SessionStatus

TRANSCRIPT_FORMAT_VERSION = "1.0.0"


class SessionStartInfo(BaseModel):
    working_dir: str | None = None
    project: str | None = None
    source: str | None = None


class UserPromptInfo(BaseModel):
    message: str
    word_count: int = 0


class ClaudeResponseInfo(BaseModel):
    response: str
    word_count: int = 0
    token_count: int | None = None
    model: str | None = None


class SessionEndInfo(BaseModel):
    reason: str | None = None


class PreservedContextInfo(BaseModel):
    size: int
    structured: bool = False


class EventContent(BaseModel):
    """Typed payload for one transcript event; at most one field is set."""

    session_info: SessionStartInfo | None = None
    user_prompt: UserPromptInfo | None = None
    claude_response: ClaudeResponseInfo | None = None
    session_end: SessionEndInfo | None = None
    preserved_context: PreservedContextInfo | None = None


class TranscriptEvent(BaseModel):
    timestamp: datetime
    event_type: EventType
    sequence_num: int
    content: EventContent = Field(default_factory=EventContent)


class TranscriptMessage(BaseModel):
    timestamp: datetime
    role: MessageRole
    content: str
    token_count: int | None = None
    model_label: str | None = None


class TranscriptMetadata(BaseModel):
    session_id: str
    project_name: str | None = None
    working_dir: str | None = None
    start_time: datetime
    end_time: datetime
    duration: str
    status: SessionStatus
    event_count: int
    user_prompts: int
    claude_replies: int


class ActivityPeak(BaseModel):
    start_time: datetime
    end_time: datetime
    event_count: int
    duration: str


class TranscriptStatistics(BaseModel):
    total_events: int
    user_prompt_words: int = 0
    claude_response_words: int = 0
    average_prompt_length: float = 0.0
    min_gap_seconds: float | None = None
    max_gap_seconds: float | None = None
    mean_gap_seconds: float | None = None


class TranscriptSummary(BaseModel):
    total_duration: str
    prompt_count: int
    response_count: int
    peak_activity: ActivityPeak | None = None
    topic_keywords: list[str] = Field(default_factory=lambda: cast(list[str], []))
    conversation_tags: list[str] = Field(default_factory=lambda: cast(list[str], []))
    statistics: TranscriptStatistics


class ExportInfo(BaseModel):
    format_version: str = TRANSCRIPT_FORMAT_VERSION
    source_format: str = "events"
    processed_by: str = "context-extender"


class CompiledTranscript(BaseModel):
    """Denormalised, read-optimised snapshot of a terminal session."""

    metadata: TranscriptMetadata
    events: list[TranscriptEvent] = Field(
        default_factory=lambda: cast(list[TranscriptEvent], [])
    )
    conversation: list[TranscriptMessage] = Field(
        default_factory=lambda: cast(list[TranscriptMessage], [])
    )
    summary: TranscriptSummary
    export: ExportInfo = Field(default_factory=ExportInfo)

    def to_json(self) -> str:
        """Serialize, leaving out undefined statistics."""
        return self.model_dump_json(exclude_none=True)
