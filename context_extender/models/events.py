from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """Types of events recorded for a session."""

    SESSION_START = "session_start"
    USER_PROMPT = "user_prompt"
    CLAUDE_RESPONSE = "claude_response"
    SESSION_END = "session_end"
    COMPRESSION = "compression"
    CONTEXT_PRESERVATION = "context_preservation"


PRESERVATION_EVENT_TYPES: tuple[EventType, ...] = (
    EventType.COMPRESSION,
    EventType.CONTEXT_PRESERVATION,
)


class HookKind(StrEnum):
    """Event kinds accepted on the capture command line."""

    SESSION_START = "session-start"
    USER_PROMPT = "user-prompt"
    CLAUDE_RESPONSE = "claude-response"
    SESSION_END = "session-end"
    CONVERSATION_COMPRESS = "conversation-compress"
    CONTEXT_REQUEST = "context-request"

    @classmethod
    def parse(cls, value: str) -> "HookKind":
        """Accept kebab-case or snake_case spellings."""
        return cls(value.strip().lower().replace("_", "-"))


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class Event(BaseModel):
    """A raw lifecycle record, the append-only ground truth."""

    id: int | None = None
    session_id: str
    event_type: EventType
    timestamp: datetime
    sequence_num: int = Field(ge=1)
    data: str = ""


class Message(BaseModel):
    """User or assistant text projected from a prompt/response event."""

    id: int | None = None
    session_id: str
    event_id: int
    role: MessageRole
    content: str
    timestamp: datetime
    token_count: int | None = None
    model_label: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
