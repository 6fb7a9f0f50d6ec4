"""Builds the compiled transcript of a terminal session.

Compilation is a pure function of the session row, its events and its
messages, so a stored transcript can always be regenerated.
"""

import json
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any, cast

from context_extender.core.timeutils import format_duration
from context_extender.models.events import Event, EventType, Message, MessageRole
from context_extender.models.sessions import Session, SessionStatus
from context_extender.models.transcripts import (
    ActivityPeak,
    ClaudeResponseInfo,
    CompiledTranscript,
    EventContent,
    PreservedContextInfo,
    SessionEndInfo,
    SessionStartInfo,
    TranscriptEvent,
    TranscriptMessage,
    TranscriptMetadata,
    TranscriptStatistics,
    TranscriptSummary,
    UserPromptInfo,
)

PEAK_WINDOW = timedelta(minutes=5)
PEAK_MIN_EVENTS = 3
MAX_KEYWORDS = 5

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by is are was were be been
    have has had do does did will would could should may might can this that
    these those i you he she it we they me him her us them my your his its our
    their what where when why how if then please help thanks thank
    """.split()
)

_PUNCTUATION = ".,!?;:()[]{}\"'"

STATUS_TAGS = {
    SessionStatus.COMPLETED: "completed-naturally",
    SessionStatus.TIMED_OUT: "auto-timeout",
    SessionStatus.ERROR: "error-terminated",
}

PROJECT_TAGS = (
    ("test", "testing"),
    ("web", "web-dev"),
    ("api", "api-dev"),
    ("cli", "cli-tool"),
)


def word_count(text: str) -> int:
    return len(text.split())


def _load_object(data: str) -> dict[str, Any] | None:
    try:
        value = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return None
    return cast(dict[str, Any], value) if isinstance(value, dict) else None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def build_event_content(event: Event) -> EventContent:
    """Typed view of an event's opaque ``data``; unknown shapes stay empty."""
    fields = _load_object(event.data)

    if event.event_type in (EventType.COMPRESSION, EventType.CONTEXT_PRESERVATION):
        return EventContent(
            preserved_context=PreservedContextInfo(
                size=len(event.data), structured=fields is not None
            )
        )

    fields = fields or {}
    match event.event_type:
        case EventType.SESSION_START:
            return EventContent(
                session_info=SessionStartInfo(
                    working_dir=_text(fields.get("working_dir")),
                    project=_text(fields.get("project")),
                    source=_text(fields.get("source")),
                )
            )
        case EventType.USER_PROMPT:
            message = _text(fields.get("message")) or (event.data if not fields else "")
            return EventContent(
                user_prompt=UserPromptInfo(message=message, word_count=word_count(message))
            )
        case EventType.CLAUDE_RESPONSE:
            response = _text(fields.get("response")) or (event.data if not fields else "")
            token_count = fields.get("token_count")
            return EventContent(
                claude_response=ClaudeResponseInfo(
                    response=response,
                    word_count=word_count(response),
                    token_count=token_count if isinstance(token_count, int) else None,
                    model=_text(fields.get("model")),
                )
            )
        case EventType.SESSION_END:
            return EventContent(session_end=SessionEndInfo(reason=_text(fields.get("reason"))))
    return EventContent()


def extract_topic_keywords(user_texts: Sequence[str], limit: int = MAX_KEYWORDS) -> list[str]:
    """Most frequent non-stop-words across the user's messages.

    Words must be longer than two characters and, unless there is a single
    message, appear more than once. Ties sort alphabetically.
    """
    if not user_texts:
        return []
    counts: Counter[str] = Counter()
    for text in user_texts:
        for word in text.lower().split():
            cleaned = word.strip(_PUNCTUATION)
            if len(cleaned) > 2 and cleaned not in STOP_WORDS:
                counts[cleaned] += 1

    single = len(user_texts) == 1
    ranked = sorted(
        ((word, count) for word, count in counts.items() if count > 1 or single),
        key=lambda item: (-item[1], item[0]),
    )
    return [word for word, _ in ranked[:limit]]


def detect_activity_peak(times: Sequence[datetime]) -> ActivityPeak | None:
    """Densest five-minute window, if it holds at least half of the events."""
    if len(times) < PEAK_MIN_EVENTS:
        return None
    ordered = sorted(times)

    best_count = 0
    best_start = ordered[0]
    for i, start in enumerate(ordered):
        end = start + PEAK_WINDOW
        count = sum(1 for t in ordered[i:] if t < end)
        if count > best_count:
            best_count = count
            best_start = start

    if best_count * 2 < len(ordered):
        return None
    return ActivityPeak(
        start_time=best_start,
        end_time=best_start + PEAK_WINDOW,
        event_count=best_count,
        duration=format_duration(PEAK_WINDOW),
    )


def generate_tags(
    session: Session,
    end_time: datetime,
    events: Sequence[Event],
    project_name: str | None,
) -> list[str]:
    tags: list[str] = []

    duration = end_time - session.created_at
    if duration < timedelta(minutes=2):
        tags.append("quick-session")
    elif duration > timedelta(minutes=30):
        tags.append("long-session")
    else:
        tags.append("normal-session")

    if len(events) >= 10:
        tags.append("active-conversation")
    elif len(events) <= 3:
        tags.append("brief-interaction")

    if session.status in STATUS_TAGS:
        tags.append(STATUS_TAGS[session.status])

    hour = session.created_at.hour
    if 6 <= hour < 12:
        tags.append("morning")
    elif 12 <= hour < 18:
        tags.append("afternoon")
    elif 18 <= hour < 22:
        tags.append("evening")
    else:
        tags.append("night")

    if project_name:
        lowered = project_name.lower()
        tags.extend(tag for needle, tag in PROJECT_TAGS if needle in lowered)

    prompts = sum(1 for e in events if e.event_type == EventType.USER_PROMPT)
    responses = sum(1 for e in events if e.event_type == EventType.CLAUDE_RESPONSE)
    if prompts and not responses:
        tags.append("prompts-only")
    elif prompts and responses / prompts > 0.8:
        tags.append("interactive")

    return tags


def _gap_statistics(times: Sequence[datetime]) -> dict[str, float]:
    if len(times) < 2:
        return {}
    gaps = [(b - a).total_seconds() for a, b in zip(times, times[1:], strict=False)]
    return {
        "min_gap_seconds": min(gaps),
        "max_gap_seconds": max(gaps),
        "mean_gap_seconds": sum(gaps) / len(gaps),
    }


def compile_transcript(
    session: Session,
    events: Sequence[Event],
    messages: Sequence[Message],
) -> CompiledTranscript:
    """Compile a session snapshot.

    Args:
        session: The session row, normally already terminal.
        events: All events of the session in any order.
        messages: All messages of the session.

    Returns:
        The transcript; statistics that need two events are left unset
        when the session has fewer.
    """
    ordered = sorted(events, key=lambda e: (e.sequence_num, e.timestamp))
    conversation = sorted(messages, key=lambda m: (m.timestamp, m.id or 0))
    times = [e.timestamp for e in ordered]

    end_time = session.ended_at or (times[-1] if times else session.updated_at)
    project_name = _text(session.metadata.get("project"))
    working_dir = _text(session.metadata.get("working_dir"))

    prompt_count = sum(1 for e in ordered if e.event_type == EventType.USER_PROMPT)
    response_count = sum(1 for e in ordered if e.event_type == EventType.CLAUDE_RESPONSE)

    user_texts = [m.content for m in conversation if m.role == MessageRole.USER]
    assistant_texts = [m.content for m in conversation if m.role == MessageRole.ASSISTANT]
    user_words = sum(word_count(t) for t in user_texts)
    duration = format_duration(end_time - session.created_at)

    statistics = TranscriptStatistics(
        total_events=len(ordered),
        user_prompt_words=user_words,
        claude_response_words=sum(word_count(t) for t in assistant_texts),
        average_prompt_length=user_words / len(user_texts) if user_texts else 0.0,
        **_gap_statistics(times),
    )

    return CompiledTranscript(
        metadata=TranscriptMetadata(
            session_id=session.id,
            project_name=project_name,
            working_dir=working_dir,
            start_time=session.created_at,
            end_time=end_time,
            duration=duration,
            status=session.status,
            event_count=len(ordered),
            user_prompts=prompt_count,
            claude_replies=response_count,
        ),
        events=[
            TranscriptEvent(
                timestamp=e.timestamp,
                event_type=e.event_type,
                sequence_num=e.sequence_num,
                content=build_event_content(e),
            )
            for e in ordered
        ],
        conversation=[
            TranscriptMessage(
                timestamp=m.timestamp,
                role=m.role,
                content=m.content,
                token_count=m.token_count,
                model_label=m.model_label,
            )
            for m in conversation
        ],
        summary=TranscriptSummary(
            total_duration=duration,
            prompt_count=prompt_count,
            response_count=response_count,
            peak_activity=detect_activity_peak(times),
            topic_keywords=extract_topic_keywords(user_texts),
            conversation_tags=generate_tags(session, end_time, ordered, project_name),
            statistics=statistics,
        ),
    )
