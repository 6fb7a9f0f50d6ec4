import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from context_extender.config import Settings
from context_extender.core.context_extractor import (
    MarkerCatalogue,
    extract_critical_context,
    load_catalogue,
    render_markdown,
    serialize_summary,
)
from context_extender.core.errors import (
    ContextExtenderError,
    PayloadInvalidError,
    SessionTerminalError,
)
from context_extender.core.identity import (
    ResolvedSession,
    create_with_retry,
    project_label_from_payload,
    project_label_of,
    working_dir_of,
)
from context_extender.core.jsonl_parser import get_last_assistant_response
from context_extender.core.lifecycle import LifecycleManager
from context_extender.core.sequencer import Sequencer
from context_extender.core.timeutils import Clock, utc_now
from context_extender.db.store import Store, StoreTransaction
from context_extender.models.events import (
    PRESERVATION_EVENT_TYPES,
    Event,
    EventType,
    HookKind,
    Message,
    MessageRole,
)
from context_extender.models.sessions import Session, SessionFilter

logger = logging.getLogger(__name__)

RELATED_SESSION_SCAN_LIMIT = 50


@dataclass
class HookRequest:
    """Everything one capture invocation knows before touching the store."""

    kind: HookKind
    data: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    working_dir: str = ""
    pid: int = 0
    clock_ns: int = 0


@dataclass
class HookResult:
    session_id: str
    status: str
    output: str | None = None
    event: Event | None = None


Handler = Callable[[ResolvedSession, HookRequest], Awaitable[HookResult]]


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


class EventProcessor:
    """Handlers for each hook kind.

    Each handler performs all of its writes in one store transaction. When a
    transaction fails, the sequencer entry for the session is dropped so the
    next call re-reads the stored maximum.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        clock: Clock = utc_now,
        sequencer: Sequencer | None = None,
        catalogue: MarkerCatalogue | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._sequencer = sequencer or Sequencer()
        self._catalogue = catalogue
        self.lifecycle = LifecycleManager(
            store,
            self._sequencer,
            clock=clock,
            session_timeout=settings.session_timeout,
        )

    @property
    def catalogue(self) -> MarkerCatalogue:
        if self._catalogue is None:
            self._catalogue = load_catalogue(self._settings.MARKERS_FILE)
        return self._catalogue

    def handler_for(self, kind: HookKind) -> Handler:
        handlers: dict[HookKind, Handler] = {
            HookKind.SESSION_START: self.session_start,
            HookKind.USER_PROMPT: self.user_prompt,
            HookKind.CLAUDE_RESPONSE: self.claude_response,
            HookKind.SESSION_END: self.session_end,
            HookKind.CONVERSATION_COMPRESS: self.conversation_compress,
            HookKind.CONTEXT_REQUEST: self.context_request,
        }
        return handlers[kind]

    async def _require_active(self, tx: StoreTransaction, session_id: str) -> Session:
        session = await tx.get_session(session_id)
        if session.status.is_terminal:
            raise SessionTerminalError(session_id, session.status.value)
        return session

    # Handlers

    async def session_start(self, resolved: ResolvedSession, request: HookRequest) -> HookResult:
        """Create the session and its first event; repeat calls are no-ops."""
        fields = request.fields
        working_dir = _text(fields.get("cwd")) or request.working_dir
        project = project_label_from_payload(
            {**fields, "cwd": working_dir}, self._settings.strip_prefixes
        )
        metadata = _drop_none(
            {
                "working_dir": working_dir or None,
                "project": project,
                "source": _text(fields.get("source")),
                "transcript_path": _text(fields.get("transcript_path")),
                "host_version": _text(fields.get("version")),
                "identity_source": resolved.source.value,
            }
        )
        now = self._clock()

        try:
            async with self._store.transaction() as tx:
                if not resolved.synthesized:
                    existing = await tx.find_session(resolved.session_id)
                    if existing is not None:
                        logger.debug(f"Session {existing.id} already exists, start ignored")
                        return HookResult(existing.id, f"session {existing.id} already started")

                session = await create_with_retry(
                    tx,
                    Session(
                        id=resolved.session_id,
                        created_at=now,
                        updated_at=now,
                        metadata=metadata,
                    ),
                    resolved,
                )
                data = {k: v for k, v in metadata.items() if k != "identity_source"}
                event = await self._sequencer.append(
                    tx, session.id, EventType.SESSION_START, json.dumps(data), now
                )
        except Exception:
            self._sequencer.reset()
            raise

        logger.info(f"Session {session.id} started in {working_dir or 'unknown directory'}")
        if self._settings.REAP_ON_SESSION_START:
            await self._reap_stale_sessions()
        return HookResult(session.id, f"session {session.id} started", event=event)

    async def _reap_stale_sessions(self) -> None:
        try:
            await self.lifecycle.timeout_scan()
        except ContextExtenderError as exc:
            logger.warning(f"Timeout scan failed: {exc}")

    async def _append_message(
        self,
        session_id: str,
        event_type: EventType,
        role: MessageRole,
        content: str,
        data: dict[str, Any],
        token_count: int | None = None,
        model_label: str | None = None,
    ) -> Event:
        try:
            async with self._store.transaction() as tx:
                await self._require_active(tx, session_id)
                event = await self._sequencer.append(
                    tx, session_id, event_type, json.dumps(data), self._clock()
                )
                await tx.insert_message(
                    Message(
                        session_id=session_id,
                        event_id=event.id or 0,
                        role=role,
                        content=content,
                        timestamp=event.timestamp,
                        token_count=token_count,
                        model_label=model_label,
                    )
                )
                return event
        except Exception:
            self._sequencer.reset(session_id)
            raise

    async def user_prompt(self, resolved: ResolvedSession, request: HookRequest) -> HookResult:
        content = (
            _text(request.data)
            or _text(request.fields.get("prompt"))
            or _text(request.fields.get("message"))
        )
        if content is None:
            raise PayloadInvalidError("user-prompt needs prompt text (--data or stdin prompt)")

        event = await self._append_message(
            resolved.session_id,
            EventType.USER_PROMPT,
            MessageRole.USER,
            content,
            {"message": content},
        )
        return HookResult(
            resolved.session_id,
            f"user prompt recorded for {resolved.session_id} (seq {event.sequence_num})",
            event=event,
        )

    async def claude_response(self, resolved: ResolvedSession, request: HookRequest) -> HookResult:
        fields = request.fields
        content = _text(request.data) or _text(fields.get("response"))
        model = _text(fields.get("model"))
        if content is None:
            transcript_path = _text(fields.get("transcript_path"))
            found = get_last_assistant_response(transcript_path) if transcript_path else None
            if found is not None:
                content, model = found[0], model or found[1]
        if content is None:
            raise PayloadInvalidError(
                "claude-response needs response text (--data, stdin response, or transcript_path)"
            )

        token_count = fields.get("token_count")
        token_count = token_count if isinstance(token_count, int) else None
        event = await self._append_message(
            resolved.session_id,
            EventType.CLAUDE_RESPONSE,
            MessageRole.ASSISTANT,
            content,
            _drop_none({"response": content, "token_count": token_count, "model": model}),
            token_count=token_count,
            model_label=model,
        )
        return HookResult(
            resolved.session_id,
            f"response recorded for {resolved.session_id} (seq {event.sequence_num})",
            event=event,
        )

    async def session_end(self, resolved: ResolvedSession, request: HookRequest) -> HookResult:
        reason = _text(request.fields.get("reason")) or _text(request.data)
        transcript = await self.lifecycle.complete(resolved.session_id, reason)
        return HookResult(
            resolved.session_id,
            f"session {resolved.session_id} completed "
            f"({transcript.metadata.event_count} events, {transcript.metadata.duration})",
        )

    async def conversation_compress(
        self, resolved: ResolvedSession, request: HookRequest
    ) -> HookResult:
        """Store a compression payload, or distil one from the session's messages."""
        session_id = resolved.session_id
        payload = request.data if request.data and request.data.strip() else None
        if payload is not None and payload.lstrip().startswith(("{", "[")):
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise PayloadInvalidError(f"compression payload is not valid JSON: {exc}") from exc
            if not isinstance(parsed, dict):
                raise PayloadInvalidError("compression payload must be a JSON object")

        try:
            async with self._store.transaction() as tx:
                session = await self._require_active(tx, session_id)
                if payload is not None:
                    event_type, data = EventType.COMPRESSION, payload
                else:
                    messages = await tx.get_messages_by_session(
                        session_id, limit=self._settings.CONTEXT_RECENT_MESSAGES
                    )
                    summary = extract_critical_context(
                        messages,
                        project_label=project_label_of(session),
                        working_directory=working_dir_of(session),
                        catalogue=self.catalogue,
                    )
                    event_type, data = EventType.CONTEXT_PRESERVATION, serialize_summary(summary)
                event = await self._sequencer.append(
                    tx, session_id, event_type, data, self._clock()
                )
        except Exception:
            self._sequencer.reset(session_id)
            raise

        return HookResult(
            session_id,
            f"context preserved for {session_id} ({event_type}, seq {event.sequence_num})",
            event=event,
        )

    async def context_request(self, resolved: ResolvedSession, request: HookRequest) -> HookResult:
        """Build the re-injection document; never writes."""
        limit = self._settings.CONTEXT_RECENT_MESSAGES
        async with self._store.reader() as tx:
            session = await tx.get_session(resolved.session_id)
            source = session
            preserved = await tx.latest_event(session.id, PRESERVATION_EVENT_TYPES)
            messages = await tx.get_messages_by_session(session.id, limit=limit)
            if preserved is None and not messages:
                related = await self._find_related_session(tx, session)
                if related is not None:
                    source = related
                    preserved = await tx.latest_event(related.id, PRESERVATION_EVENT_TYPES)
                    messages = await tx.get_messages_by_session(related.id, limit=limit)

        summary = extract_critical_context(
            messages,
            project_label=project_label_of(source),
            working_directory=working_dir_of(source),
            catalogue=self.catalogue,
        )
        blocks: list[str] = []
        if source.id != session.id:
            blocks.append(f"<!-- carried over from session {source.id} -->")
        if preserved is not None:
            blocks.append(preserved.data.rstrip("\n"))
        blocks.append(render_markdown(summary).rstrip("\n"))
        return HookResult(
            session.id,
            f"context for {session.id} from {source.id}",
            output="\n\n".join(blocks) + "\n",
        )

    async def _find_related_session(
        self, tx: StoreTransaction, session: Session
    ) -> Session | None:
        """Most recently updated other session in the same working directory with content."""
        working_dir = working_dir_of(session)
        if working_dir is None:
            return None
        candidates = await tx.list_sessions(
            SessionFilter(order_by="updated_at", limit=RELATED_SESSION_SCAN_LIMIT)
        )
        for candidate in candidates:
            if candidate.id == session.id or working_dir_of(candidate) != working_dir:
                continue
            if await tx.latest_event(candidate.id, PRESERVATION_EVENT_TYPES) is not None:
                return candidate
            if await tx.get_messages_by_session(candidate.id, limit=1):
                return candidate
        return None
