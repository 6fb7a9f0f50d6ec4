"""Session termination: normal completion, timeout reaping and error marking.

Every transition to a terminal status compiles and stores the session's
transcript in the same transaction, so a transcript exists exactly when the
session is terminal.
"""

import json
import logging
from datetime import datetime, timedelta

from context_extender.core.errors import InvalidTransitionError, SessionTerminalError
from context_extender.core.sequencer import Sequencer
from context_extender.core.timeutils import Clock, utc_now
from context_extender.core.transcript_compiler import compile_transcript
from context_extender.db.store import Store, StoreTransaction
from context_extender.models.events import EventType
from context_extender.models.sessions import Session, SessionStatus
from context_extender.models.transcripts import CompiledTranscript

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TIMEOUT = timedelta(minutes=30)


class LifecycleManager:
    """Moves sessions out of ``active`` and keeps their transcripts current."""

    def __init__(
        self,
        store: Store,
        sequencer: Sequencer,
        clock: Clock = utc_now,
        session_timeout: timedelta = DEFAULT_SESSION_TIMEOUT,
    ) -> None:
        self._store = store
        self._sequencer = sequencer
        self._clock = clock
        self._session_timeout = session_timeout

    async def _compile(self, tx: StoreTransaction, session: Session) -> CompiledTranscript:
        events = await tx.get_events_by_session(session.id)
        messages = await tx.get_messages_by_session(session.id)
        return compile_transcript(session, events, messages)

    async def _terminate(
        self, tx: StoreTransaction, session: Session, **changes: object
    ) -> CompiledTranscript:
        """Store ``session`` with ``changes`` applied, together with its transcript."""
        ended = session.model_copy(update=changes)
        transcript = await self._compile(tx, ended)
        await tx.terminate_session(ended, transcript, compiled_at=self._clock())
        return transcript

    async def complete_in(
        self, tx: StoreTransaction, session_id: str, reason: str | None = None
    ) -> CompiledTranscript:
        """Complete a session inside the caller's transaction."""
        session = await tx.get_session(session_id)
        if session.status.is_terminal:
            raise SessionTerminalError(session_id, session.status.value)

        end_event = await self._sequencer.append(
            tx,
            session_id,
            EventType.SESSION_END,
            json.dumps({"reason": reason}),
            self._clock(),
        )
        ended_at = end_event.timestamp
        transcript = await self._terminate(
            tx,
            session,
            status=SessionStatus.COMPLETED,
            ended_at=ended_at,
            updated_at=max(session.updated_at, ended_at),
        )
        logger.info(f"Session {session_id} completed after {transcript.metadata.duration}")
        return transcript

    async def complete(self, session_id: str, reason: str | None = None) -> CompiledTranscript:
        """Append session_end, mark completed and compile, all or nothing.

        Raises:
            NotFoundError: Unknown session.
            SessionTerminalError: The session already ended or timed out.
        """
        try:
            async with self._store.transaction() as tx:
                return await self.complete_in(tx, session_id, reason)
        finally:
            self._sequencer.reset(session_id)

    async def timeout_scan(
        self, threshold: timedelta | None = None, now: datetime | None = None
    ) -> list[str]:
        """Reap active sessions idle for longer than ``threshold``.

        A reaped session ends at its last activity plus the threshold, not at
        scan time. Each session is re-checked and transitioned in its own
        transaction.

        Returns:
            Ids of the sessions moved to timed_out.
        """
        threshold = self._session_timeout if threshold is None else threshold
        now = now or self._clock()
        cutoff = now - threshold
        reaped: list[str] = []

        for candidate in await self._store.find_stale_sessions(cutoff):
            try:
                async with self._store.transaction() as tx:
                    session = await tx.find_session(candidate.id)
                    if session is None or session.status.is_terminal:
                        continue
                    last_activity = await tx.last_event_time(session.id) or session.updated_at
                    if last_activity >= cutoff:
                        continue

                    ended_at = last_activity + threshold
                    await self._terminate(
                        tx,
                        session,
                        status=SessionStatus.TIMED_OUT,
                        ended_at=ended_at,
                        updated_at=max(session.updated_at, ended_at),
                    )
                reaped.append(session.id)
            finally:
                self._sequencer.reset(candidate.id)

        if reaped:
            logger.info(f"Timed out {len(reaped)} idle session(s): {', '.join(reaped)}")
        return reaped

    async def mark_error(self, session_id: str, reason: str) -> CompiledTranscript:
        """Terminate an active session with status ``error``."""
        try:
            async with self._store.transaction() as tx:
                session = await tx.get_session(session_id)
                if session.status.is_terminal:
                    raise InvalidTransitionError(
                        session_id, session.status.value, SessionStatus.ERROR.value
                    )
                last_activity = await tx.last_event_time(session_id) or session.updated_at
                ended_at = max(self._clock(), last_activity)
                return await self._terminate(
                    tx,
                    session,
                    status=SessionStatus.ERROR,
                    ended_at=ended_at,
                    updated_at=max(session.updated_at, ended_at),
                    metadata={**session.metadata, "error_reason": reason},
                )
        finally:
            self._sequencer.reset(session_id)

    async def regenerate_transcript(self, session_id: str) -> CompiledTranscript:
        """Rebuild the stored transcript of a terminal session."""
        async with self._store.transaction() as tx:
            session = await tx.get_session(session_id)
            if not session.status.is_terminal:
                raise InvalidTransitionError(session_id, session.status.value, "compiled")
            transcript = await self._compile(tx, session)
            await tx.save_compiled_transcript(transcript, compiled_at=self._clock())
            return transcript
