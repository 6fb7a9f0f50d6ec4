import asyncio
import logging
from datetime import datetime

from context_extender.core.timeutils import ensure_utc
from context_extender.db.store import StoreTransaction
from context_extender.models.events import Event, EventType

logger = logging.getLogger(__name__)


class Sequencer:
    """Assigns dense per-session sequence numbers.

    The in-process map is only a cache of ``MAX(sequence_num)``. It is seeded
    from the caller's transaction on first use, so a new process continues
    where the previous one stopped. Drop an entry with ``reset`` whenever the
    transaction that advanced it rolls back.
    """

    def __init__(self) -> None:
        self._last: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def next(self, session_id: str, tx: StoreTransaction) -> int:
        async with self._lock:
            if session_id not in self._last:
                self._last[session_id] = await tx.max_sequence(session_id)
                logger.debug(f"Seeded sequence for {session_id} at {self._last[session_id]}")
            self._last[session_id] += 1
            return self._last[session_id]

    def reset(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._last.clear()
        else:
            self._last.pop(session_id, None)

    def peek(self, session_id: str) -> int | None:
        return self._last.get(session_id)

    async def append(
        self,
        tx: StoreTransaction,
        session_id: str,
        event_type: EventType,
        data: str,
        now: datetime,
    ) -> Event:
        """Insert an event at the next sequence number.

        The timestamp never goes backwards within a session: a clock that
        reads earlier than the previous event is clamped to it.
        """
        timestamp = ensure_utc(now)
        previous = await tx.last_event_time(session_id)
        if previous is not None and previous > timestamp:
            timestamp = previous

        sequence_num = await self.next(session_id, tx)
        try:
            return await tx.insert_event(
                Event(
                    session_id=session_id,
                    event_type=event_type,
                    timestamp=timestamp,
                    sequence_num=sequence_num,
                    data=data,
                )
            )
        except Exception:
            self.reset(session_id)
            raise
