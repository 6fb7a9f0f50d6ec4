"""One capture invocation: open the store, resolve identity, run the handler."""

import logging
from pathlib import Path

from context_extender.config import Settings, get_settings
from context_extender.core.event_processor import EventProcessor, HookRequest, HookResult
from context_extender.core.identity import resolve_session
from context_extender.core.timeutils import Clock, utc_now
from context_extender.db.store import Store

logger = logging.getLogger(__name__)


async def run_hook(
    store: Store,
    request: HookRequest,
    settings: Settings,
    clock: Clock = utc_now,
) -> HookResult:
    """Route ``request`` to its handler against an already open store."""
    resolved = resolve_session(
        request.kind,
        env=request.env,
        flag_session_id=request.session_id,
        payload=request.fields,
        working_dir=request.working_dir,
        pid=request.pid,
        clock_ns=request.clock_ns,
        env_var=settings.SESSION_ENV_VAR,
    )
    logger.debug(f"{request.kind} for session {resolved.session_id} ({resolved.source})")
    processor = EventProcessor(store, settings, clock=clock)
    return await processor.handler_for(request.kind)(resolved, request)


async def dispatch(
    request: HookRequest,
    db_path: str | Path | None = None,
    settings: Settings | None = None,
    clock: Clock = utc_now,
) -> HookResult:
    """Open the datastore, handle one hook event and close it again."""
    settings = settings or get_settings()
    path = settings.resolve_database_path(db_path)
    store = await Store.open(path, busy_timeout=settings.BUSY_TIMEOUT_SECONDS)
    try:
        return await run_hook(store, request, settings, clock)
    finally:
        await store.close()
