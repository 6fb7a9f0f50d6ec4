"""Session identity resolution for hook invocations."""

import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from context_extender.core.errors import AlreadyExistsError, SessionUnresolvedError
from context_extender.db.store import StoreTransaction
from context_extender.models.events import HookKind
from context_extender.models.sessions import Session

logger = logging.getLogger(__name__)

MAX_COLLISION_RETRIES = 3
ENTROPY_BYTES = 4  # 8 hex characters


class IdentitySource(StrEnum):
    ENVIRONMENT = "env"
    FLAG = "flag"
    PAYLOAD = "payload"
    SYNTHESIZED = "synthesized"


@dataclass(frozen=True)
class ResolvedSession:
    session_id: str
    source: IdentitySource

    @property
    def synthesized(self) -> bool:
        return self.source is IdentitySource.SYNTHESIZED


def synthesize_session_id(working_dir: str, pid: int, clock_ns: int) -> str:
    """Build ``<basename>_<pid>_<ns>`` for a session the host did not name."""
    basename = Path(working_dir).name or "session"
    return f"{basename}_{pid}_{clock_ns}"


def resolve_session(
    kind: HookKind,
    env: Mapping[str, str],
    flag_session_id: str | None,
    payload: Mapping[str, Any],
    working_dir: str,
    pid: int,
    clock_ns: int,
    env_var: str = "CLAUDE_SESSION_ID",
) -> ResolvedSession:
    """Determine which session this invocation belongs to.

    Sources in priority order: the environment variable, the ``--session-id``
    flag, the ``session_id`` field of the host's stdin object, and, for
    session-start only, a synthesized id.

    Raises:
        SessionUnresolvedError: No source produced an id for a kind other
            than session-start.
    """
    from_env = env.get(env_var, "").strip()
    if from_env:
        return ResolvedSession(from_env, IdentitySource.ENVIRONMENT)

    if flag_session_id and flag_session_id.strip():
        return ResolvedSession(flag_session_id.strip(), IdentitySource.FLAG)

    from_payload = payload.get("session_id")
    if isinstance(from_payload, str) and from_payload.strip():
        return ResolvedSession(from_payload.strip(), IdentitySource.PAYLOAD)

    if kind is HookKind.SESSION_START:
        return ResolvedSession(
            synthesize_session_id(working_dir, pid, clock_ns), IdentitySource.SYNTHESIZED
        )

    raise SessionUnresolvedError(
        f"no session id for {kind}: set {env_var}, pass --session-id, "
        "or pipe the host's hook payload on stdin"
    )


async def create_with_retry(
    tx: StoreTransaction,
    session: Session,
    resolved: ResolvedSession,
    retries: int = MAX_COLLISION_RETRIES,
) -> Session:
    """Create ``session``, re-rolling synthesized ids that collide.

    Explicit ids are never altered: a collision on one surfaces as
    ``AlreadyExistsError`` straight away.
    """
    try:
        return await tx.create_session(session)
    except AlreadyExistsError:
        if not resolved.synthesized:
            raise

    for attempt in range(1, retries + 1):
        candidate = session.model_copy(
            update={"id": f"{resolved.session_id}_{secrets.token_hex(ENTROPY_BYTES)}"}
        )
        logger.debug(f"Session id collision, retry {attempt} with {candidate.id}")
        try:
            return await tx.create_session(candidate)
        except AlreadyExistsError:
            continue

    raise AlreadyExistsError("session", resolved.session_id)


def project_label_from_payload(
    payload: Mapping[str, Any], strip_prefixes: list[str] | None = None
) -> str | None:
    """Project label from the host transcript path or the working directory.

    The host keeps transcripts at ``~/.claude/projects/<PROJECT>/<session>.jsonl``
    where ``<PROJECT>`` is the launch directory with separators turned into
    dashes. The longest matching prefix in ``strip_prefixes`` is removed.
    """
    transcript_path = payload.get("transcript_path")
    if isinstance(transcript_path, str) and transcript_path:
        parts = Path(transcript_path).expanduser().parts
        try:
            index = parts.index("projects")
        except ValueError:
            index = -1
        if 0 <= index < len(parts) - 2:
            label = parts[index + 1]
            for prefix in sorted(strip_prefixes or [], key=len, reverse=True):
                if label.startswith(prefix):
                    label = label[len(prefix) :]
                    break
            if label:
                return label

    cwd = payload.get("cwd")
    if isinstance(cwd, str) and cwd:
        return Path(cwd).name or None
    return None


def working_dir_of(session: Session) -> str | None:
    value = session.metadata.get("working_dir")
    return value if isinstance(value, str) and value else None


def project_label_of(session: Session) -> str | None:
    value = session.metadata.get("project")
    if isinstance(value, str) and value:
        return value
    working_dir = working_dir_of(session)
    return Path(working_dir).name if working_dir else None
