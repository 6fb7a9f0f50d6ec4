"""Tests for session identity resolution."""

import re
from datetime import UTC, datetime

import pytest

from context_extender.core import identity
from context_extender.core.errors import AlreadyExistsError, SessionUnresolvedError
from context_extender.core.identity import (
    IdentitySource,
    ResolvedSession,
    create_with_retry,
    project_label_from_payload,
    resolve_session,
    synthesize_session_id,
)
from context_extender.db.store import Store
from context_extender.models.events import HookKind
from context_extender.models.sessions import Session

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def resolve(kind: HookKind = HookKind.USER_PROMPT, **overrides: object) -> ResolvedSession:
    kwargs: dict[str, object] = {
        "env": {},
        "flag_session_id": None,
        "payload": {},
        "working_dir": "/home/dev/project",
        "pid": 99,
        "clock_ns": 123456789,
    }
    kwargs.update(overrides)
    return resolve_session(kind, **kwargs)  # type: ignore[arg-type]


class TestResolveSession:
    """Tests for resolution order."""

    def test_env_wins(self) -> None:
        result = resolve(
            env={"CLAUDE_SESSION_ID": "from-env"},
            flag_session_id="from-flag",
            payload={"session_id": "from-payload"},
        )
        assert result == ResolvedSession("from-env", IdentitySource.ENVIRONMENT)

    def test_flag_before_payload(self) -> None:
        result = resolve(flag_session_id="from-flag", payload={"session_id": "from-payload"})
        assert result.session_id == "from-flag"
        assert result.source is IdentitySource.FLAG

    def test_payload_session_id(self) -> None:
        result = resolve(payload={"session_id": "from-payload"})
        assert result.session_id == "from-payload"
        assert result.source is IdentitySource.PAYLOAD

    def test_blank_env_ignored(self) -> None:
        result = resolve(env={"CLAUDE_SESSION_ID": "  "}, flag_session_id="flag")
        assert result.session_id == "flag"

    def test_custom_env_var(self) -> None:
        result = resolve(env={"HOST_SESSION": "custom"}, env_var="HOST_SESSION")
        assert result.session_id == "custom"

    def test_session_start_synthesizes(self) -> None:
        result = resolve(HookKind.SESSION_START)
        assert result.session_id == "project_99_123456789"
        assert result.synthesized

    def test_other_kinds_unresolved(self) -> None:
        for kind in (HookKind.USER_PROMPT, HookKind.SESSION_END, HookKind.CONTEXT_REQUEST):
            with pytest.raises(SessionUnresolvedError):
                resolve(kind)

    def test_synthesized_root_directory(self) -> None:
        assert synthesize_session_id("/", 1, 2) == "session_1_2"


class TestCreateWithRetry:
    """Tests for collision handling on session creation."""

    @pytest.mark.asyncio
    async def test_synthesized_collision_gets_entropy(self, store: Store) -> None:
        await store.create_session(Session(id="proj_1_2", created_at=NOW, updated_at=NOW))
        resolved = ResolvedSession("proj_1_2", IdentitySource.SYNTHESIZED)
        async with store.transaction() as tx:
            created = await create_with_retry(
                tx, Session(id="proj_1_2", created_at=NOW, updated_at=NOW), resolved
            )
        assert re.fullmatch(r"proj_1_2_[0-9a-f]{8}", created.id)

    @pytest.mark.asyncio
    async def test_explicit_collision_not_retried(self, store: Store) -> None:
        await store.create_session(Session(id="abc", created_at=NOW, updated_at=NOW))
        resolved = ResolvedSession("abc", IdentitySource.ENVIRONMENT)
        with pytest.raises(AlreadyExistsError):
            async with store.transaction() as tx:
                await create_with_retry(
                    tx, Session(id="abc", created_at=NOW, updated_at=NOW), resolved
                )

    @pytest.mark.asyncio
    async def test_retries_are_bounded(
        self, store: Store, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls: list[int] = []

        def fixed_hex(nbytes: int) -> str:
            calls.append(nbytes)
            return "deadbeef"

        monkeypatch.setattr(identity.secrets, "token_hex", fixed_hex)
        for session_id in ("p_1_2", "p_1_2_deadbeef"):
            await store.create_session(Session(id=session_id, created_at=NOW, updated_at=NOW))

        resolved = ResolvedSession("p_1_2", IdentitySource.SYNTHESIZED)
        with pytest.raises(AlreadyExistsError):
            async with store.transaction() as tx:
                await create_with_retry(
                    tx, Session(id="p_1_2", created_at=NOW, updated_at=NOW), resolved
                )
        assert len(calls) == identity.MAX_COLLISION_RETRIES


class TestProjectLabel:
    """Tests for project label derivation."""

    def test_from_transcript_path_with_prefix(self) -> None:
        payload = {"transcript_path": "/home/dev/.claude/projects/-home-dev-myapp/s1.jsonl"}
        assert project_label_from_payload(payload, ["-home-", "-home-dev-"]) == "myapp"

    def test_without_prefixes(self) -> None:
        payload = {"transcript_path": "~/.claude/projects/-home-dev-myapp/s1.jsonl"}
        assert project_label_from_payload(payload) == "-home-dev-myapp"

    def test_falls_back_to_cwd(self) -> None:
        assert project_label_from_payload({"cwd": "/work/api-server"}) == "api-server"

    def test_nothing_known(self) -> None:
        assert project_label_from_payload({}) is None
